"""SQLAlchemy database engine, session factory, and connection management.

Provides the shared engine, session factory, and declarative base for all
ORM models. SQLite connections enable WAL mode and foreign keys via event
listeners. Tables are created at startup; a short list of additive column
migrations keeps older SQLite files usable.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from citybingo.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def _get_engine():
    settings = get_settings()
    connect_args = {}
    if settings.DATABASE_URL.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args=connect_args,
        echo=settings.DEBUG,
    )
    # Enable WAL mode and foreign keys for SQLite
    if settings.DATABASE_URL.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()
    return engine


engine = _get_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all tables from ORM metadata (dev convenience)."""
    import citybingo.models  # noqa: F401  (registers mappers)
    Base.metadata.create_all(bind=engine)
    _run_migrations()


def _run_migrations():
    """Add new columns to existing tables (SQLite ALTER TABLE)."""
    import sqlite3
    settings = get_settings()
    if not settings.DATABASE_URL.startswith("sqlite:///"):
        return
    db_path = settings.DATABASE_URL.replace("sqlite:///", "")
    if not db_path or db_path == ":memory:":
        return
    migrations = [
        "ALTER TABLE cities ADD COLUMN style_guide JSON",
        "ALTER TABLE cities ADD COLUMN is_default_city BOOLEAN DEFAULT 0",
        "ALTER TABLE cities ADD COLUMN item_count INTEGER DEFAULT 0",
        "ALTER TABLE cities ADD COLUMN items_with_descriptions INTEGER DEFAULT 0",
        "ALTER TABLE cities ADD COLUMN items_with_images INTEGER DEFAULT 0",
        "ALTER TABLE cities ADD COLUMN items_with_valid_image_files INTEGER DEFAULT 0",
        "ALTER TABLE cities ADD COLUMN last_metadata_update DATETIME",
        "ALTER TABLE bingo_items ADD COLUMN grid_row INTEGER",
        "ALTER TABLE bingo_items ADD COLUMN grid_col INTEGER",
        "ALTER TABLE user_completions ADD COLUMN updated_at DATETIME",
    ]
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        for sql in migrations:
            try:
                cursor.execute(sql)
            except sqlite3.OperationalError:
                pass  # Column already exists
        conn.commit()
    finally:
        conn.close()
