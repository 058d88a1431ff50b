"""Test configuration and fixtures."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from citybingo.database import Base
from citybingo.models import BingoItem, City


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and advances a fake clock."""

    def __init__(self):
        self.delays: list[float] = []
        self.now = 0.0

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.now += delay

    def clock(self) -> float:
        return self.now

    @property
    def total(self) -> float:
        return sum(self.delays)


@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (TestClient runs handlers off-thread)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import citybingo.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create an in-memory SQLite database for tests."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded_city(db_session):
    """A small city: four regular items plus the center space."""
    city = City(
        id="nyc",
        title="New York",
        subtitle="The city that never sleeps",
        style_guide=[
            {"style": "Street photography", "bestFor": "food, markets", "keywords": "candid, gritty"},
            {"style": "Watercolor", "bestFor": "parks, bridges", "keywords": "soft, pastel"},
        ],
        is_default_city=True,
    )
    db_session.add(city)
    db_session.add_all([
        BingoItem(id="nyc-1", city_id="nyc", text="Eat a bagel", grid_row=0, grid_col=0),
        BingoItem(id="nyc-2", city_id="nyc", text="Walk the Brooklyn Bridge", grid_row=0, grid_col=1,
                  image="/images/nyc-nyc-2-abc.png"),
        BingoItem(id="nyc-3", city_id="nyc", text="See a Broadway show", grid_row=0, grid_col=2,
                  description="Catch a matinee.",
                  image="https://oaidalleapiprodscus.blob.core.windows.net/private/img.png?sig=x"),
        BingoItem(id="nyc-4", city_id="nyc", text="Ride the Staten Island Ferry", grid_row=1, grid_col=0,
                  image="/api/placeholder-image?text=ferry"),
        BingoItem(id="nyc-free", city_id="nyc", text="Free space", is_center_space=True),
    ])
    db_session.commit()
    return city


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
