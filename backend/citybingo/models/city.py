"""City model: a bingo card with its optional style guide and cached item counts."""
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, Boolean, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from citybingo.database import Base


class City(Base):
    __tablename__ = "cities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    subtitle: Mapped[str | None] = mapped_column(Text, nullable=True)
    style_guide: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_default_city: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Metadata (refreshed after batch runs)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    items_with_descriptions: Mapped[int] = mapped_column(Integer, default=0)
    items_with_images: Mapped[int] = mapped_column(Integer, default=0)
    items_with_valid_image_files: Mapped[int] = mapped_column(Integer, default=0)
    last_metadata_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items = relationship("BingoItem", back_populates="city", cascade="all, delete-orphan", lazy="selectin")

    def __repr__(self) -> str:
        return f"<City {self.id!r}>"
