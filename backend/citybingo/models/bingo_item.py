"""BingoItem model: one square of a city's card; ``image`` is the durable artifact reference."""
from datetime import datetime, timezone
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from citybingo.database import Base


class BingoItem(Base):
    __tablename__ = "bingo_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    city_id: Mapped[str] = mapped_column(String(64), ForeignKey("cities.id", ondelete="CASCADE"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)  # /images/<name> | proxy URL | remote URL
    is_center_space: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grid_row: Mapped[int | None] = mapped_column(Integer, nullable=True)
    grid_col: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    city = relationship("City", back_populates="items")

    __table_args__ = (
        Index("ix_bingo_items_city_id", "city_id"),
    )

    def __repr__(self) -> str:
        return f"<BingoItem {self.id!r} city={self.city_id!r}>"
