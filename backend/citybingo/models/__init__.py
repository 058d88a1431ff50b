"""SQLAlchemy ORM models package."""
from citybingo.models.city import City
from citybingo.models.bingo_item import BingoItem
from citybingo.models.client_user import ClientUser, UserCompletion

__all__ = [
    "City",
    "BingoItem",
    "ClientUser",
    "UserCompletion",
]
