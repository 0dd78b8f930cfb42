from story_reader.models.base import Base
from story_reader.models.stored_value import StoredValue

__all__ = [
    "Base",
    "StoredValue",
]
