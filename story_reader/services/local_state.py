import json
import logging
from typing import Any
from sqlalchemy.orm import sessionmaker
from story_reader.db.session import create_session_factory
from story_reader.models import StoredValue
from story_reader.schemas.progress import CachedPosition

logger = logging.getLogger(__name__)

SHOWN_CEREMONIES_KEY = "shownFirstLineCeremonies"
READING_POSITION_KEY = "readingPosition"


class LocalStateStore:
    """Small key-value store for state that outlives a loaded story."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "LocalStateStore":
        return cls(create_session_factory(database_url))

    def get(self, key: str, default: Any = None) -> Any:
        db = self._session_factory()
        try:
            row = db.get(StoredValue, key)
            if not row:
                return default
            try:
                return json.loads(row.value_json)
            except json.JSONDecodeError:
                logger.warning("Discarding unreadable stored value", extra={"key": key})
                return default
        finally:
            db.close()

    def set(self, key: str, value: Any) -> None:
        db = self._session_factory()
        try:
            row = db.get(StoredValue, key)
            payload = json.dumps(value)
            if row:
                row.value_json = payload
            else:
                db.add(StoredValue(key=key, value_json=payload))
            db.commit()
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self._session_factory()
        try:
            row = db.get(StoredValue, key)
            if row:
                db.delete(row)
                db.commit()
        finally:
            db.close()

    # First-line ceremony registry

    def shown_ceremonies(self) -> list[str]:
        value = self.get(SHOWN_CEREMONIES_KEY, [])
        if not isinstance(value, list):
            return []
        return [str(item) for item in value]

    def has_shown_ceremony(self, story_id: str) -> bool:
        return story_id in self.shown_ceremonies()

    def mark_ceremony_shown(self, story_id: str) -> None:
        shown = self.shown_ceremonies()
        if story_id in shown:
            return
        shown.append(story_id)
        self.set(SHOWN_CEREMONIES_KEY, shown)

    # Last known position, used when the backend cannot be reached

    def load_position(self, story_id: str) -> CachedPosition | None:
        value = self.get(READING_POSITION_KEY)
        if not isinstance(value, dict):
            return None
        try:
            cached = CachedPosition(**value)
        except (TypeError, ValueError):
            return None
        if cached.story_id != story_id:
            return None
        return cached

    def save_position(self, position: CachedPosition) -> None:
        self.set(READING_POSITION_KEY, position.model_dump())

    def clear_position(self) -> None:
        self.delete(READING_POSITION_KEY)
