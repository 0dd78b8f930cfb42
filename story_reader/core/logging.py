import logging
import sys
import uuid
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger

story_id_ctx_var: ContextVar[str] = ContextVar("story_id", default="-")


def get_story_id() -> str:
    return story_id_ctx_var.get()


class StoryIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.story_id = get_story_id()
        return True


def configure_logging(level: str = "INFO", app_name: str | None = None, environment: str | None = None) -> None:
    logger = logging.getLogger()
    logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    static_fields = {key: value for key, value in (("app", app_name), ("environment", environment)) if value}
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(story_id)s",
        static_fields=static_fields,
    )
    handler.setFormatter(formatter)
    handler.addFilter(StoryIdFilter())
    logger.handlers = [handler]


def new_request_id() -> str:
    return str(uuid.uuid4())
