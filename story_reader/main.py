"""Composition root for an app embedding the reader.

Builds the HTTP backend, the local state store and the orchestrator from
``Settings`` and configures logging once.
"""

import logging
from dataclasses import dataclass
import httpx
from story_reader.core.config import Settings, settings as default_settings
from story_reader.core.logging import configure_logging
from story_reader.services.api_client import HttpStoryBackend
from story_reader.services.local_state import LocalStateStore
from story_reader.services.orchestrator import ReadingOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Reader:
    orchestrator: ReadingOrchestrator
    backend: HttpStoryBackend
    local_state: LocalStateStore

    async def aclose(self) -> None:
        await self.orchestrator.close()
        await self.backend.aclose()


def create_reader(
    access_token: str | None = None,
    user_id: str | None = None,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> Reader:
    cfg = settings or default_settings
    configure_logging(cfg.log_level, app_name=cfg.app_name, environment=cfg.environment)
    backend = HttpStoryBackend(access_token, user_id, settings=cfg, client=client)
    local_state = LocalStateStore.from_url(cfg.state_database_url)
    logger.info("Reader created", extra={"api_base_url": cfg.api_base_url})
    return Reader(ReadingOrchestrator(backend, local_state, settings=cfg), backend, local_state)
