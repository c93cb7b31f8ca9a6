# sync_service.py
# Description: Builds the cache, API client, repository and coordinator from the loaded settings.
#
# Imports
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
#
# Third-Party Imports
from loguru import logger
from textual.message import Message
#
# Local Imports
from taskbook.config import get_api_token, get_cache_db_path, get_cli_setting, get_sync_settings, load_settings
from taskbook.DB.Task_Cache_DB import TaskCacheDB
from taskbook.tasks_api import DEFAULT_BASE_URL, TasksAPIClient
from taskbook.Sync.coordinator import SyncCoordinator
from taskbook.Sync.repository import TaskRepository
#
#######################################################################################################################
#
# Functions:

@dataclass
class SyncServices:
    db: TaskCacheDB
    client: TasksAPIClient
    repository: TaskRepository
    coordinator: SyncCoordinator

    async def close(self) -> None:
        await self.coordinator.stop()
        await self.client.close()
        self.db.close_connection()


def build_sync_services(post_message: Optional[Callable[[Message], Any]] = None,
                        config_path: Optional[Path] = None, client: Optional[TasksAPIClient] = None,
                        db_path: Optional[Path] = None) -> SyncServices:
    """
    Wires the sync stack from config. `client` and `db_path` override the configured ones (tests, alternate
    profiles). The coordinator is returned unstarted.
    """
    if config_path is not None:
        load_settings(force_reload=True, config_path=config_path)
    sync_settings = get_sync_settings()

    db = TaskCacheDB(db_path or get_cache_db_path(), ttl_seconds=sync_settings["cache_ttl_seconds"])
    if client is None:
        client = TasksAPIClient(
            base_url=get_cli_setting("api", "base_url", DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
            token=get_api_token(),
            timeout=float(get_cli_setting("api", "timeout_seconds", 15)),
        )
    repository = TaskRepository(db, client, post_message=post_message)
    coordinator = SyncCoordinator(
        repository,
        post_message=post_message,
        interval_seconds=sync_settings["interval_seconds"],
        use_batch=sync_settings["use_batch"],
        batch_size=sync_settings["batch_size"],
        refresh_concurrency=sync_settings["refresh_concurrency"],
    )
    logger.info(f"Sync services ready (cache: {db.db_path_str}, api: {client.base_url})")
    return SyncServices(db=db, client=client, repository=repository, coordinator=coordinator)

#
# End of sync_service.py
#######################################################################################################################
