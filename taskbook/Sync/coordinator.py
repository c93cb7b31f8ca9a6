# coordinator.py
# Description: Periodic sync cycles. Each cycle pulls reference data, warms stale project caches and
#  pushes the mutation queue, posting every result as a message.
#
# Imports
import asyncio
from typing import Any, Callable, List, Optional
#
# Third-Party Imports
from loguru import logger
from textual.message import Message
#
# Local Imports
from taskbook.Sync.messages import (
    MutationConflicted, MutationFlushed, MutationRequeued, ResourceLoaded, SyncCycleFinished,
)
from taskbook.Sync.repository import TaskRepository
#
#######################################################################################################################
#
# Functions:

class SyncCoordinator:
    """
    Runs sync cycles against a `TaskRepository`, once at start and then every `interval_seconds`.

    A cycle:
        1. Refreshes projects and labels if stale.
        2. Warms tasks and sections of projects whose cache has gone stale.
        3. Flushes the mutation queue (one at a time, or batched when `use_batch` is set).

    Only one cycle runs at a time; `request_sync` while a cycle runs joins that cycle.
    """

    def __init__(self, repository: TaskRepository, post_message: Optional[Callable[[Message], Any]] = None,
                 interval_seconds: float = 300, use_batch: bool = False, batch_size: int = 20,
                 refresh_concurrency: int = 2):
        self.repository = repository
        self._post_message = post_message
        self.interval_seconds = interval_seconds
        self.use_batch = use_batch
        self.batch_size = batch_size
        self.refresh_concurrency = refresh_concurrency
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        logger.info(f"SyncCoordinator initialized (interval={interval_seconds}s, batch={use_batch}).")

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _emit(self, message: Message) -> None:
        if self._post_message is not None:
            self._post_message(message)

    def start(self) -> asyncio.Task:
        """Recovers interrupted flushes and starts the periodic loop. Calling it twice is a no-op."""
        if self.running:
            return self._loop_task
        recovered = self.repository.recover_interrupted_flushes()
        if recovered:
            logger.info(f"Requeued {recovered} mutation(s) interrupted by a previous shutdown.")
        self._loop_task = asyncio.ensure_future(self._run_loop())
        return self._loop_task

    async def stop(self) -> None:
        for task in (self._loop_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._cycle_task = None
        logger.info("SyncCoordinator stopped.")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.request_sync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One failed cycle must not end the loop; the next cycle retries.
                logger.error(f"Sync cycle failed unexpectedly: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def request_sync(self) -> "asyncio.Task[SyncCycleFinished]":
        """Starts a cycle now, or returns the one already running."""
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.ensure_future(self.run_cycle())
        return self._cycle_task

    async def run_cycle(self) -> SyncCycleFinished:
        logger.info("Starting sync cycle...")
        messages: List[Message] = []
        errors: List[str] = []

        # Pull phase
        for resource in ("projects", "labels"):
            loaded = await self.repository.fetch(resource, wait_for_refresh=True)
            messages.append(loaded)
            if loaded.error:
                errors.append(f"{resource}: {loaded.error}")
        for loaded in await self.repository.warm_stale_projects(concurrency=self.refresh_concurrency):
            messages.append(loaded)
            if loaded.error:
                errors.append(f"{loaded.resource} {loaded.scope_id}: {loaded.error}")

        # Push phase
        if self.use_batch:
            flushed = await self.repository.flush_batch(self.batch_size)
        else:
            flushed = await self.repository.flush_pending()
        messages.extend(flushed)

        for message in messages:
            self._emit(message)

        summary = SyncCycleFinished(
            refreshed=sum(1 for m in messages if isinstance(m, ResourceLoaded) and not m.from_cache),
            flushed=sum(1 for m in flushed if isinstance(m, MutationFlushed)),
            conflicted=sum(1 for m in flushed if isinstance(m, MutationConflicted)),
            requeued=sum(1 for m in flushed if isinstance(m, MutationRequeued)),
            errors=errors + [f"mutation {m.mutation_id}: {m.error}" for m in flushed if isinstance(m, MutationRequeued)],
        )
        self._emit(summary)
        logger.info(f"Sync cycle finished: refreshed={summary.refreshed} flushed={summary.flushed} "
                    f"conflicted={summary.conflicted} requeued={summary.requeued}")
        return summary

#
# End of coordinator.py
#######################################################################################################################
