"""Fire-and-continue entry points around the ingestion orchestrator.

HTTP resources, the scheduled actor and the CLI call these methods. Triggers
schedule the run as a background task on the running event loop and return
immediately; outcomes surface through error records and watermarks.
"""

from __future__ import annotations

import asyncio
import logging
import typing as typ

from .errors import SourceBusyError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .orchestrator import IngestionOrchestrator, SourceRunResult
    from .watermarks import WatermarkEntry, WatermarkStore

logger = logging.getLogger(__name__)


class IngestionService:
    """Schedule ingestion runs and expose the configured filters.

    Each background task remembers the sources it covers. A source counts as
    busy from the moment its task is spawned, before the orchestrator has
    taken the source's lock, until the task finishes.
    """

    def __init__(
        self, orchestrator: IngestionOrchestrator, watermarks: WatermarkStore
    ) -> None:
        """Bind the orchestrator and the watermark store it reads filters from."""
        self._orchestrator = orchestrator
        self._watermarks = watermarks
        self._tasks: dict[asyncio.Task[typ.Any], frozenset[str]] = {}

    @property
    def orchestrator(self) -> IngestionOrchestrator:
        """Return the orchestrator driven by this service."""
        return self._orchestrator

    @property
    def enabled_sources(self) -> tuple[str, ...]:
        """Return the sources a trigger may currently run."""
        return self._orchestrator.enabled_sources

    def is_busy(self, source: str) -> bool:
        """Return True while a run of ``source`` is scheduled or in progress."""
        if self._orchestrator.is_running(source):
            return True
        return any(source in sources for sources in self._tasks.values())

    def trigger_all(self) -> asyncio.Task[list[SourceRunResult]]:
        """Start a run of every enabled source without waiting for it.

        Sources that are already busy are reported as skipped by the run.
        """
        return self._spawn(
            self._orchestrator.run_all(),
            name="ingest:all",
            sources=frozenset(self.enabled_sources),
        )

    def trigger_source(self, source: str) -> asyncio.Task[SourceRunResult]:
        """Start a run of ``source`` without waiting for it.

        Raises
        ------
        UnknownSourceError
            If ``source`` is not supported.
        SourceDisabledError
            If ``source`` is disabled.
        SourceBusyError
            If a run of ``source`` is already scheduled or in progress.

        """
        self._orchestrator.ensure_enabled(source)
        if self.is_busy(source):
            raise SourceBusyError(source)
        return self._spawn(
            self._orchestrator.run_source(source),
            name=f"ingest:{source}",
            sources=frozenset({source}),
        )

    async def list_filters(self, source: str) -> list[WatermarkEntry]:
        """Return the filters configured for ``source`` with their watermarks."""
        self._orchestrator.ensure_known(source)
        return await self._watermarks.list_for_source(source)

    async def add_filter(self, source: str, filter_criteria: str) -> bool:
        """Register a new filter; return False if it was already configured."""
        self._orchestrator.ensure_known(source)
        return await self._watermarks.register(source, filter_criteria)

    async def wait_idle(self) -> None:
        """Wait for every run started by this service to finish."""
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Wait for pending runs, then release connector resources."""
        await self.wait_idle()
        await self._orchestrator.aclose()

    def _spawn[T](
        self,
        coro: cabc.Coroutine[typ.Any, typ.Any, T],
        *,
        name: str,
        sources: frozenset[str],
    ) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks[task] = sources
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[typ.Any]) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            logger.warning("Ingestion task %s was cancelled", task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Ingestion task %s failed", task.get_name(), exc_info=error
            )
