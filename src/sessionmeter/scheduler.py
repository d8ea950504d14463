import asyncio
import time
from pathlib import Path

import structlog

from sessionmeter import paths
from sessionmeter.aggregate import build_aggregate
from sessionmeter.cache import ProjectCache
from sessionmeter.dispatcher import ParseDispatcher
from sessionmeter.metrics import MetricsUpdater
from sessionmeter.models import AggregateState, ProjectSummary
from sessionmeter.notifier import ChangeNotifier

logger = structlog.get_logger()

REFRESH_EVENT = "data-refresh"


class RefreshError(RuntimeError):
    """
    raised on the pull path when no aggregate could be produced.
    Callers may retry.
    """


class AggregationScheduler:
    """
    AggregationScheduler keeps the published AggregateState fresh.

    A refresh re-parses only the projects the cache reports as stale,
    merges them with the cached summaries, rebuilds every derived figure
    from scratch and swaps the new state in as a whole. Refreshes are
    single-flight: callers arriving while one runs wait for it, and a
    change reported mid-flight schedules one more pass inside the same
    in-flight task.
    """

    def __init__(
        self,
        projects_dir: "str | Path",
        cache: "ProjectCache",
        dispatcher: "ParseDispatcher",
        notifier: "ChangeNotifier",
        metrics: "MetricsUpdater",
        refresh_interval_seconds: "float" = 300,
    ) -> "None":
        self._projects_dir = Path(projects_dir)
        self._cache = cache
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._metrics = metrics
        self._interval = refresh_interval_seconds
        self._current: "AggregateState | None" = None
        self._inflight: "asyncio.Task[None] | None" = None
        self._pending_invalidations: "set[str]" = set()
        self._rerun = False
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def current(self) -> "AggregateState | None":
        """
        the latest published state, without waiting.
        """
        return self._current

    def stop(self) -> "None":
        """
        signals the periodic loop to stop after the current pass.
        """
        self._stop_event.set()

    async def run(self) -> "None":
        """
        refreshes once, then periodically until stop() is called. A zero
        interval keeps the loop idle until stopped.
        """
        while not self._stop_event.is_set():
            try:
                await self.refresh()
            except Exception:
                logger.exception("refresh_loop_error")

            timeout = self._interval if self._interval > 0 else None
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            except TimeoutError:
                pass

    async def get_current(self) -> "AggregateState":
        """
        returns the latest state. Before the first refresh has finished
        this waits for one, starting it if needed.
        """
        if self._current is not None:
            return self._current

        try:
            await self.refresh()
        except Exception as e:
            raise RefreshError(f"refresh failed: {e}") from e

        if self._current is None:
            raise RefreshError("no aggregate has been published")
        return self._current

    async def refresh(self, changed_path: "str | Path | None" = None) -> "None":
        """
        brings the aggregate up to date. When changed_path lies in a
        project directory that project is re-parsed regardless of its
        cached mtime.
        """
        if changed_path is not None:
            project_id = paths.project_id_from_path(changed_path, self._projects_dir)
            if project_id:
                self._pending_invalidations.add(project_id)
                logger.debug("project_change_detected", project_id=project_id)

        if self._inflight is not None and not self._inflight.done():
            if changed_path is not None:
                self._rerun = True
            # shield: a cancelled caller must not cancel the shared refresh
            await asyncio.shield(self._inflight)
            return

        self._inflight = asyncio.create_task(self._refresh_passes())
        await asyncio.shield(self._inflight)

    async def _refresh_passes(self) -> "None":
        while True:
            self._rerun = False
            try:
                await self._refresh_once()
            except Exception:
                self._metrics.inc_refresh_error()
                raise
            if not self._rerun:
                return
            logger.debug("refresh_rerun")

    async def _list_projects(self) -> "list[str]":
        def _scan() -> "list[str]":
            return sorted(
                p.name
                for p in self._projects_dir.iterdir()
                if p.is_dir() and not p.name.startswith(".")
            )

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            logger.warning(
                "projects_dir_unavailable",
                path=str(self._projects_dir),
                error=str(e),
            )
            return []

    async def _refresh_once(self) -> "None":
        started = time.monotonic()

        invalidations, self._pending_invalidations = self._pending_invalidations, set()
        for project_id in invalidations:
            self._cache.invalidate(project_id)

        project_ids = await self._list_projects()
        self._cache.prune(project_ids)

        cached: "list[ProjectSummary]" = []
        stale: "list[str]" = []
        for project_id in project_ids:
            summary = None
            if not await self._cache.needs_parsing(project_id):
                summary = self._cache.get(project_id)
            if summary is None:
                stale.append(project_id)
            else:
                cached.append(summary)

        fresh: "list[ProjectSummary]" = []
        if stale:
            try:
                fresh = await self._dispatcher.parse_many(stale)
            except Exception:
                logger.exception("parse_failed", projects=len(stale))
                # previous results stay published but uncached, so the
                # next refresh retries them
                fresh = self._previous_summaries(stale)
            else:
                for summary in fresh:
                    await self._cache.update(summary.id, summary)
                self._metrics.inc_files_processed(sum(s.files_scanned for s in fresh))

        state = build_aggregate([*cached, *fresh])
        self._current = state
        duration = time.monotonic() - started

        self._metrics.set_cache_status(len(project_ids), len(cached), len(stale))
        self._metrics.set_aggregate(state)
        self._metrics.observe_refresh(duration, time.time())
        logger.info(
            "refresh_complete",
            total_projects=len(project_ids),
            cached_projects=len(cached),
            parsed_projects=len(stale),
            published_projects=len(state.projects),
            total_cost=round(state.total_estimated_cost, 4),
            duration_ms=round(duration * 1000, 1),
        )

        self._notifier.publish(REFRESH_EVENT, {"scope": "full"})

    def _previous_summaries(self, project_ids: "list[str]") -> "list[ProjectSummary]":
        if self._current is None:
            return []
        wanted = set(project_ids)
        return [p for p in self._current.projects if p.id in wanted]
