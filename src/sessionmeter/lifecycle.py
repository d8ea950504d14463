import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable

import structlog

from sessionmeter import paths
from sessionmeter.metrics import MetricsUpdater
from sessionmeter.models import LifecycleState, LifecycleStatus, SessionActivityRecord
from sessionmeter.notifier import ChangeNotifier

logger = structlog.get_logger()

SHUTDOWN_EVENT = "server-shutdown"
# grace period progress is logged at most this often
_GRACE_LOG_INTERVAL_SECONDS = 60.0


class SessionLifecycleTracker:
    """
    SessionLifecycleTracker decides when the process may shut itself down.

    Writes to session logs mark sessions as active. A periodic sweep drops
    sessions that have been quiet for longer than the idle timeout; once
    none are left the tracker goes IDLE and immediately starts a grace
    timer. Any new session write during the grace period cancels it.
    When the timer runs out the tracker broadcasts a shutdown notice,
    releases the process lock and hands over to on_shutdown.

    The sweep, not the write stream, detects idleness, so a missed
    change notification cannot keep the process alive forever.
    """

    def __init__(
        self,
        projects_dir: "str | Path",
        notifier: "ChangeNotifier",
        idle_timeout_seconds: "float" = 30,
        grace_period_seconds: "float" = 1800,
        sweep_interval_seconds: "float" = 5,
        disable_shutdown: "bool" = False,
        release_lock: "Callable[[], Awaitable[None]] | None" = None,
        on_shutdown: "Callable[[], Awaitable[None]] | None" = None,
        metrics: "MetricsUpdater | None" = None,
        clock: "Callable[[], float]" = time.monotonic,
        shutdown_drain_seconds: "float" = 1.0,
    ) -> "None":
        self._projects_dir = Path(projects_dir)
        self._notifier = notifier
        self._idle_timeout = idle_timeout_seconds
        self._grace_period = grace_period_seconds
        self._sweep_interval = sweep_interval_seconds
        self._disable_shutdown = disable_shutdown
        self._release_lock = release_lock
        self._on_shutdown = on_shutdown
        self._metrics = metrics
        self._clock = clock
        self._drain = shutdown_drain_seconds

        self._state: "LifecycleState" = LifecycleState.STARTING
        self._sessions: "dict[tuple[str, str], SessionActivityRecord]" = {}
        self._grace_deadline: "float | None" = None
        self._grace_task: "asyncio.Task[None] | None" = None
        self._sweep_task: "asyncio.Task[None] | None" = None
        self._shutdown_eligible = False
        self._last_grace_log: "float | None" = None

        if metrics is not None:
            metrics.set_lifecycle_state(self._state)

    @property
    def state(self) -> "LifecycleState":
        return self._state

    def start(self) -> "None":
        """
        starts the periodic sweep. Requires a running event loop.
        """
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "lifecycle_tracker_started",
            idle_timeout_seconds=self._idle_timeout,
            grace_period_seconds=self._grace_period,
            disable_shutdown=self._disable_shutdown,
        )

    async def stop(self) -> "None":
        """
        cancels the sweep and grace timer tasks owned by the tracker.
        """
        current = asyncio.current_task()
        tasks = [
            t for t in (self._sweep_task, self._grace_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        self._grace_task = None

    def on_file_change(self, path: "str | Path") -> "bool":
        """
        records a write to a session log. Returns False for paths that
        are not session logs, such as index files.
        """
        key = paths.session_key_from_path(path, self._projects_dir)
        if key is None:
            return False
        if self._state is LifecycleState.SHUTTING_DOWN:
            return False

        project_id, session_id = key
        self._sessions[key] = SessionActivityRecord(
            project_id=project_id,
            session_id=session_id,
            last_activity=self._clock(),
            file_path=str(path),
        )
        logger.debug("session_activity", project_id=project_id, session_id=session_id)

        if self._state is LifecycleState.GRACE_PERIOD:
            self._cancel_grace_period()
            self._transition(LifecycleState.ACTIVE)
        elif self._state in (LifecycleState.STARTING, LifecycleState.IDLE):
            self._transition(LifecycleState.ACTIVE)

        self._report_sessions()
        return True

    async def sweep(self) -> "None":
        """
        drops idle sessions and advances the state machine.
        """
        if self._state is LifecycleState.SHUTTING_DOWN:
            return

        now = self._clock()
        idle = [
            key
            for key, record in self._sessions.items()
            if now - record.last_activity > self._idle_timeout
        ]
        for key in idle:
            del self._sessions[key]
            logger.debug("session_idle", project_id=key[0], session_id=key[1])
        self._report_sessions()

        has_active = bool(self._sessions)
        if has_active and self._state is LifecycleState.STARTING:
            self._transition(LifecycleState.ACTIVE)
        elif has_active and self._state is LifecycleState.GRACE_PERIOD:
            self._cancel_grace_period()
            self._transition(LifecycleState.ACTIVE)
        elif not has_active and self._state is LifecycleState.ACTIVE:
            self._transition(LifecycleState.IDLE)
            self._start_grace_period()
        elif (
            self._state is LifecycleState.GRACE_PERIOD
            and self._grace_deadline is not None
            and now >= self._grace_deadline
        ):
            await self._grace_expired()

    def status(self) -> "LifecycleStatus":
        remaining = 0.0
        if self._grace_deadline is not None:
            remaining = max(0.0, self._grace_deadline - self._clock())
        return LifecycleStatus(
            state=self._state,
            active_sessions=tuple(
                sorted(self._sessions.values(), key=lambda r: (r.project_id, r.session_id))
            ),
            grace_timer_remaining_ms=int(remaining * 1000),
            grace_period_ms=int(self._grace_period * 1000),
            grace_timer_active=self._grace_deadline is not None,
            shutdown_eligible=self._shutdown_eligible,
        )

    def _transition(self, new_state: "LifecycleState") -> "None":
        if self._state is new_state:
            return
        logger.info(
            "lifecycle_transition",
            from_state=self._state.value,
            to_state=new_state.value,
        )
        self._state = new_state
        if new_state is LifecycleState.ACTIVE:
            self._shutdown_eligible = False
        if self._metrics is not None:
            self._metrics.set_lifecycle_state(new_state)

    def _report_sessions(self) -> "None":
        if self._metrics is not None:
            self._metrics.set_active_sessions(len(self._sessions))

    def _start_grace_period(self) -> "None":
        self._cancel_grace_period()
        self._grace_deadline = self._clock() + self._grace_period
        self._last_grace_log = None
        self._transition(LifecycleState.GRACE_PERIOD)
        logger.info("grace_period_started", grace_period_seconds=self._grace_period)
        self._grace_task = asyncio.create_task(self._grace_timer())

    def _cancel_grace_period(self) -> "None":
        if self._grace_deadline is None and self._grace_task is None:
            return
        if self._grace_task is not None and self._grace_task is not asyncio.current_task():
            self._grace_task.cancel()
        self._grace_task = None
        self._grace_deadline = None
        logger.info("grace_period_cancelled")

    async def _grace_timer(self) -> "None":
        await asyncio.sleep(self._grace_period)
        await self._grace_expired()

    async def _grace_expired(self) -> "None":
        if self._state is not LifecycleState.GRACE_PERIOD or self._shutdown_eligible:
            return

        if self._disable_shutdown:
            self._shutdown_eligible = True
            self._grace_deadline = None
            logger.warning("shutdown_disabled", state=self._state.value)
            return

        self._grace_deadline = None
        await self._shutdown()

    async def _shutdown(self) -> "None":
        self._transition(LifecycleState.SHUTTING_DOWN)
        logger.info("shutdown_initiated")
        try:
            self._notifier.publish(SHUTDOWN_EVENT, {"reason": "grace_period_expired"})
            # give subscribers a moment to receive the notice
            await asyncio.sleep(self._drain)
            if self._release_lock is not None:
                await self._release_lock()
        except Exception:
            logger.exception("shutdown_error")
        finally:
            logger.info("lifecycle_shutdown_handoff")
            if self._on_shutdown is not None:
                await self._on_shutdown()

    async def _sweep_loop(self) -> "None":
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("lifecycle_sweep_error")
            self._log_grace_progress()
            if self._state is LifecycleState.SHUTTING_DOWN:
                return

    def _log_grace_progress(self) -> "None":
        if self._state is not LifecycleState.GRACE_PERIOD or self._grace_deadline is None:
            return
        now = self._clock()
        if (
            self._last_grace_log is not None
            and now - self._last_grace_log < _GRACE_LOG_INTERVAL_SECONDS
        ):
            return
        self._last_grace_log = now
        remaining = max(0.0, self._grace_deadline - now)
        logger.info("grace_period_remaining", minutes=int(-(-remaining // 60)))
