import asyncio
import multiprocessing
import os
from pathlib import Path
from typing import Any, Protocol, Sequence

import structlog

from sessionmeter.logging import setup_logging
from sessionmeter.metrics import MetricsUpdater
from sessionmeter.models import ParseTask, ProjectSummary
from sessionmeter.parser import parse_projects, run_parse_task

logger = structlog.get_logger()

# a worker that does not answer within this window is treated as failed
DEFAULT_WORKER_TIMEOUT_SECONDS = 120.0
# grace for a worker to exit after it has replied
_JOIN_TIMEOUT_SECONDS = 5.0


class WorkerError(RuntimeError):
    """
    raised when an isolated worker fails to produce a result.
    """


class IsolatedExecutor(Protocol):
    """
    IsolatedExecutor runs one parse task somewhere else and hands
    back its result. Task in, result or failure out; nothing more
    is assumed about it.
    """

    async def run(self, task: "ParseTask") -> "list[ProjectSummary]": ...


def _worker_main(conn: "Any") -> "None":
    """
    entry point of a worker process: receive one task, send one
    reply, exit. Must stay module-level so spawn can import it.
    """
    try:
        task: "ParseTask" = conn.recv()
        setup_logging(task.log_level)
        try:
            reply: "tuple[str, Any]" = ("ok", run_parse_task(task))
        except Exception as e:
            reply = ("error", f"{type(e).__name__}: {e}")
        conn.send(reply)
    finally:
        conn.close()


class ProcessExecutor:
    """
    ProcessExecutor runs every task in a fresh OS process connected by
    a pipe. There is no persistent pool: the process exits after its
    single reply.
    """

    def __init__(
        self,
        timeout_seconds: "float" = DEFAULT_WORKER_TIMEOUT_SECONDS,
        start_method: "str" = "spawn",
    ) -> "None":
        self._timeout = timeout_seconds
        self._ctx = multiprocessing.get_context(start_method)

    async def run(self, task: "ParseTask") -> "list[ProjectSummary]":
        # the wait blocks, so keep it off the event loop
        return await asyncio.to_thread(self._run_blocking, task)

    def _run_blocking(self, task: "ParseTask") -> "list[ProjectSummary]":
        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=_worker_main,
            args=(child_conn,),
            name="sessionmeter-parse",
            daemon=True,
        )
        process.start()
        child_conn.close()

        try:
            parent_conn.send(task)
            if not parent_conn.poll(self._timeout):
                raise WorkerError(
                    f"worker {process.pid} did not respond within {self._timeout}s"
                )
            status, payload = parent_conn.recv()
        except (EOFError, OSError) as e:
            raise WorkerError(f"worker {process.pid} exited without a result") from e
        finally:
            parent_conn.close()
            process.join(_JOIN_TIMEOUT_SECONDS)
            if process.is_alive():
                process.terminate()
                process.join()

        if status != "ok":
            raise WorkerError(f"worker {process.pid} failed: {payload}")
        if process.exitcode not in (0, None):
            raise WorkerError(
                f"worker {process.pid} exited with code {process.exitcode}"
            )
        return payload


class InProcessExecutor:
    """
    InProcessExecutor runs tasks on the calling event loop. Useful
    for tests and for platforms where spawning processes is undesirable.
    """

    async def run(self, task: "ParseTask") -> "list[ProjectSummary]":
        return await parse_projects(task)


def partition(items: "Sequence[str]", groups: "int") -> "list[list[str]]":
    """
    splits items into at most `groups` contiguous groups whose sizes
    differ by at most one. Empty groups are never returned.
    """
    if not items:
        return []
    groups = max(1, min(groups, len(items)))
    size, extra = divmod(len(items), groups)

    result: "list[list[str]]" = []
    start = 0
    for i in range(groups):
        end = start + size + (1 if i < extra else 0)
        result.append(list(items[start:end]))
        start = end
    return result


class ParseDispatcher:
    """
    ParseDispatcher fans stale projects out over isolated workers and
    merges what they return.

    If any worker fails, every worker result of that call is discarded
    and the whole set is parsed again sequentially in this process. Mixing
    results of two strategies could count a project twice.
    """

    def __init__(
        self,
        executor: "IsolatedExecutor",
        projects_dir: "str | Path",
        metrics: "MetricsUpdater",
        max_workers: "int" = 4,
        use_workers: "bool" = True,
        decoder: "str" = "orjson",
        max_open_files: "int" = 16,
        log_level: "str" = "info",
    ) -> "None":
        self._executor = executor
        self._projects_dir = str(projects_dir)
        self._metrics = metrics
        self._max_workers = max(1, max_workers)
        self._use_workers = use_workers
        self._decoder = decoder
        self._max_open_files = max_open_files
        self._log_level = log_level

    def worker_count(self, project_count: "int") -> "int":
        return max(
            1, min(self._max_workers, os.cpu_count() or 1, project_count)
        )

    def _task(self, project_ids: "Sequence[str]") -> "ParseTask":
        return ParseTask(
            project_ids=tuple(project_ids),
            projects_dir=self._projects_dir,
            decoder=self._decoder,
            max_open_files=self._max_open_files,
            log_level=self._log_level,
        )

    async def parse_many(self, project_ids: "Sequence[str]") -> "list[ProjectSummary]":
        """
        parses the given projects and returns one summary per non-empty
        project, in no particular order.
        """
        ids = list(dict.fromkeys(project_ids))
        if not ids:
            return []

        groups = partition(ids, self.worker_count(len(ids)))
        if not self._use_workers or len(groups) < 2:
            self._metrics.inc_parse_run("sequential")
            return self._select(ids, await self._parse_sequential(ids))

        logger.info(
            "parse_dispatch_workers",
            workers=len(groups),
            projects=len(ids),
        )
        results = await asyncio.gather(
            *(self._executor.run(self._task(group)) for group in groups),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                logger.warning("parse_worker_failed", error=str(failure))
            logger.warning(
                "parse_fallback_sequential",
                failed_workers=len(failures),
                projects=len(ids),
            )
            self._metrics.inc_worker_failure()
            self._metrics.inc_parse_run("fallback")
            return self._select(ids, await self._parse_sequential(ids))

        self._metrics.inc_parse_run("workers")
        merged: "list[ProjectSummary]" = []
        for result in results:
            merged.extend(result)
        return self._select(ids, merged)

    async def _parse_sequential(self, ids: "list[str]") -> "list[ProjectSummary]":
        logger.info("parse_sequential", projects=len(ids))
        return await parse_projects(self._task(ids))

    @staticmethod
    def _select(
        ids: "list[str]", summaries: "list[ProjectSummary]"
    ) -> "list[ProjectSummary]":
        # at most one summary per requested id
        wanted = set(ids)
        selected: "dict[str, ProjectSummary]" = {}
        for summary in summaries:
            if summary.id in wanted and summary.id not in selected:
                selected[summary.id] = summary
        return list(selected.values())
