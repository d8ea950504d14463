import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import structlog
from watchfiles import Change, awatch

logger = structlog.get_logger()

WATCHED_SUFFIXES: "tuple[str, ...]" = (".jsonl", ".json")


class ChangeWatcher:
    """
    ChangeWatcher reports writes to session logs and index files below
    the projects directory. Each debounced batch of filesystem events is
    reduced to a sorted list of distinct paths and handed to on_change
    in a single call.
    """

    def __init__(
        self,
        projects_dir: "str | Path",
        on_change: "Callable[[list[str]], Awaitable[None]]",
        debounce_ms: "int" = 500,
    ) -> "None":
        # watchfiles reports absolute, resolved paths
        self._projects_dir = Path(projects_dir).resolve()
        self._on_change = on_change
        self._debounce_ms = debounce_ms
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def relevant_paths(self, changes: "Iterable[tuple[Change, str]]") -> "list[str]":
        """
        keeps added or modified log and index files, skipping anything
        under a hidden path component below the projects directory.
        """
        paths: "set[str]" = set()
        for change, raw_path in changes:
            if change not in (Change.added, Change.modified):
                continue
            path = Path(raw_path)
            if path.suffix not in WATCHED_SUFFIXES:
                continue
            try:
                parts = path.relative_to(self._projects_dir).parts
            except ValueError:
                continue
            if any(part.startswith(".") for part in parts):
                continue
            paths.add(raw_path)
        return sorted(paths)

    def stop(self) -> "None":
        self._stop_event.set()

    async def run(self) -> "None":
        if not self._projects_dir.is_dir():
            logger.warning("watch_dir_missing", path=str(self._projects_dir))
            return

        logger.info(
            "watch_started",
            path=str(self._projects_dir),
            debounce_ms=self._debounce_ms,
        )
        async for changes in awatch(
            self._projects_dir,
            debounce=self._debounce_ms,
            stop_event=self._stop_event,
            recursive=True,
        ):
            paths = self.relevant_paths(changes)
            if not paths:
                continue
            try:
                await self._on_change(paths)
            except Exception:
                logger.exception("change_handler_error", paths=len(paths))
        logger.info("watch_stopped")
