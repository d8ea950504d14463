import asyncio
import os
from pathlib import Path
from typing import Iterable

import structlog

from sessionmeter.models import ProjectCacheEntry, ProjectSummary

logger = structlog.get_logger()


class ProjectCache:
    """
    ProjectCache maps a project id to its last parsed summary and the
    directory modification time observed right after that parse.

    An entry is only trusted while the directory's mtime still equals
    the stored one. The cache is best-effort: a failed stat means
    "parse again", never an error. It is written only by the
    scheduler's refresh path, so it takes no lock.
    """

    def __init__(self, projects_dir: "str | Path", enabled: "bool" = True) -> "None":
        self._projects_dir = Path(projects_dir)
        self._enabled = enabled
        self._entries: "dict[str, ProjectCacheEntry]" = {}
        if not enabled:
            logger.info("project_cache_disabled")

    async def _stat_mtime(self, project_id: "str") -> "int":
        st = await asyncio.to_thread(os.stat, self._projects_dir / project_id)
        return st.st_mtime_ns

    async def needs_parsing(self, project_id: "str") -> "bool":
        """
        returns True when the project has no entry, its directory mtime
        differs from the cached one, or the directory cannot be stat'ed.
        """
        if not self._enabled:
            return True

        entry = self._entries.get(project_id)
        if entry is None:
            return True

        try:
            mtime = await self._stat_mtime(project_id)
        except OSError as e:
            logger.warning("project_stat_failed", project_id=project_id, error=str(e))
            return True

        return mtime != entry.directory_mtime

    def get(self, project_id: "str") -> "ProjectSummary | None":
        if not self._enabled:
            return None
        entry = self._entries.get(project_id)
        return entry.summary if entry else None

    async def update(self, project_id: "str", summary: "ProjectSummary") -> "None":
        """
        stores a freshly parsed summary. Must be called after parsing has
        finished so a write that happened during the parse still shows up
        as a newer mtime on the next check.
        """
        if not self._enabled:
            return

        try:
            mtime = await self._stat_mtime(project_id)
        except OSError as e:
            logger.warning(
                "project_cache_update_failed", project_id=project_id, error=str(e)
            )
            return

        self._entries[project_id] = ProjectCacheEntry(
            project_id=project_id,
            directory_mtime=mtime,
            summary=summary,
        )

    def invalidate(self, project_id: "str") -> "bool":
        """
        evicts a project unconditionally. Returns whether it was cached.
        """
        removed = self._entries.pop(project_id, None) is not None
        if removed:
            logger.debug("project_cache_invalidated", project_id=project_id)
        return removed

    def prune(self, project_ids: "Iterable[str]") -> "int":
        """
        drops entries for projects outside project_ids, i.e. directories
        that no longer exist. Returns how many entries were removed.
        """
        keep = set(project_ids)
        gone = [project_id for project_id in self._entries if project_id not in keep]
        for project_id in gone:
            del self._entries[project_id]
        if gone:
            logger.info("project_cache_pruned", removed=len(gone))
        return len(gone)

    def clear(self) -> "None":
        self._entries.clear()
        logger.info("project_cache_cleared")

    def stats(self) -> "dict[str, int | bool]":
        return {
            "enabled": self._enabled,
            "cached_projects": len(self._entries),
        }
