import os
from pathlib import Path
from typing import Callable

import pytest

from sessionmeter.cache import ProjectCache
from sessionmeter.models import ProjectSummary, TokenUsage


def _summary(project_id: "str", cost: "float" = 1.0) -> "ProjectSummary":
    return ProjectSummary(
        id=project_id,
        display_name=project_id,
        path=f"/work/{project_id}",
        session_count=1,
        message_count=2,
        total_tokens=TokenUsage(input=10),
        last_active="2026-02-13T12:00:00.000Z",
        estimated_cost=cost,
    )


def _touch_dir(path: "Path", seconds: "int") -> "None":
    os.utime(path, (seconds, seconds))


class TestProjectCache:
    @pytest.mark.asyncio
    async def test_unknown_project_needs_parsing(self, projects_dir: "Path") -> "None":
        cache = ProjectCache(projects_dir)
        assert await cache.needs_parsing("nope") is True
        assert cache.get("nope") is None

    @pytest.mark.asyncio
    async def test_update_then_fresh(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a")
        cache = ProjectCache(projects_dir)

        await cache.update("a", _summary("a"))

        assert await cache.needs_parsing("a") is False
        assert cache.get("a") == _summary("a")

    @pytest.mark.asyncio
    async def test_update_is_idempotent(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a")
        cache = ProjectCache(projects_dir)

        await cache.update("a", _summary("a"))
        first = (await cache.needs_parsing("a"), cache.get("a"), cache.stats())
        await cache.update("a", _summary("a"))
        second = (await cache.needs_parsing("a"), cache.get("a"), cache.stats())

        assert first == second

    @pytest.mark.asyncio
    async def test_mtime_change_marks_stale(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        project_dir = make_project("a")
        _touch_dir(project_dir, 1_700_000_000)
        cache = ProjectCache(projects_dir)
        await cache.update("a", _summary("a"))

        _touch_dir(project_dir, 1_700_000_100)

        assert await cache.needs_parsing("a") is True

    @pytest.mark.asyncio
    async def test_older_mtime_also_marks_stale(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        project_dir = make_project("a")
        _touch_dir(project_dir, 1_700_000_100)
        cache = ProjectCache(projects_dir)
        await cache.update("a", _summary("a"))

        _touch_dir(project_dir, 1_700_000_000)

        assert await cache.needs_parsing("a") is True

    @pytest.mark.asyncio
    async def test_removed_directory_needs_parsing(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        project_dir = make_project("a")
        cache = ProjectCache(projects_dir)
        await cache.update("a", _summary("a"))

        project_dir.rmdir()

        assert await cache.needs_parsing("a") is True

    @pytest.mark.asyncio
    async def test_update_without_directory_stores_nothing(
        self, projects_dir: "Path"
    ) -> "None":
        cache = ProjectCache(projects_dir)

        await cache.update("ghost", _summary("ghost"))

        assert cache.get("ghost") is None
        assert cache.stats()["cached_projects"] == 0

    @pytest.mark.asyncio
    async def test_invalidate(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a")
        cache = ProjectCache(projects_dir)
        await cache.update("a", _summary("a"))

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert await cache.needs_parsing("a") is True

    @pytest.mark.asyncio
    async def test_prune_drops_projects_no_longer_listed(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        for project_id in ("a", "b", "c"):
            make_project(project_id)
        cache = ProjectCache(projects_dir)
        for project_id in ("a", "b", "c"):
            await cache.update(project_id, _summary(project_id))

        assert cache.prune(["a", "c", "new"]) == 1
        assert cache.prune(["a", "c"]) == 0
        assert cache.get("b") is None
        assert cache.get("a") == _summary("a")
        assert cache.stats()["cached_projects"] == 2

    @pytest.mark.asyncio
    async def test_clear(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a")
        make_project("b")
        cache = ProjectCache(projects_dir)
        await cache.update("a", _summary("a"))
        await cache.update("b", _summary("b"))

        cache.clear()

        assert cache.stats() == {"enabled": True, "cached_projects": 0}

    @pytest.mark.asyncio
    async def test_disabled_cache_always_parses(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a")
        cache = ProjectCache(projects_dir, enabled=False)
        await cache.update("a", _summary("a"))

        assert await cache.needs_parsing("a") is True
        assert cache.get("a") is None
