from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pytest

from conftest import assistant_record, user_record, write_log
from sessionmeter.decoder import get_decoder
from sessionmeter.models import ParseTask, TokenUsage
from sessionmeter.parser import (
    format_timestamp,
    parse_project,
    parse_projects,
    parse_timestamp,
    read_session_index,
)
from sessionmeter.pricing import cost


class TestTimestamps:
    def test_iso_z(self) -> "None":
        ts = parse_timestamp("2026-02-13T12:30:00.000Z")
        assert ts == datetime(2026, 2, 13, 12, 30, tzinfo=timezone.utc)

    def test_epoch_milliseconds_and_seconds(self) -> "None":
        assert parse_timestamp(1_770_000_000_000) == parse_timestamp(1_770_000_000)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"a": 1}])
    def test_invalid(self, value: "object") -> "None":
        assert parse_timestamp(value) is None

    def test_format(self) -> "None":
        ts = datetime(2026, 2, 13, 12, 30, tzinfo=timezone.utc)
        assert format_timestamp(ts) == "2026-02-13T12:30:00.000Z"
        assert format_timestamp(None) == ""


class TestReadSessionIndex:
    def test_valid_index(self, tmp_path: "Path") -> "None":
        (tmp_path / "sessions-index.json").write_text(
            '{"entries": ['
            '{"sessionId": "a", "messageCount": 4, "modified": "2026-02-10T00:00:00Z",'
            ' "projectPath": "/work/app"},'
            '{"sessionId": "b", "messageCount": 6, "modified": "2026-02-12T00:00:00Z"}'
            "]}",
            encoding="utf-8",
        )

        index = read_session_index(tmp_path, get_decoder())

        assert index is not None
        assert index.session_count == 2
        assert index.message_count == 10
        assert index.last_active == datetime(2026, 2, 12, tzinfo=timezone.utc)
        assert index.project_path == "/work/app"

    @pytest.mark.parametrize(
        "content", ["", "{oops", "[]", '{"entries": []}', '{"entries": "x"}']
    )
    def test_unusable_index(self, tmp_path: "Path", content: "str") -> "None":
        (tmp_path / "sessions-index.json").write_text(content, encoding="utf-8")
        assert read_session_index(tmp_path, get_decoder()) is None

    def test_missing_index(self, tmp_path: "Path") -> "None":
        assert read_session_index(tmp_path, get_decoder()) is None


class TestParseProject:
    @pytest.mark.asyncio
    async def test_logs_without_index(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project(
            "-work-app",
            sessions={
                "s1": [
                    user_record(cwd="/work/app", timestamp="2026-02-13T09:00:00Z"),
                    assistant_record(
                        "claude-sonnet-4-5", 1000, 200, 5000, 100, "2026-02-13T09:00:05Z"
                    ),
                    user_record(timestamp="2026-02-13T09:01:00Z", is_meta=True),
                ],
                "s2": [
                    user_record(cwd="/work/app", timestamp="2026-02-14T22:00:00Z"),
                    assistant_record("claude-opus-4-6", 10, 20, timestamp="2026-02-14T22:00:01Z"),
                ],
            },
        )

        summary = await parse_project("-work-app", projects_dir, get_decoder())

        assert summary is not None
        assert summary.id == "-work-app"
        assert summary.path == "/work/app"
        assert summary.display_name == "app"
        assert summary.session_count == 2
        # meta user records are not messages
        assert summary.message_count == 2
        assert summary.files_scanned == 2
        assert summary.last_active == "2026-02-14T22:00:01.000Z"
        assert set(summary.models) == {"sonnet", "opus"}
        assert summary.models["sonnet"].tokens == TokenUsage(1000, 200, 5000, 100)
        assert summary.total_tokens == TokenUsage(1010, 220, 5000, 100)
        assert summary.estimated_cost == pytest.approx(
            cost(TokenUsage(1000, 200, 5000, 100), "sonnet")
            + cost(TokenUsage(10, 20), "opus")
        )
        assert sorted(summary.daily_activity) == ["2026-02-13", "2026-02-14"]
        assert summary.daily_activity["2026-02-13"].message_count == 1
        assert summary.daily_activity["2026-02-13"].session_count == 1
        assert summary.hour_counts == {9: 1, 22: 1}
        assert summary.daily_model_tokens["2026-02-13"] == {"sonnet": 1200}

    @pytest.mark.asyncio
    async def test_index_is_authoritative_for_counts(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project(
            "-work-app",
            sessions={"s1": [user_record(), assistant_record("claude-haiku-4-5", 1_000_000)]},
            index={
                "entries": [
                    {
                        "sessionId": "s1",
                        "messageCount": 40,
                        "modified": "2026-03-01T10:00:00.000Z",
                        "projectPath": "/indexed/app",
                    },
                    {"sessionId": "s0", "messageCount": 2},
                ]
            },
        )

        summary = await parse_project("-work-app", projects_dir, get_decoder())

        assert summary is not None
        assert summary.session_count == 2
        assert summary.message_count == 42
        assert summary.path == "/indexed/app"
        assert summary.last_active == "2026-03-01T10:00:00.000Z"
        # tokens always come from the logs
        assert summary.estimated_cost == pytest.approx(1.00)

    @pytest.mark.asyncio
    async def test_index_without_logs(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project(
            "p", index={"entries": [{"sessionId": "s", "messageCount": 3}]}
        )

        summary = await parse_project("p", projects_dir, get_decoder())

        assert summary is not None
        assert summary.message_count == 3
        assert summary.estimated_cost == 0.0
        assert summary.models == {}

    @pytest.mark.asyncio
    async def test_empty_directory_is_omitted(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("empty")
        assert await parse_project("empty", projects_dir, get_decoder()) is None

    @pytest.mark.asyncio
    async def test_missing_directory(self, projects_dir: "Path") -> "None":
        assert await parse_project("ghost", projects_dir, get_decoder()) is None

    @pytest.mark.asyncio
    async def test_path_falls_back_to_decoded_name(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("-home-dev-tool", sessions={"s": [assistant_record("sonnet", 1)]})

        summary = await parse_project("-home-dev-tool", projects_dir, get_decoder())

        assert summary is not None
        assert summary.path == "/home/dev/tool"
        assert summary.display_name == "tool"

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        project_dir = make_project("p")
        write_log(
            project_dir / "s.jsonl",
            [assistant_record("sonnet", 100), assistant_record("sonnet", 200)],
            extra_lines=["{broken", "null", '"string"'],
        )

        summary = await parse_project("p", projects_dir, get_decoder())

        assert summary is not None
        assert summary.total_tokens.input == 300

    @pytest.mark.asyncio
    async def test_unknown_model_is_priced_as_default_family(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("p", sessions={"s": [assistant_record("<synthetic>", 1_000_000)]})

        summary = await parse_project("p", projects_dir, get_decoder())

        assert summary is not None
        assert list(summary.models) == ["sonnet"]
        assert summary.estimated_cost == pytest.approx(3.0)


class TestParseProjects:
    @pytest.mark.asyncio
    async def test_skips_empty_and_missing(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a", sessions={"s": [assistant_record("sonnet", 1)]})
        make_project("empty")

        task = ParseTask(project_ids=("a", "empty", "ghost"), projects_dir=str(projects_dir))
        summaries = await parse_projects(task)

        assert [s.id for s in summaries] == ["a"]

    @pytest.mark.asyncio
    async def test_json_decoder_gives_same_result(
        self,
        projects_dir: "Path",
        make_project: "Callable[..., Path]",
    ) -> "None":
        make_project("a", sessions={"s": [user_record(), assistant_record("opus", 5, 6, 7, 8)]})

        fast = await parse_projects(ParseTask(("a",), str(projects_dir), decoder="orjson"))
        plain = await parse_projects(ParseTask(("a",), str(projects_dir), decoder="json"))

        assert fast == plain
