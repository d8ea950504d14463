from pathlib import Path
from typing import Any, Callable

import orjson
import pytest
from prometheus_client import CollectorRegistry


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


def assistant_record(
    model: "str",
    input_tokens: "int" = 0,
    output_tokens: "int" = 0,
    cache_read: "int" = 0,
    cache_creation: "int" = 0,
    timestamp: "str" = "2026-02-13T12:00:00.000Z",
) -> "dict[str, Any]":
    return {
        "type": "assistant",
        "timestamp": timestamp,
        "message": {
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_creation,
            },
        },
    }


def user_record(
    cwd: "str" = "/home/dev/app",
    timestamp: "str" = "2026-02-13T12:00:00.000Z",
    is_meta: "bool" = False,
) -> "dict[str, Any]":
    record: "dict[str, Any]" = {
        "type": "user",
        "timestamp": timestamp,
        "cwd": cwd,
        "message": {"role": "user", "content": "hi"},
    }
    if is_meta:
        record["isMeta"] = True
    return record


def write_log(
    path: "Path",
    records: "list[Any]",
    extra_lines: "list[str] | None" = None,
) -> "Path":
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [orjson.dumps(r).decode() for r in records]
    lines.extend(extra_lines or [])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture()
def projects_dir(tmp_path: "Path") -> "Path":
    root = tmp_path / "projects"
    root.mkdir()
    return root


@pytest.fixture()
def make_project(projects_dir: "Path") -> "Callable[..., Path]":
    """
    creates <projects_dir>/<project_id>/ with one log per session.
    """

    def _make(
        project_id: "str",
        sessions: "dict[str, list[Any]] | None" = None,
        index: "dict[str, Any] | None" = None,
    ) -> "Path":
        project_dir = projects_dir / project_id
        project_dir.mkdir(parents=True, exist_ok=True)
        for session_id, records in (sessions or {}).items():
            write_log(project_dir / f"{session_id}.jsonl", records)
        if index is not None:
            (project_dir / "sessions-index.json").write_bytes(orjson.dumps(index))
        return project_dir

    return _make
