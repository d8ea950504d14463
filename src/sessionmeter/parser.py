import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from sessionmeter import paths
from sessionmeter.decoder import Decoder, get_decoder, stream_records
from sessionmeter.models import (
    DailyActivity,
    ModelUsage,
    ParseTask,
    ProjectSummary,
    TokenUsage,
    as_count,
)
from sessionmeter.pricing import cost, model_family

logger = structlog.get_logger()

# simultaneous log file reads per project
DEFAULT_MAX_OPEN_FILES = 16


@dataclass
class SessionIndex:
    """
    SessionIndex is the authoritative metadata of a project's
    sessions-index.json, when that file exists and is well-formed.
    """

    session_count: "int"
    message_count: "int"
    last_active: "datetime | None"
    project_path: "str"


@dataclass
class FileScan:
    """
    FileScan accumulates everything aggregated from one log file.
    Each scan is owned by a single thread and merged afterwards.
    """

    family_tokens: "dict[str, TokenUsage]" = field(default_factory=dict)
    user_messages: "int" = 0
    cwd: "str" = ""
    latest: "datetime | None" = None
    daily_messages: "dict[str, int]" = field(default_factory=lambda: defaultdict(int))
    hour_counts: "dict[int, int]" = field(default_factory=lambda: defaultdict(int))
    # date -> family -> input + output tokens
    daily_model_tokens: "dict[str, dict[str, int]]" = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )

    def add_usage(
        self, family: "str", tokens: "TokenUsage", ts: "datetime | None"
    ) -> "None":
        self.family_tokens[family] = self.family_tokens.get(family, TokenUsage()) + tokens
        if ts is not None:
            self.daily_model_tokens[ts.date().isoformat()][family] += tokens.non_cache

    def add_user_message(self, cwd: "Any", ts: "datetime | None") -> "None":
        self.user_messages += 1
        if not self.cwd and isinstance(cwd, str) and cwd:
            self.cwd = cwd
        if ts is not None:
            self.daily_messages[ts.date().isoformat()] += 1
            self.hour_counts[ts.hour] += 1


def parse_timestamp(value: "Any") -> "datetime | None":
    """
    parses ISO 8601 strings ('2026-02-13T12:00:00.000Z') and unix
    timestamps in seconds or milliseconds. Returns an aware UTC datetime.
    """
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > 1e12 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        if isinstance(value, str) and value:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return None


def format_timestamp(value: "datetime | None") -> "str":
    if value is None:
        return ""
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def read_session_index(project_dir: "Path", decoder: "Decoder") -> "SessionIndex | None":
    """
    reads the project's index file. A missing, unreadable or
    malformed index, or one without entries, returns None.
    """
    index_path = project_dir / paths.SESSION_INDEX_FILE
    try:
        data = decoder.loads(index_path.read_text(encoding="utf-8", errors="replace"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, RecursionError) as e:
        logger.debug("session_index_unusable", path=str(index_path), error=str(e))
        return None

    entries = data.get("entries") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return None
    entries = [e for e in entries if isinstance(e, dict)]
    if not entries:
        return None

    message_count = 0
    last_active: "datetime | None" = None
    for entry in entries:
        message_count += as_count(entry.get("messageCount"))
        modified = parse_timestamp(entry.get("modified"))
        if modified is not None and (last_active is None or modified > last_active):
            last_active = modified

    project_path = entries[0].get("projectPath")
    return SessionIndex(
        session_count=len(entries),
        message_count=message_count,
        last_active=last_active,
        project_path=project_path if isinstance(project_path, str) else "",
    )


def scan_log_file(path: "Path", decoder: "Decoder") -> "FileScan":
    """
    streams one session log and accumulates token usage per model
    family plus user-message activity.
    """
    scan = FileScan()
    for record in stream_records(path, decoder):
        if not isinstance(record, dict):
            continue

        ts = parse_timestamp(record.get("timestamp"))
        if ts is not None and (scan.latest is None or ts > scan.latest):
            scan.latest = ts

        message = record.get("message")
        if not isinstance(message, dict):
            message = {}

        kind = record.get("type")
        if kind == "assistant":
            usage = message.get("usage")
            if isinstance(usage, dict):
                family = model_family(str(message.get("model") or "unknown"))
                scan.add_usage(family, TokenUsage.from_usage(usage), ts)
        elif kind == "user" and record.get("isMeta") is not True:
            scan.add_user_message(record.get("cwd"), ts)

    return scan


def _list_log_files(project_dir: "Path") -> "list[Path]":
    return sorted(
        p for p in project_dir.iterdir() if p.suffix == paths.LOG_SUFFIX and p.is_file()
    )


async def _scan_all(
    log_files: "list[Path]", decoder: "Decoder", max_open_files: "int"
) -> "list[FileScan]":
    # bounds open file descriptors while still overlapping I/O
    semaphore = asyncio.Semaphore(max(1, max_open_files))

    async def _scan(path: "Path") -> "FileScan":
        async with semaphore:
            return await asyncio.to_thread(scan_log_file, path, decoder)

    return list(await asyncio.gather(*(_scan(p) for p in log_files)))


async def parse_project(
    project_id: "str",
    projects_dir: "str | Path",
    decoder: "Decoder",
    max_open_files: "int" = DEFAULT_MAX_OPEN_FILES,
) -> "ProjectSummary | None":
    """
    parses a single project directory into a ProjectSummary.

    Returns None for an unreadable directory, or for one with neither an
    index file nor any session log.
    """
    project_dir = Path(projects_dir) / project_id

    try:
        log_files = await asyncio.to_thread(_list_log_files, project_dir)
    except OSError as e:
        logger.warning("project_unreadable", project_id=project_id, error=str(e))
        return None

    index = await asyncio.to_thread(read_session_index, project_dir, decoder)
    if index is None and not log_files:
        return None

    scans = await _scan_all(log_files, decoder, max_open_files)

    family_tokens: "dict[str, TokenUsage]" = {}
    daily_messages: "dict[str, int]" = defaultdict(int)
    daily_sessions: "dict[str, int]" = defaultdict(int)
    hour_counts: "dict[int, int]" = defaultdict(int)
    daily_model_tokens: "dict[str, dict[str, int]]" = defaultdict(
        lambda: defaultdict(int)
    )
    user_messages = 0
    cwd = ""
    latest: "datetime | None" = None

    # scans are in file-name order, which keeps the cwd hint deterministic
    for scan in scans:
        for family, tokens in scan.family_tokens.items():
            family_tokens[family] = family_tokens.get(family, TokenUsage()) + tokens
        for day, count in scan.daily_messages.items():
            daily_messages[day] += count
            daily_sessions[day] += 1
        for hour, count in scan.hour_counts.items():
            hour_counts[hour] += count
        for day, by_family in scan.daily_model_tokens.items():
            for family, count in by_family.items():
                daily_model_tokens[day][family] += count
        user_messages += scan.user_messages
        if not cwd and scan.cwd:
            cwd = scan.cwd
        if scan.latest is not None and (latest is None or scan.latest > latest):
            latest = scan.latest

    if index is not None:
        session_count = index.session_count
        message_count = index.message_count
        last_active = index.last_active or latest
        project_path = index.project_path or cwd or paths.decode_project_dir(project_id)
    else:
        session_count = len(log_files)
        message_count = user_messages
        last_active = latest
        project_path = cwd or paths.decode_project_dir(project_id)

    # one cost call per model family
    models = {
        family: ModelUsage(tokens=tokens, estimated_cost=cost(tokens, family))
        for family, tokens in family_tokens.items()
    }
    total_tokens = sum((m.tokens for m in models.values()), TokenUsage())
    estimated_cost = sum(m.estimated_cost for m in models.values())

    return ProjectSummary(
        id=project_id,
        display_name=paths.display_name(project_path),
        path=project_path,
        session_count=session_count,
        message_count=message_count,
        total_tokens=total_tokens,
        last_active=format_timestamp(last_active),
        estimated_cost=estimated_cost,
        models=models,
        daily_activity={
            day: DailyActivity(
                date=day,
                message_count=count,
                session_count=daily_sessions[day],
            )
            for day, count in sorted(daily_messages.items())
        },
        daily_model_tokens={
            day: dict(by_family) for day, by_family in sorted(daily_model_tokens.items())
        },
        hour_counts=dict(sorted(hour_counts.items())),
        files_scanned=len(log_files),
    )


async def parse_projects(task: "ParseTask") -> "list[ProjectSummary]":
    """
    parses the task's projects one after another. A project whose parse
    raises is logged and left out; empty projects are left out too.
    """
    decoder = get_decoder(task.decoder)
    results: "list[ProjectSummary]" = []

    for project_id in task.project_ids:
        try:
            summary = await parse_project(
                project_id, task.projects_dir, decoder, task.max_open_files
            )
        except Exception:
            logger.exception("project_parse_failed", project_id=project_id)
            continue

        if summary is not None:
            results.append(summary)

    return results


def run_parse_task(task: "ParseTask") -> "list[ProjectSummary]":
    """
    synchronous entry point for worker processes.
    """
    return asyncio.run(parse_projects(task))