import enum
from dataclasses import dataclass, field
from typing import Any


def as_count(value: "Any") -> "int":
    # bool is an int subclass, but never a token count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """
    TokenUsage counts the tokens of each category consumed
    by one or more model invocations. All fields are >= 0.
    """

    input: "int" = 0
    output: "int" = 0
    cache_read: "int" = 0
    cache_creation: "int" = 0

    @classmethod
    def from_usage(cls, usage: "dict[str, Any]") -> "TokenUsage":
        """
        builds a TokenUsage from a log record's usage object,
        defaulting absent or invalid categories to 0.
        """
        return cls(
            input=as_count(usage.get("input_tokens")),
            output=as_count(usage.get("output_tokens")),
            cache_read=as_count(usage.get("cache_read_input_tokens")),
            cache_creation=as_count(usage.get("cache_creation_input_tokens")),
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_read=self.cache_read + other.cache_read,
            cache_creation=self.cache_creation + other.cache_creation,
        )

    @property
    def total(self) -> "int":
        return self.input + self.output + self.cache_read + self.cache_creation

    @property
    def non_cache(self) -> "int":
        return self.input + self.output


@dataclass(frozen=True, slots=True)
class ModelRates:
    """
    ModelRates holds the per-million-token rates of one model
    family. A None cache rate means the family has no such rate.
    """

    input: "float"
    output: "float"
    cache_read: "float | None" = None
    cache_creation: "float | None" = None


@dataclass(frozen=True, slots=True)
class ModelUsage:
    tokens: "TokenUsage"
    estimated_cost: "float"


@dataclass(frozen=True, slots=True)
class DailyActivity:
    # UTC date, YYYY-MM-DD
    date: "str"
    message_count: "int"
    session_count: "int"


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    """
    ProjectSummary is the parsed result of one project directory.
    It is superseded whenever the directory is re-parsed.
    """

    # directory name under the projects root
    id: "str"
    display_name: "str"
    path: "str"
    session_count: "int"
    message_count: "int"
    total_tokens: "TokenUsage"
    # ISO 8601 timestamp, empty when unknown
    last_active: "str"
    estimated_cost: "float"
    # model family -> usage
    models: "dict[str, ModelUsage]" = field(default_factory=dict)
    # date -> activity
    daily_activity: "dict[str, DailyActivity]" = field(default_factory=dict)
    # date -> model family -> input + output tokens
    daily_model_tokens: "dict[str, dict[str, int]]" = field(default_factory=dict)
    # UTC hour (0-23) -> user messages
    hour_counts: "dict[int, int]" = field(default_factory=dict)
    files_scanned: "int" = 0


@dataclass(frozen=True, slots=True)
class ProjectCacheEntry:
    project_id: "str"
    # st_mtime_ns of the project directory, taken after parsing
    directory_mtime: "int"
    summary: "ProjectSummary"


@dataclass(frozen=True, slots=True)
class AggregateState:
    """
    AggregateState is the published result of one refresh. It is
    rebuilt from scratch on every refresh and replaced as a whole.
    """

    projects: "tuple[ProjectSummary, ...]"
    total_estimated_cost: "float"
    model_breakdown: "dict[str, ModelUsage]"
    # ISO 8601 timestamp
    generated_at: "str"
    total_tokens: "TokenUsage" = field(default_factory=TokenUsage)
    # cache_read / (input + cache_read + cache_creation)
    cache_hit_rate: "float" = 0.0
    total_sessions: "int" = 0
    total_messages: "int" = 0
    avg_cost_per_session: "float" = 0.0
    avg_cost_per_message: "float" = 0.0
    avg_tokens_per_message: "float" = 0.0
    avg_messages_per_session: "float" = 0.0
    # UTC hour, None without data
    most_active_hour: "int | None" = None
    most_active_day: "str" = ""
    current_streak: "int" = 0
    longest_streak: "int" = 0
    daily_activity: "tuple[DailyActivity, ...]" = ()
    # (date, approximate cost) pairs, oldest first
    daily_costs: "tuple[tuple[str, float], ...]" = ()
    recent_activity: "tuple[DailyActivity, ...]" = ()
    top_projects_by_cost: "tuple[ProjectSummary, ...]" = ()
    top_projects_by_messages: "tuple[ProjectSummary, ...]" = ()
    active_days: "int" = 0
    total_days: "int" = 0


@dataclass(frozen=True, slots=True)
class ParseTask:
    """
    ParseTask is the single message sent to a parse worker.
    Must stay picklable.
    """

    project_ids: "tuple[str, ...]"
    projects_dir: "str"
    decoder: "str" = "orjson"
    max_open_files: "int" = 16
    log_level: "str" = "info"


class LifecycleState(enum.Enum):
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    IDLE = "IDLE"
    GRACE_PERIOD = "GRACE_PERIOD"
    SHUTTING_DOWN = "SHUTTING_DOWN"


@dataclass(frozen=True, slots=True)
class SessionActivityRecord:
    project_id: "str"
    session_id: "str"
    # clock reading of the last observed write
    last_activity: "float"
    file_path: "str" = ""


@dataclass(frozen=True, slots=True)
class LifecycleStatus:
    state: "LifecycleState"
    active_sessions: "tuple[SessionActivityRecord, ...]"
    grace_timer_remaining_ms: "int"
    grace_period_ms: "int"
    grace_timer_active: "bool"
    shutdown_eligible: "bool" = False


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    ChangeEvent tells subscribers that something changed. It carries
    no data model; consumers pull the current state themselves.
    """

    type: "str"
    # unix timestamp in seconds
    timestamp: "float"
    payload: "dict[str, Any]" = field(default_factory=dict)
