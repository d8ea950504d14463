import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import orjson
import structlog

logger = structlog.get_logger()

ENV_PREFIX = "SESSIONMETER_"
CONFIG_ENV = "SESSIONMETER_CONFIG"


def _default_projects_dir() -> "str":
    return str(Path.home() / ".claude" / "projects")


def default_config_path() -> "Path":
    return Path.home() / ".claude" / ".sessionmeter.json"


def _parse_bool(value: "Any") -> "bool":
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_number(value: "Any") -> "float":
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    number = float(value)
    if number < 0:
        raise ValueError(f"negative value: {value!r}")
    return number


def _parse_int(value: "Any") -> "int":
    return int(_parse_number(value))


def _parse_str(value: "Any") -> "str":
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a string: {value!r}")
    return value.strip()


@dataclass(frozen=True, slots=True)
class _Setting:
    # dataclass field on Config
    name: "str"
    env: "str"
    file_key: "str"
    parse: "Callable[[Any], Any]"
    # file values are multiplied by this (gracePeriodMinutes)
    file_scale: "float" = 1


_SETTINGS: "tuple[_Setting, ...]" = (
    _Setting("projects_dir", "PROJECTS_DIR", "projectsDir", _parse_str),
    _Setting(
        "grace_period", "GRACE_PERIOD_SECONDS", "gracePeriodMinutes", _parse_number, 60
    ),
    _Setting(
        "session_idle_timeout",
        "SESSION_IDLE_TIMEOUT_SECONDS",
        "sessionIdleTimeoutSeconds",
        _parse_number,
    ),
    _Setting("sweep_interval", "SWEEP_INTERVAL_SECONDS", "sweepIntervalSeconds", _parse_number),
    _Setting(
        "refresh_interval", "REFRESH_INTERVAL_SECONDS", "refreshIntervalSeconds", _parse_number
    ),
    _Setting("max_workers", "MAX_WORKERS", "maxWorkers", _parse_int),
    _Setting("worker_timeout", "WORKER_TIMEOUT_SECONDS", "workerTimeoutSeconds", _parse_number),
    _Setting("max_open_files", "MAX_OPEN_FILES", "maxOpenFiles", _parse_int),
    _Setting("use_workers", "USE_WORKERS", "useWorkers", _parse_bool),
    _Setting("use_cache", "USE_CACHE", "useCache", _parse_bool),
    _Setting("disable_shutdown", "DISABLE_SHUTDOWN", "disableShutdown", _parse_bool),
    _Setting("decoder", "DECODER", "decoder", _parse_str),
    _Setting("watch_debounce_ms", "WATCH_DEBOUNCE_MS", "watchDebounceMs", _parse_int),
    _Setting("log_level", "LOG_LEVEL", "logLevel", _parse_str),
)


@dataclass
class Config:
    projects_dir: "str" = field(default_factory=_default_projects_dir)
    # seconds without activity before shutdown, once no session is active
    grace_period: "float" = 1800
    # seconds since the last write before a session counts as idle
    session_idle_timeout: "float" = 30
    sweep_interval: "float" = 5
    # periodic full refresh, 0 disables it
    refresh_interval: "float" = 300

    max_workers: "int" = 4
    worker_timeout: "float" = 120
    max_open_files: "int" = 16
    use_workers: "bool" = True
    use_cache: "bool" = True
    disable_shutdown: "bool" = False
    decoder: "str" = "orjson"
    watch_debounce_ms: "int" = 500
    watch: "bool" = True

    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    log_level: "str" = "info"
    log_format: "str" = "console"

    @classmethod
    def from_env(
        cls,
        env: "Mapping[str, str] | None" = None,
        config_file: "str | Path | None" = None,
    ) -> "Config":
        """
        builds a Config from the environment layered over the JSON config
        file, layered over the defaults. Values that fail to parse are
        logged and the next source is used instead.
        """
        env = os.environ if env is None else env
        if config_file is None:
            config_file = env.get(CONFIG_ENV) or default_config_path()

        file_values = load_config_file(config_file)
        values: "dict[str, Any]" = {}

        for setting in _SETTINGS:
            raw = file_values.get(setting.file_key)
            if raw is not None:
                try:
                    parsed = setting.parse(raw)
                    if setting.file_scale != 1:
                        parsed = parsed * setting.file_scale
                    values[setting.name] = parsed
                except (TypeError, ValueError):
                    logger.warning(
                        "invalid_config_value",
                        source="file",
                        key=setting.file_key,
                        value=raw,
                    )

            raw = env.get(ENV_PREFIX + setting.env)
            if raw is not None and raw != "":
                try:
                    values[setting.name] = setting.parse(raw)
                except (TypeError, ValueError):
                    logger.warning(
                        "invalid_config_value",
                        source="env",
                        key=ENV_PREFIX + setting.env,
                        value=raw,
                    )

        values["projects_dir"] = os.path.expanduser(
            values.get("projects_dir", _default_projects_dir())
        )
        return cls(**values)


def load_config_file(path: "str | Path") -> "dict[str, Any]":
    """
    reads the JSON config file. A missing, unreadable or malformed file
    yields an empty mapping.
    """
    path = Path(path).expanduser()
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return {}
    except OSError as e:
        logger.warning("config_file_unreadable", path=str(path), error=str(e))
        return {}

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        logger.warning("config_file_malformed", path=str(path), error=str(e))
        return {}

    if not isinstance(data, dict):
        logger.warning("config_file_malformed", path=str(path), error="not an object")
        return {}
    return data
