import json
from pathlib import Path
from typing import Any, Iterator, Protocol

import orjson
import structlog

logger = structlog.get_logger()

# lines above this size are treated as malformed (10MB)
MAX_LINE_SIZE = 10 * 1024 * 1024
# only the first few malformed lines of a file are logged
MAX_ERRORS_TO_LOG = 3


class Decoder(Protocol):
    """
    Decoder turns one line of text into one JSON value. Implementations
    raise ValueError (or RecursionError) for text that is not valid JSON.
    """

    @property
    def name(self) -> "str": ...

    def loads(self, text: "str") -> "Any": ...


class OrjsonDecoder:
    @property
    def name(self) -> "str":
        return "orjson"

    def loads(self, text: "str") -> "Any":
        # orjson.JSONDecodeError subclasses ValueError
        return orjson.loads(text)


class JsonDecoder:
    @property
    def name(self) -> "str":
        return "json"

    def loads(self, text: "str") -> "Any":
        return json.loads(text)


DECODERS: "dict[str, type]" = {
    "orjson": OrjsonDecoder,
    "json": JsonDecoder,
}


def get_decoder(name: "str" = "orjson") -> "Decoder":
    """
    returns the decoder registered under the given name.
    """
    try:
        return DECODERS[name]()
    except KeyError:
        raise ValueError(
            f"unknown decoder {name!r}, expected one of {sorted(DECODERS)}"
        ) from None


def stream_records(path: "str | Path", decoder: "Decoder") -> "Iterator[Any]":
    """
    lazily decodes a newline-delimited JSON file, one value per line.

    Blank lines and '#' comments are skipped. Malformed lines are skipped
    too and do not abort the file; only the first MAX_ERRORS_TO_LOG of them
    are logged.
    """
    path = Path(path)
    error_count = 0
    line_number = 0

    try:
        f = open(path, "r", encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("log_file_unreadable", path=str(path), error=str(e))
        return

    with f:
        for line in f:
            line_number += 1
            text = line.strip()
            if not text or text.startswith("#"):
                continue

            try:
                if len(text) > MAX_LINE_SIZE:
                    raise ValueError(
                        f"line exceeds {MAX_LINE_SIZE // (1024 * 1024)}MB"
                    )
                value = decoder.loads(text)
            except (ValueError, RecursionError) as e:
                error_count += 1
                if error_count <= MAX_ERRORS_TO_LOG:
                    logger.warning(
                        "malformed_log_line",
                        path=str(path),
                        line=line_number,
                        error=str(e),
                    )
                elif error_count == MAX_ERRORS_TO_LOG + 1:
                    logger.warning("suppressing_malformed_lines", path=str(path))
                continue

            yield value

    if error_count > MAX_ERRORS_TO_LOG:
        logger.warning(
            "malformed_log_lines_total",
            path=str(path),
            count=error_count,
        )
