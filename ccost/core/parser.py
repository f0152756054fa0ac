"""
JSONL log parsing.

Turns raw conversation-log lines into UsageRecords. Every line is parsed on
its own: a malformed line is skipped and counted, never fatal.
"""

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path, PurePath
from typing import Any, Dict, Iterable, Iterator, Optional

from ccost.config.logger import get_logger
from ccost.core.errors import InputNotFoundError
from ccost.core.token_counter import TokenUsage
from ccost.storage.models import UsageRecord

LOGGER = get_logger("ccost.parser")

UNKNOWN_PROJECT = "Unknown"
UNKNOWN_MODEL = "unknown"

# Older producers write camelCase counters at the top level,
# newer ones write snake_case counters under message.usage
_TOP_LEVEL_USAGE_KEYS = {
    "input_tokens": "inputTokens",
    "output_tokens": "outputTokens",
    "cache_creation_tokens": "cacheCreationInputTokens",
    "cache_read_tokens": "cacheReadInputTokens",
}
_MESSAGE_USAGE_KEYS = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_creation_tokens": "cache_creation_input_tokens",
    "cache_read_tokens": "cache_read_input_tokens",
}

# fromisoformat before Python 3.11 only takes 3- or 6-digit fractions
_FRACTION_PATTERN = re.compile(r"\.(\d+)")


@dataclass
class ParseStats:
    """Line counters updated while a stream is consumed."""
    total_lines: int = 0
    parsed: int = 0
    malformed: int = 0

    def merge(self, other: "ParseStats") -> None:
        self.total_lines += other.total_lines
        self.parsed += other.parsed
        self.malformed += other.malformed


class MalformedLine(ValueError):
    """A line failed structural validation."""


def parse_lines(
    lines: Iterable[str],
    project: Optional[str] = None,
    stats: Optional[ParseStats] = None,
    source: str = "<stream>",
) -> Iterator[UsageRecord]:
    """Lazily parse JSONL lines into usage records.

    Blank lines are ignored. Lines that are not JSON objects or that lack a
    valid timestamp are skipped and counted in ``stats.malformed``.

    Args:
        lines: Raw text lines
        project: Project name used when a line carries no working-directory hint
        stats: Counters to update; a private instance is used when omitted
        source: Name used in log messages

    Yields:
        UsageRecord for every well-formed line
    """
    if stats is None:
        stats = ParseStats()

    for line_number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        stats.total_lines += 1
        try:
            record = parse_line(line, project)
        except MalformedLine as e:
            stats.malformed += 1
            LOGGER.debug(
                "Skipping malformed line",
                extra={"source": source, "line": line_number, "reason": str(e)},
            )
            continue
        stats.parsed += 1
        yield record


def parse_line(line: str, project: Optional[str] = None) -> UsageRecord:
    """Parse a single JSONL line.

    Raises:
        MalformedLine: If the line is not a JSON object or has no usable timestamp
    """
    try:
        payload = json.loads(line)
    except ValueError as e:
        raise MalformedLine(f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedLine("line is not a JSON object")

    timestamp = _parse_timestamp(payload.get("timestamp"))
    message = payload.get("message")
    if not isinstance(message, dict):
        message = {}

    return UsageRecord(
        timestamp=timestamp,
        project=_project_from_payload(payload) or project or UNKNOWN_PROJECT,
        model=_clean_id(message.get("model")) or _clean_id(payload.get("model")) or UNKNOWN_MODEL,
        usage=_extract_usage(payload, message),
        message_id=_clean_id(message.get("id")) or _clean_id(payload.get("uuid")),
        request_id=_clean_id(payload.get("requestId")),
        session_id=_clean_id(payload.get("sessionId")),
        embedded_cost=_parse_cost(payload.get("costUSD")),
    )


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise MalformedLine("missing timestamp")
    text = value.strip()
    # fromisoformat only accepts a trailing Z from Python 3.11 on
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MalformedLine(f"invalid timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _clean_id(value: Any) -> Optional[str]:
    """Normalize an identifier: non-strings and empty strings count as absent."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    # json.loads accepts Infinity and NaN
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    if value < 0:
        return 0
    return int(value)


def _extract_usage(payload: Dict[str, Any], message: Dict[str, Any]) -> TokenUsage:
    top_level = payload.get("usage")
    if isinstance(top_level, dict):
        source, keys = top_level, _TOP_LEVEL_USAGE_KEYS
    elif isinstance(message.get("usage"), dict):
        source, keys = message["usage"], _MESSAGE_USAGE_KEYS
    else:
        return TokenUsage()
    return TokenUsage(**{field: _count(source.get(key)) for field, key in keys.items()})


def _parse_cost(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        cost = Decimal(str(value))
    except InvalidOperation:
        return None
    if not cost.is_finite() or cost < 0:
        return None
    return cost


def _project_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    for field in ("cwd", "originalCwd"):
        name = project_name_from_path(payload.get(field))
        if name:
            return name
    return None


def project_name_from_path(path: Any) -> Optional[str]:
    """Derive a project name from a working directory.

    Uses the last path component; ``~/.config/nvim`` becomes ``nvim``.
    """
    if not isinstance(path, str) or not path.strip():
        return None
    parts = PurePath(path.strip().rstrip("/\\")).parts
    if not parts:
        return None
    name = parts[-1]
    if name in ("/", "\\", ".config"):
        return None
    return name


class JsonlSource:
    """Restartable line source over a JSONL file.

    Each iteration re-opens the file from the top, so the same source can be
    consumed more than once.
    """

    def __init__(self, path, project: Optional[str] = None):
        self.path = Path(path)
        self.project = project

    def __iter__(self) -> Iterator[str]:
        try:
            handle = open(self.path, "r", encoding="utf-8", errors="replace")
        except OSError as e:
            raise InputNotFoundError(f"Cannot read log file {self.path}: {e}") from e
        with handle:
            yield from handle

    def records(self, stats: Optional[ParseStats] = None) -> Iterator[UsageRecord]:
        """Parse the file into usage records."""
        return parse_lines(self, project=self.project, stats=stats, source=str(self.path))
