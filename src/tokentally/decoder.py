import json
import re
import uuid
from datetime import datetime, timezone
from typing import Callable, NamedTuple

from tokentally.models import UsageEvent

# top-level record type of messages that carry token usage
ASSISTANT_TYPE = "assistant"

# fractional seconds first, each with and without an offset
_ISO_FORMATS: "tuple[str, ...]" = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S",
)


# strptime reads at most microseconds, finer digits are dropped
_EXTRA_FRACTION_DIGITS = re.compile(r"(\.\d{6})\d+")


class DecodedLine(NamedTuple):
    """
    DecodedLine is the result of decoding one parseable log line.
    session_id is set whenever the line declares one, event only
    when the line is a usage-bearing assistant record.
    """

    session_id: "str | None"
    event: "UsageEvent | None"


def _new_id() -> "str":
    return str(uuid.uuid4())


def parse_timestamp(value: "object") -> "datetime | None":
    """
    parses an ISO-8601 instant, first with fractional seconds and
    then without. Naive values are taken as UTC. Returns None if
    neither format matches. Fractions finer than microseconds are
    truncated.
    """
    if not isinstance(value, str) or not value:
        return None

    text = _EXTRA_FRACTION_DIGITS.sub(r"\1", value.strip())
    for fmt in _ISO_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    return None


def _token_count(usage: "dict", key: "str") -> "int":
    value = usage.get(key)
    # bool is an int subclass, it is never a token count
    if not isinstance(value, int) or isinstance(value, bool):
        return 0
    return max(0, value)


def _optional_str(value: "object") -> "str | None":
    return value if isinstance(value, str) else None


def decode_line(
    line: "str",
    now: "datetime | None" = None,
    id_factory: "Callable[[], str] | None" = None,
    default_session_id: "str | None" = None,
) -> "DecodedLine | None":
    """
    decodes a single JSONL line. Returns None for blank or malformed
    lines. Records that are not assistant messages with a response
    id and usage data decode to a DecodedLine without an event.

    now is the fallback timestamp for events whose timestamp is
    missing or unparseable, and id_factory generates event ids
    when the record has no uuid. Events of records without a
    sessionId belong to default_session_id; DecodedLine.session_id
    only reports what the line itself declares.
    """
    if not line or not line.strip():
        return None

    try:
        record = json.loads(line)
    except ValueError:
        return None

    if not isinstance(record, dict):
        return None

    session_id = _optional_str(record.get("sessionId"))

    message = record.get("message")
    if record.get("type") != ASSISTANT_TYPE or not isinstance(message, dict):
        return DecodedLine(session_id, None)

    usage = message.get("usage")
    message_id = _optional_str(message.get("id"))
    if not isinstance(usage, dict) or message_id is None:
        return DecodedLine(session_id, None)

    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        # keep the tokens even if the event lands in the wrong bucket
        timestamp = now or datetime.now(timezone.utc)

    event_id = _optional_str(record.get("uuid"))
    if event_id is None:
        event_id = (id_factory or _new_id)()

    event = UsageEvent(
        uuid=event_id,
        session_id=session_id if session_id is not None else default_session_id,
        timestamp=timestamp,
        model=_optional_str(message.get("model")),
        input_tokens=_token_count(usage, "input_tokens"),
        output_tokens=_token_count(usage, "output_tokens"),
        cache_creation_tokens=_token_count(usage, "cache_creation_input_tokens"),
        cache_read_tokens=_token_count(usage, "cache_read_input_tokens"),
        message_id=message_id,
        request_id=_optional_str(record.get("requestId")),
    )
    return DecodedLine(session_id, event)
