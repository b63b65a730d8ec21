"""Message file codec: filename grammar and header + body documents.

A message file looks like::

    20250115T103045-alice-a3f8x2.md

    ---
    from: alice
    date: 2025-01-15T10:30:45Z
    reply_to: 20250115T102000-bob-9k2m4p.md
    tags: [design, api]
    ---

    Message body in markdown.

Lexicographic filename order equals chronological order. The header is a
flat ``key: value`` block, not general YAML: nested or multi-line values are
rejected so every client parses the same bytes the same way.
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone

from vibechannel.core.models import Message, VersionToken

DELIMITER = "---"
ID_LENGTH = 6

_ID_ALPHABET = string.ascii_lowercase + string.digits

_FILENAME_RE = re.compile(
    r"^(?P<timestamp>\d{8}[Tt]\d{6})-(?P<sender>[a-z0-9]+)-(?P<id>[a-z0-9]+)(?P<ext>\.[mM][dD])$"
)
_TIMESTAMP_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})[Tt](\d{2})(\d{2})(\d{2})$")
_SENDER_RE = re.compile(r"^[a-z0-9]+$")
_DELIMITER_RE = re.compile(r"^[ \t]*" + re.escape(DELIMITER) + r"[ \t]*\r?$", re.MULTILINE)
_EXT_RE = re.compile(r"\.md$", re.IGNORECASE)

# Documents living next to messages that are never messages themselves
_RESERVED_FILES = {"schema.md", "agent.md", "readme.md"}

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)
_UTC_FALLBACK_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# --- Errors ---


class DecodeError(ValueError):
    """A message document could not be decoded."""

    def __init__(self, message: str, filename: str = "") -> None:
        super().__init__(f"{filename}: {message}" if filename else message)
        self.filename = filename


class MalformedHeader(DecodeError):
    """Header delimiters missing or a header line is not a flat key: value pair."""


class MissingField(DecodeError):
    """A required header field is absent."""

    def __init__(self, field: str, filename: str = "") -> None:
        super().__init__(f"Missing required field: {field}", filename)
        self.field = field


class InvalidDate(DecodeError):
    """The required date field cannot be parsed."""

    def __init__(self, value: str, filename: str = "") -> None:
        super().__init__(f"Invalid date format: {value}", filename)
        self.value = value


# --- Filenames ---


@dataclass(frozen=True)
class ParsedFilename:
    """Components of a message filename."""

    timestamp: str  # "20250115T103045"
    sender: str  # "alice"
    id: str  # "a3f8x2"
    extension: str = ".md"

    def filename(self) -> str:
        return f"{self.timestamp}-{self.sender}-{self.id}{self.extension}"


def parse_filename(filename: str) -> ParsedFilename | None:
    """Split a message filename into timestamp, sender and id.

    Returns None for anything that does not match the grammar exactly.
    """
    match = _FILENAME_RE.fullmatch(filename)
    if match is None:
        return None
    return ParsedFilename(
        timestamp=match.group("timestamp"),
        sender=match.group("sender"),
        id=match.group("id"),
        extension=match.group("ext"),
    )


def is_message_file(filename: str) -> bool:
    """True if a directory entry should be enumerated as a message."""
    if filename.startswith("."):
        return False
    if filename.lower() in _RESERVED_FILES:
        return False
    return parse_filename(filename) is not None


def parse_timestamp(timestamp: str) -> datetime | None:
    """Parse the YYYYMMDDTHHMMSS filename timestamp (UTC)."""
    match = _TIMESTAMP_RE.fullmatch(timestamp)
    if match is None:
        return None
    try:
        return datetime(*(int(p) for p in match.groups()), tzinfo=timezone.utc)
    except ValueError:
        return None


def message_id(filename: str) -> str:
    """Message id: the filename with its extension stripped."""
    return _EXT_RE.sub("", filename)


def generate_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_filename(sender: str, now: datetime | None = None) -> str:
    """Build a fresh {timestamp}-{sender}-{id}.md filename."""
    now = _to_utc(now or datetime.now(timezone.utc))
    sender = _check_sender(sender)
    return f"{now.strftime('%Y%m%dT%H%M%S')}-{sender}-{generate_id()}.md"


def normalize_sender(name: str) -> str:
    """Reduce a display name (e.g. git user.name) to a filename-safe sender."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


# --- Dates ---


def format_date(dt: datetime) -> str:
    """Format a datetime as ISO 8601, UTC, second precision."""
    return _to_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_date(value: str) -> datetime | None:
    """Parse an ISO 8601 header date, normalized to UTC. None if unparseable."""
    value = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).astimezone(timezone.utc)
        except ValueError:
            continue
    try:
        return datetime.strptime(value, _UTC_FALLBACK_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


# --- Encoding ---


def encode(
    sender: str,
    body: str,
    reply_to: str | None = None,
    tags: list[str] | tuple[str, ...] | None = None,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Encode a new message. Returns (filename, document)."""
    now = _to_utc(now or datetime.now(timezone.utc)).replace(microsecond=0)
    sender = _check_sender(sender)
    filename = generate_filename(sender, now)
    document = render_document(sender, now, body, reply_to=reply_to, tags=tags)
    return filename, document


def render_document(
    sender: str,
    created: datetime,
    body: str,
    reply_to: str | None = None,
    tags: list[str] | tuple[str, ...] | None = None,
    edited: datetime | None = None,
) -> str:
    """Render a header + body document."""
    lines = [DELIMITER, f"from: {sender}", f"date: {format_date(created)}"]
    if edited is not None:
        lines.append(f"edited: {format_date(edited)}")
    if reply_to:
        lines.append(f"reply_to: {reply_to}")
    tag_list = _normalize_tags(tags or ())
    if tag_list:
        lines.append(f"tags: [{', '.join(tag_list)}]")
    lines.append(DELIMITER)
    return "\n".join(lines) + "\n\n" + body.strip()


def render_message(message: Message) -> str:
    """Render an existing Message back into its document."""
    return render_document(
        message.sender,
        message.created,
        message.body,
        reply_to=message.reply_to,
        tags=message.tags,
        edited=message.edited,
    )


# --- Decoding ---


def decode(
    filename: str,
    document: str,
    version_token: VersionToken | None = None,
) -> Message:
    """Decode a message document.

    Raises:
        MalformedHeader: Fewer than two delimiter lines, or a header line
            that is not a flat key: value pair.
        MissingField: 'from' or 'date' is absent.
        InvalidDate: 'date' cannot be parsed.
    """
    header_text, body = split_document(document, filename)
    header = parse_header(header_text, filename)

    sender = header.get("from")
    if not sender:
        raise MissingField("from", filename)
    date_value = header.get("date")
    if not date_value:
        raise MissingField("date", filename)
    created = parse_date(date_value)
    if created is None:
        raise InvalidDate(date_value, filename)

    edited_value = header.get("edited")
    edited = parse_date(edited_value) if edited_value else None

    return Message(
        id=message_id(filename),
        filename=filename,
        sender=sender,
        created=created,
        body=body.strip(),
        reply_to=header.get("reply_to") or None,
        tags=parse_tags(header.get("tags")),
        edited=edited,
        version_token=version_token,
    )


def split_document(document: str, filename: str = "") -> tuple[str, str]:
    """Split a document into (header, body) on the first two delimiter lines.

    Both parts are slices of the input, so the body keeps its exact text.
    """
    marks = _DELIMITER_RE.finditer(document)
    start, end = next(marks, None), next(marks, None)
    if start is None or end is None:
        raise MalformedHeader(
            "Invalid header format - expected '---' delimiters", filename
        )
    header = document[start.end() : end.start()]
    body = document[end.end() :]
    if body.startswith("\n"):
        body = body[1:]
    return header, body


def parse_header(text: str, filename: str = "") -> dict[str, str]:
    """Parse a flat key: value header block."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if line[:1].isspace():
            raise MalformedHeader(f"Nested or multi-line value: {stripped!r}", filename)
        key, sep, value = stripped.partition(":")
        key = key.strip()
        if not sep or not key:
            raise MalformedHeader(f"Expected 'key: value', got {stripped!r}", filename)
        result[key] = value.strip().strip("\"'")
    return result


def parse_tags(value: str | None) -> tuple[str, ...]:
    """Parse '[a, b]' or 'a, b' into an ordered set of tags."""
    if not value:
        return ()
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    return _normalize_tags(value.split(","))


# --- Internal helpers ---


def _normalize_tags(tags) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for tag in tags:
        tag = str(tag).strip().strip("\"'")
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


def _check_sender(sender: str) -> str:
    sender = sender.lower()
    if not _SENDER_RE.fullmatch(sender):
        raise ValueError(f"Sender must be lowercase alphanumeric: {sender!r}")
    return sender


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
