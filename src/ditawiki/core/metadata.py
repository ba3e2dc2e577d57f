"""Preamble parsing, role detection and map/topic compatibility."""

import re
from datetime import date, datetime
from pathlib import PurePosixPath
from typing import Any, Literal

import yaml
from pydantic import ValidationError

from ditawiki.core.errors import MalformedPreambleError
from ditawiki.core.models import MapMetadata, TopicMetadata

Role = Literal["topic", "map"]

FRONTMATTER_PATTERN = re.compile(
    r"^\ufeff?---[ \t]*\n(?:(.*?)\n)?---[ \t]*(?:\n|$)",
    re.DOTALL,
)

WIKI_LINK_TARGET_PATTERN = re.compile(r"(?<!!)\[\[([^\]|#]+)(?:#[^\]|]*)?(?:\|[^\]]+)?\]\]")
LIST_LINK_PATTERN = re.compile(r"^\s*[-*]\s*\[[^\]]+\]\(([^)]+)\)", re.MULTILINE)
BARE_LIST_PATTERN = re.compile(r"^\s*[-*]\s+(.+?)\s*$", re.MULTILINE)

# Ordinal rankings used by the compatibility check.
AUDIENCE_LEVELS = ("beginner", "intermediate", "expert", "Undergraduate Students")
ACCESS_LEVELS = ("public", "restricted", "classified")


def split_preamble(source: str) -> tuple[dict[str, Any], str]:
    """Split a YAML preamble from the body.

    Returns ``(data, body)``; ``data`` is empty when there is no preamble.

    Raises:
        MalformedPreambleError: The preamble is present but is not a YAML mapping.
    """
    match = FRONTMATTER_PATTERN.match(source)
    if not match:
        return {}, source
    try:
        data = yaml.safe_load(match.group(1) or "") or {}
    except yaml.YAMLError as e:
        raise MalformedPreambleError(f"Invalid YAML preamble: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPreambleError("Preamble is not a key/value mapping")
    return {str(k): v for k, v in data.items()}, source[match.end() :]


def detect_role(path: str | None, data: dict[str, Any], xml_root: str | None = None) -> Role:
    """Decide whether a source is a map or a topic."""
    if xml_root == "map":
        return "map"
    if data.get("kind") in ("map", "topic"):
        return data["kind"]
    if path:
        posix = PurePosixPath(path.replace("\\", "/"))
        if posix.suffix == ".ditamap" or "maps" in posix.parts[:-1]:
            return "map"
    if data.get("topics"):
        return "map"
    return "topic"


def build_metadata(data: dict[str, Any], role: Role) -> TopicMetadata | MapMetadata:
    """Validate raw preamble data into the metadata variant for ``role``.

    Raises:
        MalformedPreambleError: A field has a value of the wrong shape.
    """
    data = {k: v for k, v in data.items() if k != "kind"}
    try:
        if role == "map":
            return MapMetadata.model_validate(data)
        return TopicMetadata.model_validate(data)
    except ValidationError as e:
        raise MalformedPreambleError(f"Invalid preamble fields: {e}") from e


def empty_metadata(role: Role) -> TopicMetadata | MapMetadata:
    """Return metadata with every field unknown."""
    return MapMetadata() if role == "map" else TopicMetadata()


def extract_topic_refs(body: str) -> list[str]:
    """Extract ordered topic references from a markdown map body.

    Wikilinks win; otherwise markdown list links; otherwise bare list items.
    """
    refs = [m.group(1).strip() for m in WIKI_LINK_TARGET_PATTERN.finditer(body)]
    if refs:
        return refs
    refs = [m.group(1).strip() for m in LIST_LINK_PATTERN.finditer(body)]
    if refs:
        return refs
    refs = []
    for m in BARE_LIST_PATTERN.finditer(body):
        item = m.group(1)
        if item.startswith("#") or item.startswith("["):
            continue
        refs.append(item)
    return refs


def _rank(value: str | None, levels: tuple[str, ...]) -> int | None:
    if value is None:
        return None
    lowered = [level.lower() for level in levels]
    try:
        return lowered.index(value.strip().lower())
    except ValueError:
        return None


def _parse_date(value: str) -> date | None:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def is_topic_compatible_with_map(
    topic: TopicMetadata,
    map_metadata: MapMetadata,
    today: date | None = None,
) -> tuple[bool, str | None]:
    """Check whether a topic may be shown inside a map.

    Returns:
        Tuple of (compatible, reason). ``reason`` is ``None`` when compatible.
    """
    if topic.audience and map_metadata.audience:
        topic_level = _rank(topic.audience, AUDIENCE_LEVELS)
        map_level = _rank(map_metadata.audience, AUDIENCE_LEVELS)
        if topic_level is None or map_level is None:
            return False, f"Unknown audience level: {topic.audience!r} / {map_metadata.audience!r}"
        if topic_level > map_level:
            return False, "Topic audience level exceeds map audience level"

    if map_metadata.publish_date:
        publish_date = _parse_date(map_metadata.publish_date)
        if publish_date is not None and publish_date > (today or date.today()):
            return False, "Map publish date is in the future"

    # Unknown levels rank below "public"
    topic_access = _rank(topic.access_level, ACCESS_LEVELS)
    map_access = _rank(map_metadata.access_level, ACCESS_LEVELS)
    if topic_access is not None and topic_access > (-1 if map_access is None else map_access):
        return False, "Topic access level exceeds map access level"

    return True, None
