"""Typed, schema-versioned metadata for knowledge items.

Knowledge metadata used to be an opaque JSON blob that every component
read and rewrote with dict spreads. Merges across reinforcement,
consolidation and promotion silently drifted its shape. This module
gives the blob a typed shape:

- Known keys are dataclass fields with coercion on read.
- Unknown keys are kept verbatim in ``extra`` and flattened back out on write.
- ``schema_version`` is stamped on every write; older rows are upgraded on read.
- The serialized form is checked with a JSON Schema before persistence.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from .protocols import MetadataValidationError

logger = logging.getLogger(__name__)

METADATA_SCHEMA_VERSION = 1

METADATA_JSON_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["schema_version", "sessions", "session_count"],
    "properties": {
        "schema_version": {"type": "integer", "minimum": 1},
        "source": {"type": "string"},
        "sessions": {
            "type": "array",
            "items": {"type": "string"},
            "uniqueItems": True,
        },
        "session_count": {"type": "integer", "minimum": 0},
        "status_reason": {"type": "string"},
        "consolidated_from": {"type": "string"},
        "consolidated_at": {"type": "string"},
        "promoted_from": {"type": "string"},
        "promoted_at": {"type": "string"},
        "hit_count": {"type": "integer", "minimum": 0},
        "last_retrieved_at": {"type": "string"},
    },
    "additionalProperties": True,
}

_VALIDATOR = Draft7Validator(METADATA_JSON_SCHEMA)


def _upgrade_v0(data: Dict[str, Any]) -> Dict[str, Any]:
    # v0 rows predate schema stamping; session ids could be numbers
    sessions = data.get("sessions") or []
    data["sessions"] = [str(s) for s in sessions]
    data.setdefault("session_count", len(set(data["sessions"])))
    data["schema_version"] = 1
    return data


# version -> function upgrading a dict from that version to the next
_UPGRADES: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _upgrade_v0,
}


def upgrade_metadata(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Bring a raw metadata mapping up to the current schema version."""
    upgraded = dict(data)
    version = upgraded.get("schema_version", 0)
    if not isinstance(version, int):
        version = 0
    while version < METADATA_SCHEMA_VERSION:
        upgrade = _UPGRADES.get(version)
        if upgrade is None:
            raise MetadataValidationError(f"No metadata upgrade path from version {version}")
        upgraded = upgrade(upgraded)
        logger.debug(f"Upgraded knowledge metadata from schema version {version}")
        version = upgraded["schema_version"]
    return upgraded


def validate_metadata(data: Mapping[str, Any]) -> None:
    """Validate serialized metadata against the JSON Schema.

    Raises:
        MetadataValidationError: If the shape is rejected.
    """
    errors = sorted(_VALIDATOR.iter_errors(dict(data)), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.path) or "<root>"
        raise MetadataValidationError(f"Invalid knowledge metadata at {where}: {first.message}")


def _unique(values: List[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for v in values:
        seen.setdefault(str(v), None)
    return list(seen)


def _as_count(value: Any, key: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise MetadataValidationError(f"Metadata key {key!r} must be an integer, got bool")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MetadataValidationError(
            f"Metadata key {key!r} must be an integer, got {value!r}"
        ) from None


@dataclass
class KnowledgeMetadata:
    """Metadata attached to a knowledge item."""

    source: Optional[str] = None
    sessions: List[str] = field(default_factory=list)
    session_count: int = 0
    status_reason: Optional[str] = None
    consolidated_from: Optional[str] = None
    consolidated_at: Optional[str] = None
    promoted_from: Optional[str] = None
    promoted_at: Optional[str] = None
    hit_count: int = 0
    last_retrieved_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = METADATA_SCHEMA_VERSION

    @classmethod
    def known_keys(cls) -> frozenset:
        return frozenset(f.name for f in fields(cls) if f.name != "extra")

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "KnowledgeMetadata":
        """Build from a raw mapping, upgrading older schema versions."""
        if not data:
            return cls()
        raw = upgrade_metadata(data)
        known = cls.known_keys()
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in raw.items():
            if key in known:
                kwargs[key] = value
            else:
                extra[key] = value

        sessions = kwargs.get("sessions") or []
        if not isinstance(sessions, (list, tuple, set)):
            sessions = [sessions]
        kwargs["sessions"] = _unique(list(sessions))
        kwargs["session_count"] = _as_count(kwargs.get("session_count"), "session_count")
        kwargs["hit_count"] = _as_count(kwargs.get("hit_count"), "hit_count")
        for key in ("consolidated_from", "promoted_from"):
            if kwargs.get(key) is not None:
                kwargs[key] = str(kwargs[key])
        kwargs["schema_version"] = METADATA_SCHEMA_VERSION
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the serialized form. None-valued optional keys are omitted."""
        out: Dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "hit_count" and value == 0:
                continue
            out[f.name] = list(value) if f.name == "sessions" else value
        return out

    def merged(self, updates: Optional[Mapping[str, Any]]) -> "KnowledgeMetadata":
        """Return a copy with ``updates`` applied; update values win on conflict."""
        if not updates:
            return KnowledgeMetadata.from_dict(self.to_dict())
        return KnowledgeMetadata.from_dict({**self.to_dict(), **dict(updates)})

    def with_session(self, session_id: Optional[str]) -> "KnowledgeMetadata":
        """Return a copy with ``session_id`` added to the session set."""
        sessions = list(self.sessions)
        if session_id is not None:
            sessions.append(str(session_id))
        sessions = _unique(sessions)
        data = self.to_dict()
        data["sessions"] = sessions
        data["session_count"] = len(sessions)
        return KnowledgeMetadata.from_dict(data)


def caller_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return metadata supplied by an ingesting caller.

    Every typed key (source, sessions, hit counts, consolidation and
    promotion stamps, ...) is written by factloom alone: trust decisions
    such as the hallucination guard read ``source`` and ``session_count``.
    Callers may attach any other key.

    Raises:
        MetadataValidationError: If a managed key is present.
    """
    data = dict(metadata or {})
    managed = sorted(KnowledgeMetadata.known_keys() & data.keys())
    if managed:
        raise MetadataValidationError(
            f"Metadata key(s) {', '.join(managed)} are managed by factloom "
            "and cannot be set by callers"
        )
    return data
