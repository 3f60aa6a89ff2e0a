"""
LMS API response normalizer.

The LMS speaks JSON:API. Every list item looks like:

    {
        "id": "5f2c...",
        "type": "people",
        "attributes": { ... },
        "relationships": { "person": {"data": {"id": "..."}} },
    }

Each entity gets a typed record with the attributes the sync engine actually
consumes plus the untouched payload in `raw`. `to_row()` returns a plain dict
whose keys match the local table columns, so the writer never sees the API
shape. No DB access here.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from datetime import datetime

from lmssync.timeutil import parse_api_datetime


class MalformedRecordError(ValueError):
    """Raised when an API item lacks the fields needed to store it."""


def _attrs(item: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(item, dict) or not item.get("id"):
        raise MalformedRecordError(f"LMS item has no id: {item!r:.200}")
    return item.get("attributes") or {}


def _number(item: Dict[str, Any], attr: str, convert, default=None):
    value = (item.get("attributes") or {}).get(attr)
    if value is None or value == "":
        return default
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise MalformedRecordError(
            f"LMS item {item.get('id')} has non-numeric {attr}: {value!r:.50}"
        ) from None


@dataclass
class UserRecord:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "UserRecord":
        attrs = _attrs(item)
        return cls(
            id=str(item["id"]),
            email=(attrs.get("email") or "").lower(),
            first_name=attrs.get("first_name") or "",
            last_name=attrs.get("last_name") or "",
            created_at=parse_api_datetime(attrs.get("created_at")),
            last_active_at=parse_api_datetime(attrs.get("last_active_at")),
            deactivated_at=parse_api_datetime(attrs.get("deactivated_at")),
            raw=item,
        )

    @property
    def status(self) -> str:
        return "deactivated" if self.deactivated_at else "active"

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "created_at_lms": self.created_at,
            "last_active_at": self.last_active_at,
            "deactivated_at": self.deactivated_at,
            "status": self.status,
        }


@dataclass
class GroupRecord:
    id: str
    name: str
    description: str = ""
    user_count: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "GroupRecord":
        attrs = _attrs(item)
        return cls(
            id=str(item["id"]),
            name=attrs.get("name") or "",
            description=attrs.get("description") or "",
            user_count=_number(item, "user_count", int, default=0),
            raw=item,
        )

    def to_row(self) -> Dict[str, Any]:
        # partner_id is deliberately absent: linkage belongs to the matcher.
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "user_count": self.user_count,
        }


@dataclass
class CourseRecord:
    id: str
    name: str
    description: str = ""
    status: str = "active"
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "CourseRecord":
        attrs = _attrs(item)
        return cls(
            id=str(item["id"]),
            name=attrs.get("name") or attrs.get("title") or "",
            description=attrs.get("description") or "",
            status=attrs.get("status") or "active",
            raw=item,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
        }


def _parse_npcu(value: Any) -> int:
    """NPCU is 0, 1 or 2. Anything else (blank, garbage, out of range) is 0."""
    if value is None or value == "":
        return 0
    try:
        npcu = int(value)
    except (TypeError, ValueError):
        return 0
    return npcu if 0 <= npcu <= 2 else 0


@dataclass
class CoursePropertiesRecord:
    course_id: str
    npcu_value: int
    name: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "CoursePropertiesRecord":
        attrs = _attrs(item)
        properties = attrs.get("properties") or {}
        return cls(
            course_id=str(item["id"]),
            npcu_value=_parse_npcu(properties.get("npcu")),
            name=properties.get("name"),
            properties=properties,
            raw=item,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "course_id": self.course_id,
            "npcu_value": self.npcu_value,
            "property_json": json.dumps(self.properties, sort_keys=True),
        }

    def archived_course_row(self) -> Dict[str, Any]:
        """Row for a certification course the courses endpoint no longer lists."""
        return {
            "id": self.course_id,
            "name": self.name or f"Unknown Course ({self.course_id})",
            "description": "Archived certification (from properties API)",
            "status": "archived",
            "npcu_value": self.npcu_value,
            "is_certification": True,
        }


def membership_user_id(item: Dict[str, Any]) -> Optional[str]:
    """Extract the person id from a group membership item, or None."""
    try:
        user_id = item["relationships"]["person"]["data"]["id"]
    except (KeyError, TypeError):
        return None
    return str(user_id) if user_id else None


_PROGRESS_PERCENT = {"completed": 100, "in_progress": 50}


@dataclass
class TranscriptRecord:
    id: str
    resource_id: Optional[str]
    resource_type: Optional[str]
    progress_status: str = "enrolled"
    enrolled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    score: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "TranscriptRecord":
        attrs = _attrs(item)
        return cls(
            id=str(item["id"]),
            resource_id=str(attrs["resource_id"]) if attrs.get("resource_id") else None,
            resource_type=attrs.get("resource_type"),
            progress_status=attrs.get("progress_status") or "enrolled",
            enrolled_at=parse_api_datetime(attrs.get("enrolled_at")),
            started_at=parse_api_datetime(attrs.get("started_at")),
            completed_at=parse_api_datetime(attrs.get("completed_at")),
            expires_at=parse_api_datetime(attrs.get("expires_at")),
            score=_number(item, "score", float),
            raw=item,
        )

    @property
    def is_course(self) -> bool:
        """Only course transcripts are stored (not learning paths, events, ...)."""
        return bool(self.resource_id) and self.resource_type == "course"

    @property
    def progress_percent(self) -> int:
        return _PROGRESS_PERCENT.get(self.progress_status, 0)

    def to_row(self, user_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": user_id,
            "course_id": self.resource_id,
            "status": self.progress_status,
            "progress_percent": self.progress_percent,
            "enrolled_at": self.enrolled_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "expires_at": self.expires_at,
            "score": self.score,
        }
