"""Local mirror of LMS data plus the partner accounts it is linked to."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from lmssync.timeutil import utcnow


class Partner(SQLModel, table=True):
    """Partner account imported from the CRM. Read-only to the sync engine."""

    id: Optional[int] = Field(default=None, primary_key=True)
    account_name: str = Field(unique=True, index=True)
    partner_tier: Optional[str] = None
    account_region: Optional[str] = None


class LmsUser(SQLModel, table=True):
    id: str = Field(primary_key=True)  # LMS person id
    email: str = Field(index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at_lms: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    status: str = Field(default="active", index=True)  # "active", "deactivated", "deleted"
    enrollment_synced_at: Optional[datetime] = None
    synced_at: datetime = Field(default_factory=utcnow)


class LmsGroup(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    user_count: int = 0

    # Set by the matcher or by an operator, never by the group upsert.
    partner_id: Optional[int] = Field(default=None, foreign_key="partner.id", index=True)

    is_active: bool = True
    deleted_at: Optional[datetime] = None
    deletion_reason: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    synced_at: datetime = Field(default_factory=utcnow)


class LmsGroupMember(SQLModel, table=True):
    group_id: str = Field(foreign_key="lmsgroup.id", primary_key=True)
    user_id: str = Field(foreign_key="lmsuser.id", primary_key=True, index=True)
    added_at: datetime = Field(default_factory=utcnow)


class LmsCourse(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    description: Optional[str] = None
    status: str = "active"  # "active", "archived", ...
    npcu_value: int = 0  # partner certification units, 0..2
    is_certification: bool = False
    synced_at: datetime = Field(default_factory=utcnow)


class CourseProperty(SQLModel, table=True):
    course_id: str = Field(foreign_key="lmscourse.id", primary_key=True)
    npcu_value: int = 0
    property_json: Optional[str] = None  # raw properties blob
    synced_at: datetime = Field(default_factory=utcnow)


class LmsEnrollment(SQLModel, table=True):
    id: str = Field(primary_key=True)  # transcript id
    user_id: str = Field(foreign_key="lmsuser.id", index=True)
    course_id: str = Field(index=True)
    status: str = "enrolled"  # "enrolled", "in_progress", "completed"
    progress_percent: int = 0
    enrolled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    score: Optional[float] = None
    synced_at: datetime = Field(default_factory=utcnow)
