"""
Local-store operations the sync handlers need beyond plain upserts.

Each function opens its own transaction. Membership replacement is the only
destructive write and is scoped to one group per transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, insert, or_, select, update

from lmssync.models.lms import LmsCourse, LmsGroup, LmsGroupMember, LmsUser
from lmssync.timeutil import utcnow

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under every backend's bound-parameter limit.
CHUNK_SIZE = 500

users_t = LmsUser.__table__
groups_t = LmsGroup.__table__
members_t = LmsGroupMember.__table__
courses_t = LmsCourse.__table__


def _chunks(items: Sequence, size: int = CHUNK_SIZE):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def existing_ids(engine, column, ids: Iterable[str]) -> Set[str]:
    """Subset of ids present in column."""
    ids = list(dict.fromkeys(ids))
    found: Set[str] = set()
    with engine.connect() as conn:
        for chunk in _chunks(ids):
            found.update(conn.execute(select(column).where(column.in_(chunk))).scalars())
    return found


def mark_missing_users_deleted(engine, seen_ids: Set[str]) -> int:
    """Flag local users absent from a complete source listing as deleted."""
    with engine.connect() as conn:
        local = conn.execute(
            select(users_t.c.id).where(users_t.c.status != "deleted")
        ).scalars().all()
    missing = [uid for uid in local if uid not in seen_ids]
    if not missing:
        return 0
    now = utcnow()
    with engine.begin() as conn:
        for chunk in _chunks(missing):
            conn.execute(
                update(users_t).where(users_t.c.id.in_(chunk)).values(status="deleted", synced_at=now)
            )
    logger.info("Marked %d users missing from the LMS as deleted", len(missing))
    return len(missing)


@dataclass
class MembershipChange:
    members: int = 0
    added: int = 0
    removed: int = 0
    unknown_users: int = 0


def membership_groups(engine) -> List[Dict[str, str]]:
    """Active partner-linked groups plus the "All Partners" group."""
    stmt = (
        select(groups_t.c.id, groups_t.c.name)
        .where(or_(groups_t.c.partner_id.is_not(None), func.lower(groups_t.c.name) == "all partners"))
        .where(or_(groups_t.c.is_active.is_(True), groups_t.c.is_active.is_(None)))
        .order_by(groups_t.c.name)
    )
    with engine.connect() as conn:
        return [{"id": gid, "name": name} for gid, name in conn.execute(stmt).all()]


def replace_group_members(engine, group_id: str, user_ids: Sequence[str]) -> MembershipChange:
    """Replace a group's membership wholesale with user_ids.

    Members that stay keep their original added_at. Ids with no local user
    row are skipped. Also refreshes user_count and reactivates the group.
    """
    now = utcnow()
    ordered = list(dict.fromkeys(user_ids))
    change = MembershipChange()
    with engine.begin() as conn:
        previous = dict(conn.execute(
            select(members_t.c.user_id, members_t.c.added_at).where(members_t.c.group_id == group_id)
        ).all())
        known: Set[str] = set()
        for chunk in _chunks(ordered):
            known.update(conn.execute(select(users_t.c.id).where(users_t.c.id.in_(chunk))).scalars())

        rows = []
        for uid in ordered:
            if uid not in known:
                change.unknown_users += 1
                continue
            rows.append({"group_id": group_id, "user_id": uid, "added_at": previous.get(uid, now)})
            if uid not in previous:
                change.added += 1
        change.members = len(rows)
        change.removed = len(set(previous) - {r["user_id"] for r in rows})

        conn.execute(delete(members_t).where(members_t.c.group_id == group_id))
        if rows:
            conn.execute(insert(members_t), rows)
        conn.execute(
            update(groups_t).where(groups_t.c.id == group_id).values(
                user_count=len(rows),
                last_checked_at=now,
                is_active=True,
                deleted_at=None,
                deletion_reason=None,
            )
        )
    return change


def soft_delete_group(engine, group_id: str, reason: str) -> None:
    now = utcnow()
    with engine.begin() as conn:
        conn.execute(
            update(groups_t).where(groups_t.c.id == group_id).values(
                is_active=False, deleted_at=now, deletion_reason=reason, last_checked_at=now,
            )
        )
    logger.warning("Group %s soft-deleted: %s", group_id, reason)


def update_course_npcu(engine, npcu_by_course: Dict[str, int]) -> int:
    """Set npcu_value / is_certification on known courses."""
    now = utcnow()
    updated = 0
    with engine.begin() as conn:
        for course_id, npcu in npcu_by_course.items():
            result = conn.execute(
                update(courses_t).where(courses_t.c.id == course_id).values(
                    npcu_value=npcu, is_certification=npcu > 0, synced_at=now,
                )
            )
            updated += result.rowcount or 0
    return updated


def enrollment_candidates(
    engine, incremental: bool = False, max_age_days: int = 7, now: Optional[datetime] = None,
) -> List[str]:
    """Active users in a partner-linked group, optionally narrowed to recent activity.

    Incremental narrowing keeps users never enrollment-synced, users active
    since their last enrollment sync, and users active in the last
    max_age_days.
    """
    linked_members = (
        select(members_t.c.user_id)
        .join(groups_t, groups_t.c.id == members_t.c.group_id)
        .where(groups_t.c.partner_id.is_not(None))
    )
    stmt = (
        select(users_t.c.id)
        .where(users_t.c.status == "active")
        .where(users_t.c.id.in_(linked_members))
    )
    if incremental:
        cutoff = (now or utcnow()) - timedelta(days=max_age_days)
        stmt = stmt.where(or_(
            users_t.c.enrollment_synced_at.is_(None),
            users_t.c.last_active_at > users_t.c.enrollment_synced_at,
            users_t.c.last_active_at >= cutoff,
        ))
    with engine.connect() as conn:
        return list(conn.execute(stmt.order_by(users_t.c.id)).scalars())


def count_enrollment_eligible(engine) -> int:
    return len(enrollment_candidates(engine))


def stamp_enrollment_synced(engine, user_id: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(users_t).where(users_t.c.id == user_id).values(enrollment_synced_at=utcnow())
        )
