"""
Group-to-partner linking passes over the local store.

auto_match_groups() only ever fills an empty partner_id: the UPDATE is
guarded by "partner_id IS NULL", so a link made by an operator (or by an
earlier pass) is never overwritten, even if it races with this one.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, update
from sqlmodel import Session, select

from lmssync.matching.matcher import (
    DEFAULT_PREFIX, PartnerRef, find_best_match, is_system_group,
)
from lmssync.models.lms import LmsGroup, Partner

logger = logging.getLogger(__name__)

DEFAULT_DENYLIST = ("all partner", "all user", "admin", "internal")


def load_partners(session: Session) -> List[PartnerRef]:
    rows = session.exec(select(Partner.id, Partner.account_name)).all()
    return [PartnerRef(id=pid, name=name) for pid, name in rows]


def _unlinked_groups(session: Session, order_by_size: bool = False):
    stmt = select(LmsGroup.id, LmsGroup.name, LmsGroup.user_count).where(
        LmsGroup.partner_id.is_(None)
    )
    if order_by_size:
        stmt = stmt.order_by(LmsGroup.user_count.desc())
    return session.exec(stmt).all()


def auto_match_groups(
    engine,
    min_score: float = 0.85,
    dry_run: bool = False,
    prefix: str = DEFAULT_PREFIX,
    denylist: Sequence[str] = DEFAULT_DENYLIST,
) -> Dict[str, Any]:
    """Link every unlinked, non-system group to its best partner match.

    Returns a report: total unlinked groups, matched, skipped (system
    groups), failed, and the list of matches made (or that would be made
    when dry_run is set).
    """
    report: Dict[str, Any] = {
        "total": 0, "matched": 0, "skipped": 0, "failed": 0, "dryRun": dry_run, "matches": [],
    }
    with Session(engine) as session:
        groups = _unlinked_groups(session)
        partners = load_partners(session)
    report["total"] = len(groups)
    logger.info(
        "Auto-matching %d unlinked groups against %d partners (min_score=%.2f, dry_run=%s)",
        len(groups), len(partners), min_score, dry_run,
    )

    for group_id, name, _ in groups:
        if is_system_group(name, denylist):
            report["skipped"] += 1
            continue
        match = find_best_match(name, partners, min_score=min_score, prefix=prefix)
        if match is None:
            continue
        match.group_id = group_id
        entry = dict(match.to_dict(), groupName=name)

        if dry_run:
            report["matches"].append(entry)
            report["matched"] += 1
            logger.info("[dry run] %s -> %s (%.1f%%)", name, match.partner_name, match.score * 100)
            continue

        with engine.begin() as conn:
            result = conn.execute(
                update(LmsGroup.__table__)
                .where(LmsGroup.__table__.c.id == group_id)
                .where(LmsGroup.__table__.c.partner_id.is_(None))
                .values(partner_id=match.partner_id)
            )
        if result.rowcount:
            report["matches"].append(entry)
            report["matched"] += 1
            logger.info("Linked %s -> %s (%.1f%%)", name, match.partner_name, match.score * 100)
        else:
            # Linked by someone else since we read it.
            report["failed"] += 1
            logger.warning("Group %s was linked concurrently, leaving it alone", group_id)

    logger.info(
        "Matching complete: %d matched, %d skipped, %d failed",
        report["matched"], report["skipped"], report["failed"],
    )
    return report


def get_matching_suggestions(
    engine,
    min_score: float = 0.5,
    prefix: str = DEFAULT_PREFIX,
    denylist: Sequence[str] = DEFAULT_DENYLIST,
) -> List[Dict[str, Any]]:
    """Best candidate per unlinked group for human review, largest groups first.

    Groups with no candidate above min_score are included with bestMatch None.
    """
    with Session(engine) as session:
        groups = _unlinked_groups(session, order_by_size=True)
        partners = load_partners(session)
    suggestions = []
    for group_id, name, user_count in groups:
        if is_system_group(name, denylist):
            continue
        match = find_best_match(name, partners, min_score=min_score, prefix=prefix)
        suggestions.append({
            "groupId": group_id,
            "groupName": name,
            "userCount": user_count,
            "bestMatch": match.to_dict() if match else None,
        })
    return suggestions


def link_group_to_partner(engine, group_id: str, partner_id: int) -> bool:
    """Set a group's partner explicitly, replacing any existing link.

    Returns False if either the group or the partner does not exist.
    """
    with Session(engine) as session:
        group = session.get(LmsGroup, group_id)
        if group is None or session.get(Partner, partner_id) is None:
            return False
        group.partner_id = partner_id
        session.add(group)
        session.commit()
    logger.info("Group %s manually linked to partner %s", group_id, partner_id)
    return True


def unlink_group(engine, group_id: str) -> bool:
    with Session(engine) as session:
        group = session.get(LmsGroup, group_id)
        if group is None:
            return False
        group.partner_id = None
        session.add(group)
        session.commit()
    logger.info("Group %s unlinked", group_id)
    return True


def matching_stats(engine) -> Dict[str, int]:
    with Session(engine) as session:
        linked = session.exec(
            select(func.count()).select_from(LmsGroup).where(LmsGroup.partner_id.is_not(None))
        ).one()
        unlinked = session.exec(
            select(func.count()).select_from(LmsGroup).where(LmsGroup.partner_id.is_(None))
        ).one()
        partners_with = session.exec(
            select(func.count(func.distinct(LmsGroup.partner_id))).where(
                LmsGroup.partner_id.is_not(None)
            )
        ).one()
        partners_total = session.exec(select(func.count()).select_from(Partner)).one()
    return {
        "groupsLinked": linked,
        "groupsUnlinked": unlinked,
        "partnersWithGroups": partners_with,
        "partnersWithoutGroups": partners_total - partners_with,
    }
