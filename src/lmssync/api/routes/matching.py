"""Partner-group matching administration routes."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from lmssync.config import Settings, get_settings
from lmssync.db.engine import get_engine
from lmssync.matching import service

router = APIRouter()


class LinkRequest(BaseModel):
    group_id: str
    partner_id: int


@router.get("/suggestions")
def matching_suggestions(
    min_score: Optional[float] = None,
    engine=Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Best partner candidate per unlinked group, for human review."""
    return service.get_matching_suggestions(
        engine,
        min_score=settings.match_suggestion_threshold if min_score is None else min_score,
        prefix=settings.match_group_prefix,
        denylist=settings.match_denylist_terms,
    )


@router.post("/auto")
def auto_match(
    dry_run: bool = False,
    min_score: Optional[float] = None,
    engine=Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    """Link unlinked groups above the auto-link threshold. Never overwrites a link."""
    return service.auto_match_groups(
        engine,
        min_score=settings.match_auto_link_threshold if min_score is None else min_score,
        dry_run=dry_run,
        prefix=settings.match_group_prefix,
        denylist=settings.match_denylist_terms,
    )


@router.post("/link")
def link_group(request: LinkRequest, engine=Depends(get_engine)):
    if not service.link_group_to_partner(engine, request.group_id, request.partner_id):
        raise HTTPException(status_code=404, detail="Group or partner not found")
    return {"message": "Group linked", "groupId": request.group_id, "partnerId": request.partner_id}


@router.delete("/link/{group_id}")
def unlink_group(group_id: str, engine=Depends(get_engine)):
    if not service.unlink_group(engine, group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    return {"message": "Group unlinked", "groupId": group_id}


@router.get("/stats")
def matching_stats(engine=Depends(get_engine)):
    return service.matching_stats(engine)
