from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, func
from sqlalchemy.orm import Session
from datetime import datetime
import logging

from ...core.db import get_db
from ..deps import require_clinician
from ..schemas import CrisisEventOut, CrisisEventsPage, ResolveIn
from ...models import User, CrisisEvent
from ...conversation.states import RiskLevel

router = APIRouter(prefix="/crisis_events", tags=["crisis"])
logger = logging.getLogger(__name__)

def _iso(dt: datetime | None) -> str | None:
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None

def _event_out(e: CrisisEvent) -> CrisisEventOut:
    return CrisisEventOut(
        id=e.id,
        conversationId=e.conversation_id,
        messageId=e.message_id,
        userId=e.user_id,
        riskLevel=e.risk_level.value,
        triggerContent=e.trigger_content,
        matchedKeywords=e.matched_keywords,
        detectionMethod=e.detection_method.value,
        safetyPivotShown=e.safety_pivot_shown,
        userResponse=e.user_response,
        context=e.context,
        resolvedAt=_iso(e.resolved_at),
        resolvedBy=e.resolved_by,
        resolutionNotes=e.resolution_notes,
        reviewed=e.reviewed,
        reviewedAt=_iso(e.reviewed_at),
        reviewedBy=e.reviewed_by,
        createdAt=_iso(e.created_at),
    )

def _get_event(db: Session, event_id: str) -> CrisisEvent:
    e = db.get(CrisisEvent, event_id)
    if not e:
        raise HTTPException(status_code=404, detail="Crisis event not found")
    return e

@router.get("", response_model=CrisisEventsPage)
def list_events(
    reviewed: bool = Query(False),
    min_risk: RiskLevel = Query(RiskLevel.LOW, alias="minRisk"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    clinician: User = Depends(require_clinician),
):
    levels = [lvl for lvl in RiskLevel if lvl.at_least(min_risk)]
    cond = (CrisisEvent.reviewed == reviewed, CrisisEvent.risk_level.in_(levels))
    total = db.execute(select(func.count()).select_from(CrisisEvent).where(*cond)).scalar_one()
    # newest first; severity is sorted client side
    items = db.execute(
        select(CrisisEvent).where(*cond).order_by(CrisisEvent.created_at.desc()).offset((page-1)*limit).limit(limit)
    ).scalars().all()
    return CrisisEventsPage(page=page, limit=limit, total=total, items=[_event_out(e) for e in items])

@router.post("/{event_id}/review", response_model=CrisisEventOut)
def review_event(event_id: str, db: Session = Depends(get_db), clinician: User = Depends(require_clinician)):
    e = _get_event(db, event_id)
    if not e.reviewed:
        e.reviewed = True
        e.reviewed_at = datetime.utcnow()
        e.reviewed_by = clinician.id
        db.commit()
        logger.info("Crisis event %s reviewed", e.id)
    return _event_out(e)

@router.post("/{event_id}/resolve", response_model=CrisisEventOut)
def resolve_event(event_id: str, payload: ResolveIn, db: Session = Depends(get_db), clinician: User = Depends(require_clinician)):
    e = _get_event(db, event_id)
    if e.resolved:
        raise HTTPException(status_code=409, detail="Crisis event already resolved")
    now = datetime.utcnow()
    e.resolved_at = now
    e.resolved_by = clinician.id
    e.resolution_notes = payload.notes or None
    if not e.reviewed:
        e.reviewed = True
        e.reviewed_at = now
        e.reviewed_by = clinician.id
    db.commit()
    logger.info("Crisis event %s resolved", e.id)
    return _event_out(e)
