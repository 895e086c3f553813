from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
import json
import logging

from ...core.db import get_db
from ..deps import get_current_user, get_owned_conversation
from ..schemas import (
    ConversationCreate, ConversationCreated, ConversationDetail, ConversationOut, MessageOut,
    MessageIn, ChatReply, ReplyMessageOut, ProgressOut, SafetyResponseIn, SafetyResponseOut,
)
from ..streaming import stream_turn
from ...models import User, Assessment, Conversation, Message
from ...conversation.errors import ChatError
from ...conversation.orchestrator import ScreenerChatService
from ...conversation.safety import SafetyPivotController, PRIMARY_RESOURCES
from ...conversation.states import ConversationStatus, OPEN_STATUSES, SafetyResponse
from ...conversation.transcript import ordered_messages
from ...llm.openai_client import OpenAIClient, get_llm_client
from ...screeners.loader import get_screener, screener_types
from ...screeners.scoring import score_responses

router = APIRouter(prefix="/conversations", tags=["conversations"])
logger = logging.getLogger(__name__)

OPEN_CONVERSATION_DETAIL = "Assessment already has an open conversation"

def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat() + "Z"

def _message_out(m: Message) -> MessageOut:
    return MessageOut(
        id=m.id, sender=m.sender.value, content=m.content, riskLevel=m.risk_level.value,
        sequenceNumber=m.sequence_number, createdAt=_iso(m.created_at),
    )

def _has_open_conversation(db: Session, assessment_id: str) -> bool:
    return db.execute(
        select(Conversation.id).where(
            Conversation.assessment_id == assessment_id,
            Conversation.status.in_(list(OPEN_STATUSES)),
            Conversation.discarded_at.is_(None),
        )
    ).first() is not None

def _conversation_out(c: Conversation) -> ConversationOut:
    total = get_screener(c.screener_type).total_questions
    return ConversationOut(
        id=c.id,
        assessmentId=c.assessment_id,
        screenerType=c.screener_type,
        status=c.status.value,
        currentQuestionId=c.current_question_id,
        questionsCompleted=c.questions_completed,
        totalQuestions=total,
        completionPercentage=round(100.0 * c.questions_completed / total, 1) if total else 0.0,
        createdAt=_iso(c.created_at),
        updatedAt=_iso(c.updated_at),
    )

@router.post("", response_model=ConversationCreated, status_code=201)
def create_conversation(payload: ConversationCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user), llm: OpenAIClient = Depends(get_llm_client)):
    assessment = db.get(Assessment, payload.assessmentId)
    if not assessment or assessment.user_id != user.id:
        raise HTTPException(status_code=404, detail="Assessment not found")
    screener_type = payload.screenerType or assessment.screener_type
    if screener_type not in screener_types():
        raise HTTPException(status_code=422, detail=f"Unknown screener type: {screener_type}")

    if _has_open_conversation(db, assessment.id):
        raise HTTPException(status_code=409, detail=OPEN_CONVERSATION_DETAIL)

    meta = {"user_type": user.user_type.value, "started_at": _iso(datetime.utcnow())}
    if payload.concerns:
        meta["concerns"] = payload.concerns
    if payload.preferences:
        meta["preferences"] = payload.preferences
    c = Conversation(
        assessment_id=assessment.id,
        user_id=user.id,
        screener_type=screener_type,
        status=ConversationStatus.ACTIVE,
        metadata_json=json.dumps(meta),
    )
    db.add(c)
    if assessment.status == "pending":
        assessment.status = "in_progress"
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request opened one between the check and the insert
        db.rollback()
        logger.info("Open conversation already exists for assessment %s", assessment.id)
        raise HTTPException(status_code=409, detail=OPEN_CONVERSATION_DETAIL)
    db.refresh(c)

    greeting = ScreenerChatService(db, c, llm).generate_greeting()
    db.refresh(c)
    return ConversationCreated(conversation=_conversation_out(c), initialMessage=_message_out(greeting))

@router.get("/{conversation_id}", response_model=ConversationDetail)
def conversation_detail(c: Conversation = Depends(get_owned_conversation), db: Session = Depends(get_db)):
    out = _conversation_out(c)
    return ConversationDetail(**out.model_dump(), messages=[_message_out(m) for m in ordered_messages(db, c.id)])

@router.post("/{conversation_id}/messages", response_model=ChatReply)
async def send_message(payload: MessageIn, c: Conversation = Depends(get_owned_conversation), db: Session = Depends(get_db), llm: OpenAIClient = Depends(get_llm_client)):
    try:
        result = await ScreenerChatService(db, c, llm).process_message(payload.content)
    except ChatError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)

    reply = ChatReply(
        message=ReplyMessageOut(id=result.message_id, content=result.content, riskLevel=result.risk_level.value),
        conversation=ProgressOut(
            questionsCompleted=result.questions_completed,
            totalQuestions=result.total_questions,
            isComplete=result.is_complete,
        ),
    )
    if result.show_safety_pivot:
        reply.showSafetyPivot = True
        reply.crisisResources = result.pivot.resources if result.pivot else list(PRIMARY_RESOURCES)
        reply.pivot = result.pivot.as_dict() if result.pivot else None
    return reply

@router.get("/{conversation_id}/stream")
def stream_message(request: Request, content: str = Query(""), c: Conversation = Depends(get_owned_conversation), llm: OpenAIClient = Depends(get_llm_client)):
    if not content.strip():
        raise HTTPException(status_code=422, detail="Message content is required")
    if c.status != ConversationStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="Conversation is not active")
    return stream_turn(c.id, content, llm, request)

@router.post("/{conversation_id}/safety_response", response_model=SafetyResponseOut)
def safety_response(payload: SafetyResponseIn, c: Conversation = Depends(get_owned_conversation), db: Session = Depends(get_db)):
    if SafetyResponse.parse(payload.response) is None:
        raise HTTPException(status_code=422, detail="response must be one of: safe, need_help, exit")
    controller = SafetyPivotController(db, c)
    event = controller.latest_unresolved_event()
    if not event:
        raise HTTPException(status_code=404, detail="No active crisis event")
    result = controller.record_user_response(event, payload.response)
    if not result.success:
        raise HTTPException(status_code=409, detail=result.error)
    return SafetyResponseOut(**result.as_dict())

@router.get("/{conversation_id}/report")
def conversation_report(c: Conversation = Depends(get_owned_conversation)):
    report = score_responses(get_screener(c.screener_type), c.screener_responses)
    report["conversationId"] = c.id
    report["conversationStatus"] = c.status.value
    return report

@router.delete("/{conversation_id}")
def discard_conversation(c: Conversation = Depends(get_owned_conversation), db: Session = Depends(get_db)):
    # soft discard only, rows stay for the clinical record
    c.discarded_at = datetime.utcnow()
    db.commit()
    logger.info("Conversation %s discarded", c.id)
    return {"ok": True}
