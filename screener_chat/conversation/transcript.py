"""Append-only message log and conversation status writes."""
from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Conversation, Message
from .errors import SequenceConflictError, ConversationNotActiveError
from .states import ConversationStatus, RiskLevel, Sender, SENDER_TO_ROLE, check_transition

logger = logging.getLogger(__name__)


def next_sequence_number(db: Session, conversation_id: str) -> int:
    current = db.execute(
        select(func.max(Message.sequence_number)).where(Message.conversation_id == conversation_id)
    ).scalar()
    return (current or 0) + 1


def append_message(
    db: Session,
    conversation: Conversation,
    sender: Sender,
    content: str,
    risk_level: RiskLevel = RiskLevel.NONE,
    extracted_response: dict | None = None,
    crisis_flags: dict | None = None,
) -> Message:
    """Insert the next turn and commit it.

    The sequence number is max+1 at write time; the unique (conversation,
    sequence) constraint turns a concurrent writer's collision into an
    IntegrityError, which is retried with a fresh read.
    """
    conversation_id = conversation.id
    attempts = max(1, settings.SEQUENCE_WRITE_RETRIES)
    for attempt in range(1, attempts + 1):
        seq = next_sequence_number(db, conversation_id)
        msg = Message(
            conversation_id=conversation_id,
            sender=sender,
            role=SENDER_TO_ROLE[sender],
            content=content,
            risk_level=risk_level,
            sequence_number=seq,
            extracted_response_json=json.dumps(extracted_response or {}),
            crisis_flags_json=json.dumps(crisis_flags or {}),
            streaming_complete=True,
        )
        db.add(msg)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "Sequence %d taken in conversation %s, retrying (%d/%d)",
                seq, conversation_id, attempt, attempts,
            )
            continue
        return msg
    raise SequenceConflictError()


def recent_messages(db: Session, conversation_id: str, limit: int | None = None) -> list[Message]:
    """Most recent turns, oldest first."""
    limit = limit or settings.MAX_CONTEXT_MESSAGES
    rows = db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.sequence_number.desc())
        .limit(limit)
    ).scalars().all()
    return list(reversed(rows))


def ordered_messages(db: Session, conversation_id: str) -> list[Message]:
    return list(db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.sequence_number.asc())
    ).scalars().all())


def transition_status(
    db: Session,
    conversation: Conversation,
    expected: ConversationStatus,
    target: ConversationStatus,
) -> None:
    """Compare-and-set the conversation status, then commit.

    Raises ConversationNotActiveError when another request moved the status
    first, and InvalidTransitionError for a move the state machine forbids.
    """
    check_transition(expected, target)
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id, Conversation.status == expected)
        .values(status=target, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(conversation)
        raise ConversationNotActiveError(
            f"Conversation is {conversation.status.value}, expected {expected.value}"
        )
    db.commit()
    db.refresh(conversation)


def current_status(db: Session, conversation: Conversation) -> ConversationStatus:
    return db.execute(
        select(Conversation.status).where(Conversation.id == conversation.id)
    ).scalar_one()
