"""Safety pivot: pause on high/critical risk, show resources, act on the user's answer.

This controller is the only writer of the `crisis_paused` and `abandoned`
statuses.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Conversation, CrisisEvent
from .errors import ChatError
from .states import ConversationStatus, RiskLevel, SafetyResponse
from .transcript import transition_status

logger = logging.getLogger(__name__)

# shown verbatim to at-risk users
PRIMARY_RESOURCES: List[Dict[str, str]] = [
    {
        "id": "988-lifeline",
        "name": "988 Suicide & Crisis Lifeline",
        "description": "Free, confidential support for people in distress",
        "phone": "988",
        "text": "988",
        "available": "24/7",
        "type": "hotline",
    },
    {
        "id": "crisis-text",
        "name": "Crisis Text Line",
        "description": "Text with a trained crisis counselor",
        "text": "Text HOME to 741741",
        "available": "24/7",
        "type": "text",
    },
    {
        "id": "911",
        "name": "Emergency Services",
        "description": "For immediate danger or medical emergency",
        "phone": "911",
        "available": "24/7",
        "type": "emergency",
    },
]

TREVOR_PROJECT = {
    "id": "trevor-project",
    "name": "The Trevor Project",
    "description": "For LGBTQ+ young people",
    "phone": "1-866-488-7386",
    "text": "Text START to 678-678",
    "available": "24/7",
    "type": "hotline",
}

CHILDHELP = {
    "id": "childhelp",
    "name": "Childhelp National Child Abuse Hotline",
    "description": "Help for child abuse situations",
    "phone": "1-800-422-4453",
    "available": "24/7",
    "type": "hotline",
}

SECONDARY_RESOURCES = [TREVOR_PROJECT, CHILDHELP]

PIVOT_MESSAGES = {
    RiskLevel.CRITICAL: (
        "I hear you, and I want you to know that what you're feeling matters. "
        "Right now, I want to make sure you're safe."
    ),
    RiskLevel.HIGH: (
        "Thank you for sharing that with me. Your feelings are valid, and "
        "there are people who want to help."
    ),
}
DEFAULT_PIVOT_MESSAGE = (
    "I noticed you might be going through a difficult time. "
    "Remember, support is always available."
)

SAFE_MESSAGE = "Thank you for letting us know. We can continue when you're ready."
NEED_HELP_MESSAGE = (
    "We encourage you to reach out to one of these resources. "
    "You don't have to go through this alone."
)
EXIT_MESSAGE = "Your progress has been saved. You can return anytime. Take care of yourself."


def pivot_type_for(level: RiskLevel) -> str:
    if level == RiskLevel.CRITICAL:
        return "full_screen"
    if level == RiskLevel.HIGH:
        return "overlay"
    return "inline"


def secondary_resources_for(level: RiskLevel, context: dict | None = None) -> List[Dict[str, str]]:
    if level == RiskLevel.CRITICAL:
        return list(SECONDARY_RESOURCES)
    if level == RiskLevel.HIGH:
        flags = (context or {}).get("flags") or {}
        return [CHILDHELP] if flags.get("has_abuse_indicators") else [TREVOR_PROJECT]
    return []


@dataclass
class PivotResult:
    pivot_type: str
    message: str
    crisis_event_id: str
    conversation_status: ConversationStatus
    resources: List[Dict[str, str]] = field(default_factory=lambda: list(PRIMARY_RESOURCES))
    secondary_resources: List[Dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "pivotType": self.pivot_type,
            "message": self.message,
            "resources": self.resources,
            "secondaryResources": self.secondary_resources,
            "conversationStatus": self.conversation_status.value,
            "crisisEventId": self.crisis_event_id,
        }


@dataclass
class SafetyResponseResult:
    success: bool
    conversation_status: ConversationStatus
    action: str | None = None
    message: str | None = None
    error: str | None = None
    resources: List[Dict[str, str]] | None = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "action": self.action,
            "message": self.message,
            "conversationStatus": self.conversation_status.value,
        }
        if self.error:
            out["error"] = self.error
        if self.resources is not None:
            out["resources"] = self.resources
        return out


class SafetyPivotController:
    def __init__(self, db: Session, conversation: Conversation):
        self.db = db
        self.conversation = conversation

    def latest_unresolved_event(self) -> CrisisEvent | None:
        return self.db.execute(
            select(CrisisEvent)
            .where(CrisisEvent.conversation_id == self.conversation.id, CrisisEvent.resolved_at.is_(None))
            .order_by(CrisisEvent.created_at.desc())
            .limit(1)
        ).scalars().first()

    def initiate_pivot(self, event: CrisisEvent) -> PivotResult:
        """Pause the conversation and build the resource payload.

        The payload is returned even if flagging the event as shown fails.
        """
        event_id = event.id
        if self.conversation.status == ConversationStatus.ACTIVE:
            try:
                transition_status(
                    self.db, self.conversation, ConversationStatus.ACTIVE, ConversationStatus.CRISIS_PAUSED
                )
                logger.info("Conversation %s paused for crisis (%s)", self.conversation.id, event.risk_level.value)
            except ChatError as e:
                logger.warning("Conversation %s not paused: %s", self.conversation.id, e.detail)

        result = PivotResult(
            pivot_type=pivot_type_for(event.risk_level),
            message=PIVOT_MESSAGES.get(event.risk_level, DEFAULT_PIVOT_MESSAGE),
            crisis_event_id=event_id,
            conversation_status=self.conversation.status,
            secondary_resources=secondary_resources_for(event.risk_level, event.context),
        )

        try:
            event.safety_pivot_shown = True
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Could not mark crisis event %s as shown: %s", result.crisis_event_id, e)
        return result

    def record_user_response(self, event: CrisisEvent, response: str) -> SafetyResponseResult:
        choice = SafetyResponse.parse(response)
        if choice is None:
            return SafetyResponseResult(
                success=False, conversation_status=self.conversation.status, error="Unknown response type"
            )
        if self.conversation.status != ConversationStatus.CRISIS_PAUSED:
            return SafetyResponseResult(
                success=False, conversation_status=self.conversation.status, error="Conversation is not paused"
            )

        try:
            if choice == SafetyResponse.SAFE:
                return self._handle_safe(event)
            if choice == SafetyResponse.NEED_HELP:
                return self._handle_need_help(event)
            return self._handle_exit(event)
        except ChatError as e:
            # another request changed the status first
            return SafetyResponseResult(
                success=False, conversation_status=self.conversation.status, error=e.detail
            )

    def _handle_safe(self, event: CrisisEvent) -> SafetyResponseResult:
        transition_status(self.db, self.conversation, ConversationStatus.CRISIS_PAUSED, ConversationStatus.ACTIVE)
        event.user_response = SafetyResponse.SAFE.value
        event.resolved_at = datetime.utcnow()
        event.resolved_by = "pivot_safe_response"
        self.db.commit()
        logger.info("Conversation %s resumed after safety check", self.conversation.id)
        return SafetyResponseResult(
            success=True, action="continue", message=SAFE_MESSAGE,
            conversation_status=ConversationStatus.ACTIVE,
        )

    def _handle_need_help(self, event: CrisisEvent) -> SafetyResponseResult:
        context = event.context
        context["needs_follow_up"] = True
        event.context_json = json.dumps(context)
        event.user_response = SafetyResponse.NEED_HELP.value
        self.db.commit()
        logger.info("Crisis event %s flagged for follow-up", event.id)
        return SafetyResponseResult(
            success=True, action="show_resources", message=NEED_HELP_MESSAGE,
            conversation_status=ConversationStatus.CRISIS_PAUSED,
            resources=list(PRIMARY_RESOURCES),
        )

    def _handle_exit(self, event: CrisisEvent) -> SafetyResponseResult:
        transition_status(self.db, self.conversation, ConversationStatus.CRISIS_PAUSED, ConversationStatus.ABANDONED)
        event.user_response = SafetyResponse.EXIT.value
        self.db.commit()
        logger.info("Conversation %s ended from safety pivot", self.conversation.id)
        return SafetyResponseResult(
            success=True, action="exit", message=EXIT_MESSAGE,
            conversation_status=ConversationStatus.ABANDONED,
        )


def _contact(resource: Dict[str, str]) -> str:
    parts = []
    if resource.get("phone"):
        parts.append(f"call {resource['phone']}")
    if resource.get("text"):
        text = resource["text"]
        parts.append(text[0].lower() + text[1:] if text.lower().startswith("text ") else f"text {text}")
    return " or ".join(parts)


def safety_message_text(pivot: PivotResult) -> str:
    """Assistant turn recorded in the transcript when a pivot is shown."""
    lines = [
        pivot.message,
        "",
        "If you're having thoughts of hurting yourself, please reach out to someone who can help:",
    ]
    lines += [f"- {r['name']}: {_contact(r)}" for r in pivot.resources]
    lines += [
        "",
        "You don't have to go through this alone. Would you like to continue our conversation, "
        "or would you prefer to take a break?",
    ]
    return "\n".join(lines)
