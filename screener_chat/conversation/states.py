"""Closed vocabularies for conversation, message and crisis-event fields.

Every status column is backed by one of these enums, and conversation status
changes go through `check_transition` so that an illegal move (for example
`completed -> crisis_paused`) is refused before anything is written.
"""
from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    CRISIS_PAUSED = "crisis_paused"


class Sender(str, Enum):
    AI = "ai"
    USER = "user"
    SYSTEM = "system"


class ModelRole(str, Enum):
    ASSISTANT = "assistant"
    USER = "user"
    SYSTEM = "system"


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _RISK_ORDER[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.severity >= other.severity

    @classmethod
    def highest(cls, levels) -> "RiskLevel":
        out = cls.NONE
        for lvl in levels:
            if lvl.severity > out.severity:
                out = lvl
        return out


_RISK_ORDER = {
    RiskLevel.NONE: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class DetectionMethod(str, Enum):
    KEYWORD = "keyword"
    SENTIMENT = "sentiment"
    LLM = "llm"
    MANUAL = "manual"


class SafetyResponse(str, Enum):
    SAFE = "safe"
    NEED_HELP = "need_help"
    EXIT = "exit"

    @classmethod
    def parse(cls, value) -> "SafetyResponse | None":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class UserType(str, Enum):
    PARENT = "parent"
    MINOR = "minor"
    FRIEND = "friend"


SENDER_TO_ROLE = {
    Sender.AI: ModelRole.ASSISTANT,
    Sender.USER: ModelRole.USER,
    Sender.SYSTEM: ModelRole.SYSTEM,
}

# crisis_paused is only left through the safety pivot (resume or exit)
ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({
        ConversationStatus.COMPLETED,
        ConversationStatus.CRISIS_PAUSED,
        ConversationStatus.ABANDONED,
    }),
    ConversationStatus.CRISIS_PAUSED: frozenset({
        ConversationStatus.ACTIVE,
        ConversationStatus.ABANDONED,
    }),
    ConversationStatus.COMPLETED: frozenset(),
    ConversationStatus.ABANDONED: frozenset(),
}

OPEN_STATUSES = frozenset({ConversationStatus.ACTIVE, ConversationStatus.CRISIS_PAUSED})


def can_transition(current: ConversationStatus, target: ConversationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: ConversationStatus, target: ConversationStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move conversation from {current.value} to {target.value}")
