import json
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, ForeignKey, Text, Integer, Float, UniqueConstraint, Index, event, inspect, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .core.db import Base
from .conversation.states import (
    ConversationStatus, Sender, ModelRole, RiskLevel, DetectionMethod, UserType, OPEN_STATUSES,
)

LOW_CONFIDENCE_THRESHOLD = 0.6


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls, length: int = 20):
    # stored as the plain value string ("crisis_paused"), validated on the way in
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    user_type: Mapped[UserType] = mapped_column(_enum(UserType), default=UserType.PARENT)
    is_clinician: Mapped[bool] = mapped_column(Boolean, default=False)
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    assessments: Mapped[list["Assessment"]] = relationship(back_populates="user")


class Assessment(Base):
    __tablename__ = "assessments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    screener_type: Mapped[str] = mapped_column(String(20), default="psc17")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending/in_progress/completed
    total_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    severity: Mapped[str | None] = mapped_column(String(40), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user: Mapped["User"] = relationship(back_populates="assessments")
    conversations: Mapped[list["Conversation"]] = relationship(back_populates="assessment")


class Conversation(Base):
    __tablename__ = "conversations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    assessment_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    screener_type: Mapped[str] = mapped_column(String(20), index=True)  # psc17/phq9a/scared
    status: Mapped[ConversationStatus] = mapped_column(_enum(ConversationStatus), default=ConversationStatus.ACTIVE, index=True)
    current_question_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    questions_completed: Mapped[int] = mapped_column(Integer, default=0)
    # concerns, preferences, user_type, started_at
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    assessment: Mapped["Assessment"] = relationship(back_populates="conversations")
    user: Mapped["User"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", order_by="Message.sequence_number"
    )
    screener_responses: Mapped[list["ScreenerResponse"]] = relationship(back_populates="conversation", cascade="all, delete-orphan")
    crisis_events: Mapped[list["CrisisEvent"]] = relationship(back_populates="conversation", cascade="all, delete-orphan")

    @property
    def meta(self) -> dict:
        return json.loads(self.metadata_json or "{}")

    def update_meta(self, **values) -> None:
        meta = self.meta
        meta.update(values)
        self.metadata_json = json.dumps(meta)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_number", name="uq_messages_conversation_sequence"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    sender: Mapped[Sender] = mapped_column(_enum(Sender, 10))
    role: Mapped[ModelRole] = mapped_column(_enum(ModelRole, 10))
    content: Mapped[str] = mapped_column(Text)
    # {"question_id": ..., "value": ..., "confidence": ...} or "{}"
    extracted_response_json: Mapped[str] = mapped_column(Text, default="{}")
    crisis_flags_json: Mapped[str] = mapped_column(Text, default="{}")
    risk_level: Mapped[RiskLevel] = mapped_column(_enum(RiskLevel, 10), default=RiskLevel.NONE, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer)
    streaming_complete: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    @property
    def extracted_response(self) -> dict:
        return json.loads(self.extracted_response_json or "{}")

    @property
    def crisis_flags(self) -> dict:
        return json.loads(self.crisis_flags_json or "{}")

    def to_openai_format(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class ScreenerResponse(Base):
    __tablename__ = "screener_responses"
    __table_args__ = (
        UniqueConstraint("conversation_id", "question_id", name="uq_screener_responses_conversation_question"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    message_id: Mapped[str] = mapped_column(String(36), ForeignKey("messages.id", ondelete="CASCADE"), index=True)
    question_id: Mapped[str] = mapped_column(String(40), index=True)  # e.g. phq9a_3
    response_text: Mapped[str] = mapped_column(Text)
    extracted_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    # set when the user repeats the same answer after a clarification re-ask
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    clarification_attempts: Mapped[int] = mapped_column(Integer, default=0)
    extraction_metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    conversation: Mapped["Conversation"] = relationship(back_populates="screener_responses")
    message: Mapped["Message"] = relationship()

    @property
    def low_confidence(self) -> bool:
        return self.confidence < LOW_CONFIDENCE_THRESHOLD

    @property
    def needs_clarification(self) -> bool:
        return self.extracted_value is None or (not self.verified and self.low_confidence)


class CrisisEvent(Base):
    __tablename__ = "crisis_events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    conversation_id: Mapped[str] = mapped_column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    message_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    risk_level: Mapped[RiskLevel] = mapped_column(_enum(RiskLevel, 10), index=True)
    trigger_content: Mapped[str] = mapped_column(Text)
    matched_keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    context_json: Mapped[str] = mapped_column(Text, default="{}")
    detection_method: Mapped[DetectionMethod] = mapped_column(_enum(DetectionMethod, 12), default=DetectionMethod.KEYWORD)
    safety_pivot_shown: Mapped[bool] = mapped_column(Boolean, default=False)
    user_response: Mapped[str | None] = mapped_column(String(20), nullable=True)  # safe/need_help/exit
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    conversation: Mapped["Conversation"] = relationship(back_populates="crisis_events")

    @property
    def matched_keywords(self) -> list[str]:
        return json.loads(self.matched_keywords_json or "[]")

    @property
    def context(self) -> dict:
        return json.loads(self.context_json or "{}")

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


Index("ix_messages_conversation_sender", Message.conversation_id, Message.sender)
Index("ix_crisis_events_risk_reviewed", CrisisEvent.risk_level, CrisisEvent.reviewed)

# at most one open, undiscarded conversation per assessment
_OPEN_CONVERSATION = text(
    "status IN ({}) AND discarded_at IS NULL".format(", ".join(f"'{s.value}'" for s in sorted(OPEN_STATUSES, key=lambda s: s.value)))
)
Index(
    "uq_open_conversation_per_assessment",
    Conversation.assessment_id,
    unique=True,
    sqlite_where=_OPEN_CONVERSATION,
    postgresql_where=_OPEN_CONVERSATION,
)


@event.listens_for(Message, "before_update")
def _messages_are_append_only(mapper, connection, target: Message) -> None:
    state = inspect(target)
    if any(state.attrs[col.key].history.has_changes() for col in mapper.column_attrs):
        raise ValueError("messages are append-only and cannot be modified")


@event.listens_for(CrisisEvent, "before_update")
def _crisis_risk_level_is_fixed(mapper, connection, target: CrisisEvent) -> None:
    if inspect(target).attrs.risk_level.history.has_changes():
        raise ValueError("crisis event risk level cannot change; record a new event instead")
