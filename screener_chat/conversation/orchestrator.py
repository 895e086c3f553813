from __future__ import annotations

import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import Assessment, Conversation, Message, ScreenerResponse
from ..llm.composer import build_chat_messages, build_greeting, build_scripted_reply
from ..llm.extractor import Extraction, ResponseExtractor, empty_result
from ..llm.openai_client import LLMError, OpenAIClient
from ..llm.prompts import FALLBACK_REPLY
from ..screeners.loader import Question, get_screener
from ..screeners.scoring import score_responses
from .crisis import CrisisAssessment, CrisisDetector, log_crisis_event
from .errors import ChatError, ConversationNotActiveError, EmptyMessageError, ProcessingError
from .safety import PivotResult, SafetyPivotController, safety_message_text
from .states import ConversationStatus, RiskLevel, Sender
from .transcript import append_message, current_status, recent_messages, transition_status

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    message_id: str
    content: str
    risk_level: RiskLevel
    questions_completed: int
    total_questions: int
    is_complete: bool
    show_safety_pivot: bool = False
    pivot: PivotResult | None = None
    extraction: Extraction | None = None
    crisis_event_id: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "messageId": self.message_id,
            "riskLevel": self.risk_level.value,
            "questionsCompleted": self.questions_completed,
            "totalQuestions": self.total_questions,
            "isComplete": self.is_complete,
            "showSafetyPivot": self.show_safety_pivot,
        }
        if self.pivot is not None:
            out["pivot"] = self.pivot.as_dict()
        return out


TurnEvent = Union[str, TurnResult]


@dataclass
class Progress:
    responses: Dict[str, ScreenerResponse] = field(default_factory=dict)
    completed: int = 0
    pending: List[Question] = field(default_factory=list)

    @property
    def current(self) -> Question | None:
        return self.pending[0] if self.pending else None

    @property
    def following(self) -> Question | None:
        return self.pending[1] if len(self.pending) > 1 else None


class ScreenerChatService:
    """Drives one screener conversation, a turn at a time.

    The model client is passed in; nothing here reaches for a global handle.
    """

    def __init__(
        self,
        db: Session,
        conversation: Conversation,
        llm: OpenAIClient,
        detector: CrisisDetector | None = None,
        extractor: ResponseExtractor | None = None,
    ):
        self.db = db
        self.conversation = conversation
        self.llm = llm
        self.screener = get_screener(conversation.screener_type)
        self.detector = detector or CrisisDetector()
        self.extractor = extractor or ResponseExtractor(llm, self.screener)

    @property
    def user_type(self) -> str:
        user_type = self.conversation.meta.get("user_type")
        if not user_type and self.conversation.user is not None:
            user_type = self.conversation.user.user_type.value
        return user_type or "parent"

    def progress(self) -> Progress:
        rows = self.db.execute(
            select(ScreenerResponse).where(ScreenerResponse.conversation_id == self.conversation.id)
        ).scalars().all()
        responses = {r.question_id: r for r in rows}
        pending = [
            q for q in self.screener.questions
            if q.id not in responses or responses[q.id].needs_clarification
        ]
        completed = min(self.screener.total_questions - len(pending), self.screener.total_questions)
        return Progress(responses=responses, completed=completed, pending=pending)

    def generate_greeting(self) -> Message:
        first = self.screener.questions[0] if self.screener.questions else None
        self.conversation.current_question_id = first.id if first else None
        self.conversation.update_meta(asked_question_id=first.id if first else None)
        self.db.commit()
        return append_message(self.db, self.conversation, Sender.AI, build_greeting(self.screener))

    def _require_active(self) -> None:
        status = current_status(self.db, self.conversation)
        if status != ConversationStatus.ACTIVE:
            raise ConversationNotActiveError(f"Conversation is {status.value}")

    async def process_message(self, user_text: str, stream: bool = False) -> TurnResult:
        result = None
        async for event in self.iter_turn(user_text, stream=stream):
            if isinstance(event, TurnResult):
                result = event
        return result

    async def iter_turn(self, user_text: str, stream: bool = True) -> AsyncIterator[TurnEvent]:
        """Run one turn, yielding reply text chunks and finally a TurnResult.

        The assistant message is written only after the reply is fully
        accumulated; closing the generator early leaves no partial turn.
        """
        text = (user_text or "").strip()
        if not text:
            raise EmptyMessageError()
        self._require_active()

        crisis = self.detector.detect_safely(text)
        user_msg = append_message(
            self.db, self.conversation, Sender.USER, text,
            risk_level=crisis.risk_level, crisis_flags=crisis.flags,
        )
        event = None
        if crisis.risk_level != RiskLevel.NONE:
            event = log_crisis_event(self.db, self.conversation, user_msg, crisis)
            self.db.commit()

        if crisis.requires_pivot:
            result = self._pivot(event, crisis)
            yield result.content
            yield result
            return

        progress = self.progress()
        pending = progress.current
        # only a question the assistant has actually put can be answered
        asked = pending is not None and self.conversation.meta.get("asked_question_id") == pending.id

        if self.llm.configured:
            chunks: List[str] = []
            async with aclosing(self._generate(progress, stream, crisis, introducing=not asked)) as replies:
                async for chunk in replies:
                    chunks.append(chunk)
                    yield chunk
            reply = "".join(chunks).strip() or FALLBACK_REPLY
        else:
            reply = None

        if asked:
            extraction = await self.extractor.extract(pending, text, context=reply or "")
        else:
            extraction = empty_result(pending.id if pending else None, method="not_asked")
        if pending is not None and extraction.question_id != pending.id:
            logger.warning(
                "Discarding extraction for %s, pending question is %s", extraction.question_id, pending.id
            )
            extraction = Extraction(question_id=pending.id, value=None, confidence=0.0, method=extraction.method)

        # a concurrent pivot may have paused the conversation while the model ran
        self._require_active()
        if asked:
            self._store_response(pending, user_msg, text, extraction)
            self.db.flush()
        progress = self.progress()
        self.conversation.questions_completed = progress.completed
        self.conversation.current_question_id = progress.current.id if progress.current else None
        self.conversation.update_meta(asked_question_id=progress.current.id if progress.current else None)
        self.db.commit()

        if reply is None:
            clarifying = asked and progress.current is not None and progress.current.id == pending.id
            reply = build_scripted_reply(self.screener, progress.current, clarifying=clarifying)
            yield reply

        ai_msg = append_message(
            self.db, self.conversation, Sender.AI, reply,
            risk_level=crisis.risk_level,
            extracted_response=extraction.as_payload() if asked else None,
        )

        is_complete = progress.completed >= self.screener.total_questions
        if is_complete:
            self._complete(progress)

        yield TurnResult(
            message_id=ai_msg.id,
            content=reply,
            risk_level=crisis.risk_level,
            questions_completed=progress.completed,
            total_questions=self.screener.total_questions,
            is_complete=is_complete,
            extraction=extraction,
            crisis_event_id=event.id if event is not None else None,
        )

    async def _generate(
        self, progress: Progress, stream: bool, crisis: CrisisAssessment, introducing: bool = False
    ) -> AsyncIterator[str]:
        risk_note = crisis.guidance["message"] if crisis.risk_level != RiskLevel.NONE else None
        messages = build_chat_messages(
            self.screener,
            recent_messages(self.db, self.conversation.id, settings.MAX_CONTEXT_MESSAGES),
            progress.current,
            progress.following,
            len(progress.pending),
            self.user_type,
            introducing=introducing,
            risk_note=risk_note,
        )
        try:
            if stream:
                chunks = self.llm.stream_chat(
                    messages,
                    model=self.llm.chat_model,
                    temperature=settings.CHAT_TEMPERATURE,
                    max_tokens=settings.CHAT_MAX_TOKENS,
                )
                async with aclosing(chunks):
                    async for chunk in chunks:
                        yield chunk
            else:
                message = await self.llm.chat(
                    messages,
                    model=self.llm.chat_model,
                    temperature=settings.CHAT_TEMPERATURE,
                    max_tokens=settings.CHAT_MAX_TOKENS,
                )
                content = message.get("content") if isinstance(message, dict) else None
                if content:
                    yield content
        except LLMError as e:
            logger.error("Chat completion failed for conversation %s: %s", self.conversation.id, e)
            raise ProcessingError() from e

    def _store_response(self, question: Question, user_msg: Message, text: str, extraction: Extraction) -> None:
        existing = self.db.execute(
            select(ScreenerResponse).where(
                ScreenerResponse.conversation_id == self.conversation.id,
                ScreenerResponse.question_id == question.id,
            )
        ).scalars().first()
        metadata = json.dumps({"method": extraction.method, "reasoning": extraction.reasoning, **extraction.metadata}, default=str)

        if existing is not None:
            existing.clarification_attempts += 1
            if extraction.answered and existing.needs_clarification and extraction.value == existing.extracted_value:
                existing.verified = True
            if extraction.answered:
                existing.message_id = user_msg.id
                existing.response_text = text
                existing.extracted_value = extraction.value
                existing.confidence = extraction.confidence
                existing.extraction_metadata_json = metadata
            return
        if not extraction.answered:
            return
        self.db.add(ScreenerResponse(
            conversation_id=self.conversation.id,
            message_id=user_msg.id,
            question_id=question.id,
            response_text=text,
            extracted_value=extraction.value,
            confidence=extraction.confidence,
            extraction_metadata_json=metadata,
        ))

    def _pivot(self, event, crisis: CrisisAssessment) -> TurnResult:
        pivot = SafetyPivotController(self.db, self.conversation).initiate_pivot(event)
        content = safety_message_text(pivot)
        ai_msg = append_message(
            self.db, self.conversation, Sender.AI, content,
            risk_level=crisis.risk_level, crisis_flags=crisis.flags,
        )
        return TurnResult(
            message_id=ai_msg.id,
            content=content,
            risk_level=crisis.risk_level,
            questions_completed=self.conversation.questions_completed,
            total_questions=self.screener.total_questions,
            is_complete=False,
            show_safety_pivot=True,
            pivot=pivot,
            crisis_event_id=pivot.crisis_event_id,
        )

    def _complete(self, progress: Progress) -> None:
        try:
            transition_status(self.db, self.conversation, ConversationStatus.ACTIVE, ConversationStatus.COMPLETED)
        except ChatError as e:
            logger.warning("Conversation %s not completed: %s", self.conversation.id, e.detail)
            return
        report = score_responses(self.screener, progress.responses.values())
        assessment = self.db.get(Assessment, self.conversation.assessment_id)
        if assessment is not None:
            assessment.status = "completed"
            assessment.total_score = report["totalScore"]
            assessment.severity = (report["severity"] or {}).get("level")
            assessment.completed_at = datetime.utcnow()
            self.db.commit()
        logger.info("Conversation %s completed (%s)", self.conversation.id, self.screener.id)
