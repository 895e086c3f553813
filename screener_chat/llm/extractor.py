from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict

from .openai_client import OpenAIClient, LLMError
from .prompts import EXTRACTION_INSTRUCTIONS
from ..core.config import settings
from ..screeners.loader import Screener, Question

logger = logging.getLogger(__name__)

PHRASE_CONFIDENCE = 0.9
AMBIGUOUS_CONFIDENCE = 0.5
DIGIT_CONFIDENCE = 0.6

TOOL_NAME = "extract_response"


@dataclass
class Extraction:
    question_id: str | None
    value: int | None
    confidence: float
    reasoning: str = ""
    method: str = "none"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def answered(self) -> bool:
        return self.value is not None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "value": self.value,
            "confidence": self.confidence,
            "method": self.method,
        }


def empty_result(question_id: str | None = None, method: str = "none", **metadata) -> Extraction:
    return Extraction(question_id=question_id, value=None, confidence=0.0, method=method, metadata=metadata)


def extraction_tool(screener: Screener) -> dict:
    return {
        "type": "function",
        "function": {
            "name": TOOL_NAME,
            "description": "Extract a structured screener answer from the user's reply",
            "parameters": {
                "type": "object",
                "properties": {
                    "value": {
                        "type": ["integer", "null"],
                        "description": f"Answer value (0-{screener.max_value}) or null if unclear",
                    },
                    "confidence": {"type": "number", "description": "Confidence score 0.0-1.0"},
                    "reasoning": {"type": "string", "description": "Brief explanation of the mapping"},
                },
                "required": ["value", "confidence", "reasoning"],
            },
        },
    }


def _coerce_value(raw: Any, screener: Screener) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if not isinstance(raw, int):
        return None
    if raw < 0 or raw > screener.max_value:
        return None
    return raw


def _coerce_confidence(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 0.0
    return max(0.0, min(1.0, float(raw)))


def parse_tool_response(message: Dict[str, Any], question: Question, screener: Screener) -> Extraction:
    """Read the forced tool call; anything unreadable becomes an empty extraction."""
    try:
        call = message["tool_calls"][0]["function"]
        if call.get("name") != TOOL_NAME:
            raise ValueError(f"unexpected tool {call.get('name')!r}")
        args = json.loads(call["arguments"])
        if not isinstance(args, dict):
            raise ValueError("arguments are not an object")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning("Malformed extraction output for %s: %s", question.id, e)
        return empty_result(question.id, method="llm", error="malformed")

    value = _coerce_value(args.get("value"), screener)
    if value is None:
        return empty_result(question.id, method="llm", raw=args)
    return Extraction(
        question_id=question.id,
        value=value,
        confidence=_coerce_confidence(args.get("confidence")),
        reasoning=str(args.get("reasoning") or ""),
        method="llm",
        metadata={"raw": args},
    )


def _phrase_hits(text: str, screener: Screener) -> list[tuple[int, str]]:
    hits = []
    for value, phrases in screener.answer_phrases.items():
        for p in phrases:
            if re.search(rf"\b{re.escape(p)}\b", text):
                hits.append((value, p))
    return hits


def rule_based_extract(user_text: str, question: Question, screener: Screener) -> Extraction:
    t = user_text.strip().lower()
    hits = _phrase_hits(t, screener)
    if hits:
        # longest phrase wins ("not at all" over "no"); a tie across values is ambiguous
        longest = max(len(p) for _, p in hits)
        values = {v for v, p in hits if len(p) == longest}
        value = min(values)
        conf = PHRASE_CONFIDENCE if len(values) == 1 else AMBIGUOUS_CONFIDENCE
        return Extraction(question.id, value, conf, method="rule_based", metadata={"matched": [p for _, p in hits]})

    m = re.search(r"\b(\d)\b", t)
    if m and int(m.group(1)) <= screener.max_value:
        return Extraction(question.id, int(m.group(1)), DIGIT_CONFIDENCE, method="rule_based", metadata={"matched": [m.group(1)]})

    return empty_result(question.id, method="rule_based", no_match=True)


class ResponseExtractor:
    def __init__(self, client: OpenAIClient, screener: Screener):
        self.client = client
        self.screener = screener

    def _messages(self, question: Question, user_text: str, context: str) -> list[dict]:
        prompt = [f'Question: "{question.text}"']
        if context:
            prompt.append(f'Assistant turn: "{context}"')
        prompt.append(f'User response: "{user_text}"')
        return [
            {
                "role": "system",
                "content": EXTRACTION_INSTRUCTIONS.format(
                    screener=self.screener.short_name, scale=self.screener.scale_description()
                ),
            },
            {"role": "user", "content": "\n".join(prompt)},
        ]

    async def extract(self, question: Question | None, user_text: str, context: str = "") -> Extraction:
        """Map a free-text reply onto the pending question's scale.

        Never raises: failures come back as value=None, confidence=0.0 so the
        caller re-asks the same question.
        """
        if question is None or not user_text or not user_text.strip():
            return empty_result(question.id if question else None)
        if not self.client.configured:
            return rule_based_extract(user_text, question, self.screener)
        try:
            message = await self.client.chat(
                self._messages(question, user_text, context),
                model=self.client.extraction_model,
                temperature=settings.EXTRACTION_TEMPERATURE,
                tools=[extraction_tool(self.screener)],
                tool_choice={"type": "function", "function": {"name": TOOL_NAME}},
            )
        except LLMError as e:
            logger.error("Extraction call failed for %s: %s", question.id, e)
            return empty_result(question.id, method="llm", error=str(e))
        return parse_tool_response(message, question, self.screener)
