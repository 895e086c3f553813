from __future__ import annotations
from typing import Iterable

from .prompts import (
    SYSTEM, USER_TYPE_INSTRUCTIONS, RESPONSE_GUIDELINES, SAFETY_PROTOCOL, GREETING,
    SCRIPTED_ACK, SCRIPTED_CLARIFY, SCRIPTED_WRAP_UP,
)
from ..screeners.loader import Screener, Question


def build_system_prompt(screener: Screener, user_type: str = "parent") -> str:
    parts = [
        SYSTEM,
        screener.context,
        USER_TYPE_INSTRUCTIONS.get(user_type, ""),
        RESPONSE_GUIDELINES,
        SAFETY_PROTOCOL,
    ]
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def build_question_prompt(
    screener: Screener,
    pending: Question | None,
    following: Question | None,
    questions_remaining: int,
    user_type: str = "parent",
    introducing: bool = False,
) -> str:
    if pending is None:
        return (
            "## Wrap-up\n"
            "All questions have been answered. Thank the person warmly, let them know the check-in is complete "
            "and that a clinician will review it. Do not ask any further screening questions."
        )
    lines = [
        "## Current Question",
        f'Question {pending.order} of {screener.total_questions}: "{pending.text}"',
        f"Answer scale: {screener.scale_description()}",
        "",
    ]
    if introducing:
        lines += [
            "This question has not been put to the user yet. Briefly acknowledge their last message, then ask it.",
            f"Adapt your phrasing for the user type ({user_type}).",
        ]
        return "\n".join(lines)
    lines += [
        "If the user's last message answers this question, briefly acknowledge it and move on"
        + (f' to the next question: "{following.text}".' if following else " to closing the check-in."),
        "If it does not clearly answer it, gently ask for clarification about how often this happens.",
        f"Adapt your phrasing for the user type ({user_type}).",
    ]
    if questions_remaining <= 3:
        lines.append("We are nearing the end of the assessment.")
    return "\n".join(lines)


def build_chat_messages(
    screener: Screener,
    history: Iterable,
    pending: Question | None,
    following: Question | None,
    questions_remaining: int,
    user_type: str = "parent",
    introducing: bool = False,
    risk_note: str | None = None,
) -> list[dict]:
    """System instruction, then the transcript window (oldest first), then the question context."""
    messages = [{"role": "system", "content": build_system_prompt(screener, user_type)}]
    for m in history:
        messages.append(m.to_openai_format())
    context = build_question_prompt(screener, pending, following, questions_remaining, user_type, introducing)
    if risk_note:
        context += f"\n\n## Risk Note\n{risk_note}"
    messages.append({"role": "system", "content": context})
    return messages


def ask_question(screener: Screener, question: Question) -> str:
    return f'{screener.instructions} "{question.text}" ({screener.scale_description()})'


def build_greeting(screener: Screener) -> str:
    """Opening turn; it puts the first question so the next reply can be scored against it."""
    first = screener.questions[0]
    return GREETING.format(screener_name=screener.greeting_name, first_question=ask_question(screener, first))


def build_scripted_reply(screener: Screener, pending: Question | None, clarifying: bool = False) -> str:
    """Deterministic next-turn text used when no model is configured."""
    if pending is None:
        return SCRIPTED_WRAP_UP
    lead = SCRIPTED_CLARIFY if clarifying else SCRIPTED_ACK
    return f"{lead} {ask_question(screener, pending)}"
