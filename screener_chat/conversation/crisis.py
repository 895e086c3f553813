"""Keyword-based crisis detection for user-authored text.

Runs before any model call on every inbound message. The baseline pass is
pure and synchronous: no I/O, no network, same answer for the same text.
"""
from __future__ import annotations

import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List

from sqlalchemy.orm import Session

from ..models import CrisisEvent
from .states import RiskLevel, DetectionMethod

logger = logging.getLogger(__name__)

CRISIS_KEYWORDS: Dict[RiskLevel, Dict[str, List[str]]] = {
    RiskLevel.CRITICAL: {
        "suicide": [
            "suicide", "suicidal", "kill myself", "end my life", "end it all",
            "want to die", "better off dead", "take my own life",
            "don't want to be alive", "don't want to live",
        ],
        "method": [
            "overdose", "slit my wrists", "jump off", "hang myself", "shoot myself",
            "have a plan", "note to my family", "final goodbye", "last message",
        ],
        "self_harm_active": [
            "cutting myself", "hurting myself", "harm myself", "hurt myself right now",
            "going to hurt myself", "burning myself",
        ],
    },
    RiskLevel.HIGH: {
        "self_harm_ideation": [
            "want to hurt myself", "feel like cutting", "think about hurting",
            "self harm", "scratch myself", "hit myself", "punching walls",
        ],
        "abuse": [
            "being abused", "someone hurts me", "hitting me", "touches me",
            "makes me do things", "scared of them", "threatens me", "molested",
        ],
        "severe_distress": [
            "can't take it anymore", "can't go on", "no way out", "trapped",
            "no reason to live", "nothing matters", "no point", "unbearable",
        ],
    },
    RiskLevel.MEDIUM: {
        "hopelessness": [
            "hopeless", "no hope", "never get better", "always be this way",
            "giving up", "what's the point", "why bother", "don't care anymore",
        ],
        "worthlessness": [
            "worthless", "useless", "burden", "everyone hates me", "no one cares",
            "better without me", "don't deserve", "failure", "hate myself",
        ],
        "isolation": [
            "all alone", "no one understands", "nobody to talk to", "completely alone",
            "no friends", "no one to help", "abandoned",
        ],
    },
    RiskLevel.LOW: {
        "general_distress": [
            "so sad", "really sad", "very depressed", "extremely anxious",
            "can't cope", "overwhelmed", "breaking down", "falling apart",
        ],
        "sleep_issues": [
            "can't sleep at all", "nightmares every night", "afraid to sleep",
            "haven't slept in days",
        ],
    },
}

# escalate medium -> high
SEVERITY_MODIFIERS = {
    "intensifiers": ["always", "never", "every day", "constantly", "all the time", "worst"],
    "temporal": ["right now", "today", "tonight", "this week", "lately"],
    "certainty": ["definitely", "for sure", "i know", "i will", "going to"],
}

# escalate high -> critical
IMMEDIACY_TERMS = ["tonight", "right now", "today", "going to do it", "goodbye"]

LEETSPEAK = str.maketrans({"0": "o", "1": "i", "3": "e", "4": "a", "5": "s", "7": "t", "@": "a", "$": "s"})

RESPONSE_GUIDANCE = {
    RiskLevel.CRITICAL: {"action": "safety_pivot", "message": "Pause conversation, show safety resources immediately", "log_event": True, "alert_staff": True},
    RiskLevel.HIGH: {"action": "show_resources", "message": "Acknowledge with empathy, provide crisis resources", "log_event": True, "alert_staff": False},
    RiskLevel.MEDIUM: {"action": "empathetic_response", "message": "Respond with increased empathy, monitor closely", "log_event": True, "alert_staff": False},
    RiskLevel.LOW: {"action": "acknowledge", "message": "Acknowledge feelings, continue with warmth", "log_event": True, "alert_staff": False},
    RiskLevel.NONE: {"action": "continue", "message": "Continue normal conversation flow", "log_event": False, "alert_staff": False},
}


def _compile(phrases: List[str]) -> List[tuple[str, re.Pattern]]:
    return [(p, re.compile(rf"\b{re.escape(p)}\b")) for p in phrases]


_PATTERNS = {
    level: {cat: _compile(words) for cat, words in cats.items()}
    for level, cats in CRISIS_KEYWORDS.items()
}
_MODIFIERS = _compile([m for group in SEVERITY_MODIFIERS.values() for m in group])
_IMMEDIACY = _compile(IMMEDIACY_TERMS)


def normalize(text: str) -> str:
    t = unicodedata.normalize("NFKC", text).lower()
    t = t.replace("’", "'").replace("‘", "'")
    t = re.sub(r"[^\w\s']", " ", t)
    return re.sub(r"\s+", " ", t).strip()


def deobfuscate(text: str) -> str:
    """Second-pass form: leetspeak folded, spaced/dotted single letters joined ("k.i.l.l" -> "kill")."""
    t = unicodedata.normalize("NFKC", text).lower().translate(LEETSPEAK)
    t = re.sub(r"\b(?:\w[\s._\-*]){2,}\w\b", lambda m: re.sub(r"[\s._\-*]", "", m.group(0)), t)
    return normalize(t)


@dataclass(frozen=True)
class CrisisAssessment:
    risk_level: RiskLevel
    matched_keywords: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    flags: Dict[str, object] = field(default_factory=dict)
    method: DetectionMethod = DetectionMethod.KEYWORD

    @property
    def requires_pivot(self) -> bool:
        return self.risk_level.at_least(RiskLevel.HIGH)

    @property
    def guidance(self) -> dict:
        return RESPONSE_GUIDANCE[self.risk_level]


class CrisisDetector:
    def _matches(self, normalized: str) -> Dict[str, List[str]]:
        matches: Dict[str, List[str]] = {}
        for level, cats in _PATTERNS.items():
            for cat, pats in cats.items():
                found = [p for p, rx in pats if rx.search(normalized)]
                if found:
                    matches[f"{level.value}_{cat}"] = found
        return matches

    @staticmethod
    def _any(pats, normalized: str) -> bool:
        return any(rx.search(normalized) for _, rx in pats)

    def _level(self, matches: Dict[str, List[str]], normalized: str) -> RiskLevel:
        if not matches:
            return RiskLevel.NONE
        levels = [RiskLevel(key.split("_", 1)[0]) for key in matches]
        level = RiskLevel.highest(levels)
        if level == RiskLevel.HIGH and self._any(_IMMEDIACY, normalized):
            return RiskLevel.CRITICAL
        if level == RiskLevel.MEDIUM and self._any(_MODIFIERS, normalized):
            return RiskLevel.HIGH
        return level

    def detect(self, text: str) -> CrisisAssessment:
        if not isinstance(text, str):
            raise TypeError("crisis detection needs text")
        normalized = normalize(text)
        matches = self._matches(normalized)
        level = self._level(matches, normalized)

        # obfuscated spellings only ever raise the level
        alt = deobfuscate(text)
        if alt != normalized:
            alt_matches = self._matches(alt)
            alt_level = self._level(alt_matches, alt)
            if alt_level.severity > level.severity:
                matches, level = alt_matches, alt_level

        keys = list(matches.keys())
        return CrisisAssessment(
            risk_level=level,
            matched_keywords=[kw for found in matches.values() for kw in found],
            categories=keys,
            flags={
                "has_suicide_ideation": any("suicide" in k for k in keys),
                "has_self_harm": any("self_harm" in k for k in keys),
                "has_abuse_indicators": any("abuse" in k for k in keys),
                "has_hopelessness": any("hopelessness" in k for k in keys),
                "has_worthlessness": any("worthlessness" in k for k in keys),
                "match_count": sum(len(v) for v in matches.values()),
                "category_count": len(keys),
            },
        )

    def detect_safely(self, text: str) -> CrisisAssessment:
        """`detect`, failing closed: a detector error is treated as high risk, never as none."""
        try:
            return self.detect(text)
        except Exception as e:
            logger.error("Crisis detection failed, escalating: %s", e)
            return CrisisAssessment(
                risk_level=RiskLevel.HIGH,
                categories=["detector_error"],
                flags={"detector_error": True},
            )


def log_crisis_event(db: Session, conversation, message, assessment: CrisisAssessment):
    """Record a CrisisEvent for a user message; the caller commits."""
    event = CrisisEvent(
        conversation_id=conversation.id,
        message_id=message.id if message is not None else None,
        user_id=conversation.user_id,
        risk_level=assessment.risk_level,
        trigger_content=message.content if message is not None else "",
        matched_keywords_json=json.dumps(assessment.matched_keywords),
        context_json=json.dumps({
            "screener_type": conversation.screener_type,
            "questions_completed": conversation.questions_completed,
            "categories": assessment.categories,
            "flags": assessment.flags,
        }),
        detection_method=assessment.method,
    )
    db.add(event)
    db.flush()
    logger.warning(
        "Crisis signal in conversation %s: level=%s keywords=%d",
        conversation.id, assessment.risk_level.value, len(assessment.matched_keywords),
    )
    return event
