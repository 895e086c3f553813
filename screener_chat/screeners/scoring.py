from __future__ import annotations
from typing import Any, Dict, Iterable

from .loader import Screener

STATUS_COMPLETE = "COMPLETE"
STATUS_PARTIAL = "PARTIAL"
STATUS_EMPTY = "EMPTY"


def severity_for(screener: Screener, total: int) -> Dict[str, Any] | None:
    for band in screener.scoring.get("severity", []):
        if int(band["min"]) <= total <= int(band["max"]):
            return {"level": band["level"], "label": band["label"]}
    return None


def score_responses(screener: Screener, responses: Iterable[Any]) -> Dict[str, Any]:
    """Score stored screener responses.

    Responses still waiting on clarification are listed but not counted.
    """
    by_question = {r.question_id: r for r in responses}
    counted: Dict[str, int] = {}
    pending: list[str] = []
    items = []
    for q in screener.questions:
        r = by_question.get(q.id)
        if r is None:
            items.append({"questionId": q.id, "text": q.text, "value": None, "confidence": None, "status": "UNANSWERED"})
            continue
        if r.needs_clarification:
            pending.append(q.id)
            items.append({"questionId": q.id, "text": q.text, "value": r.extracted_value, "confidence": r.confidence, "status": "NEEDS_CLARIFICATION"})
            continue
        counted[q.id] = int(r.extracted_value)
        items.append({"questionId": q.id, "text": q.text, "value": r.extracted_value, "confidence": r.confidence, "status": "ANSWERED"})

    total = sum(counted.values())
    subscales = {}
    for name, spec in (screener.scoring.get("subscales") or {}).items():
        sub_total = sum(v for qid, v in counted.items() if screener.question(qid).subscale == name)
        cutoff = spec.get("cutoff")
        subscales[name] = {
            "score": sub_total,
            "cutoff": cutoff,
            "positive": cutoff is not None and sub_total >= int(cutoff),
        }

    if not counted:
        status = STATUS_EMPTY
    elif len(counted) == screener.total_questions:
        status = STATUS_COMPLETE
    else:
        status = STATUS_PARTIAL

    total_cutoff = screener.scoring.get("total_cutoff")
    return {
        "screenerType": screener.id,
        "screenerName": screener.name,
        "status": status,
        "answered": len(counted),
        "totalQuestions": screener.total_questions,
        "totalScore": total,
        "maxScore": screener.max_value * screener.total_questions,
        "positive": total_cutoff is not None and total >= int(total_cutoff),
        "severity": severity_for(screener, total) if status == STATUS_COMPLETE else None,
        "subscales": subscales,
        "needsClarification": pending,
        "items": items,
    }
