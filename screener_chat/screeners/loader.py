from __future__ import annotations
import os, yaml
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Any, List

SCREENERS_DIR = os.path.dirname(__file__)


@dataclass(frozen=True)
class Question:
    id: str
    order: int
    text: str
    subscale: str


@dataclass(frozen=True)
class Screener:
    id: str
    name: str
    short_name: str
    greeting_name: str
    instructions: str
    context: str
    scale: List[Dict[str, Any]]
    questions: List[Question]
    answer_phrases: Dict[int, List[str]] = field(default_factory=dict)
    scoring: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def max_value(self) -> int:
        return max(int(opt["value"]) for opt in self.scale)

    def question(self, question_id: str) -> Question | None:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    def scale_description(self) -> str:
        return ", ".join(f"{opt['value']} = {opt['label']}" for opt in self.scale)


def _build(data: Dict[str, Any]) -> Screener:
    questions = sorted(
        (Question(id=q["id"], order=int(q["order"]), text=q["text"], subscale=q.get("subscale", "")) for q in data["questions"]),
        key=lambda q: q.order,
    )
    return Screener(
        id=data["id"],
        name=data["name"],
        short_name=data.get("short_name", data["id"].upper()),
        greeting_name=data.get("greeting_name", "wellness check"),
        instructions=data.get("instructions", ""),
        context=data.get("context", ""),
        scale=list(data["scale"]),
        questions=questions,
        answer_phrases={int(k): [str(p).lower() for p in v] for k, v in (data.get("answer_phrases") or {}).items()},
        scoring=data.get("scoring") or {},
    )


@lru_cache(maxsize=1)
def load_screeners() -> Dict[str, Screener]:
    out: Dict[str, Screener] = {}
    for fn in sorted(os.listdir(SCREENERS_DIR)):
        if fn.endswith(".yaml") or fn.endswith(".yml"):
            path = os.path.join(SCREENERS_DIR, fn)
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            out[data["id"]] = _build(data)
    return out


def get_screener(screener_type: str) -> Screener:
    screeners = load_screeners()
    if screener_type not in screeners:
        raise KeyError(f"Unknown screener type: {screener_type}")
    return screeners[screener_type]


def screener_types() -> List[str]:
    return list(load_screeners().keys())


def total_questions_for(screener_type: str) -> int:
    return get_screener(screener_type).total_questions
