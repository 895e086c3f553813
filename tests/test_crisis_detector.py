import pytest

from screener_chat.conversation.crisis import CrisisDetector, RESPONSE_GUIDANCE
from screener_chat.conversation.states import RiskLevel

detector = CrisisDetector()

@pytest.mark.parametrize("text,level", [
    ("I feel sad most days", RiskLevel.NONE),
    ("Several days", RiskLevel.NONE),
    ("Nearly every day", RiskLevel.NONE),
    ("I'm so sad lately", RiskLevel.LOW),
    ("I feel hopeless", RiskLevel.MEDIUM),
    ("I always feel hopeless", RiskLevel.HIGH),
    ("I can't take it anymore", RiskLevel.HIGH),
    ("someone hurts me at home", RiskLevel.HIGH),
    ("I can't take it anymore and tonight I'm done", RiskLevel.CRITICAL),
    ("I want to kill myself", RiskLevel.CRITICAL),
    ("sometimes I think about suicide", RiskLevel.CRITICAL),
    ("I have a plan", RiskLevel.CRITICAL),
])
def test_levels(text, level):
    assert detector.detect(text).risk_level == level

def test_highest_level_wins():
    result = detector.detect("I feel worthless and I want to kill myself")
    assert result.risk_level == RiskLevel.CRITICAL
    assert "worthless" in result.matched_keywords
    assert "kill myself" in result.matched_keywords
    assert result.flags["has_suicide_ideation"] is True
    assert result.flags["has_worthlessness"] is True
    assert result.requires_pivot

def test_word_boundaries():
    assert detector.detect("This homework is burdensome").risk_level == RiskLevel.NONE
    assert detector.detect("I feel like a burden").risk_level == RiskLevel.MEDIUM

def test_curly_apostrophes_and_case():
    assert detector.detect("I CAN’T GO ON").risk_level == RiskLevel.HIGH

def test_obfuscated_spelling_escalates():
    assert detector.detect("i want to k.i.l.l myself").risk_level == RiskLevel.CRITICAL
    assert detector.detect("k1ll mys3lf").risk_level == RiskLevel.CRITICAL

def test_abuse_flag():
    result = detector.detect("my uncle threatens me")
    assert result.risk_level == RiskLevel.HIGH
    assert result.flags["has_abuse_indicators"] is True
    assert result.guidance == RESPONSE_GUIDANCE[RiskLevel.HIGH]

def test_deterministic():
    a = detector.detect("I feel hopeless and alone, no one cares")
    b = detector.detect("I feel hopeless and alone, no one cares")
    assert a == b

def test_detector_error_fails_closed(monkeypatch):
    d = CrisisDetector()
    def boom(text):
        raise RuntimeError("pattern table missing")
    monkeypatch.setattr(d, "detect", boom)
    result = d.detect_safely("anything at all")
    assert result.risk_level == RiskLevel.HIGH
    assert result.flags["detector_error"] is True
    assert result.requires_pivot

def test_non_text_fails_closed():
    assert detector.detect_safely(None).risk_level == RiskLevel.HIGH
