import json
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from screener_chat.core.db import SessionLocal
from screener_chat.models import Assessment, Conversation, CrisisEvent, Message, ScreenerResponse
from screener_chat.conversation.states import ConversationStatus, DetectionMethod, RiskLevel
from screener_chat.api.routes import conversations as conversation_routes
from conftest import make_user, auth

PHQ9A_ANSWERS = ["Not at all", "Several days", "Nearly every day", "Several days", "Not at all",
                 "Several days", "Nearly every day", "Not at all", "Several days"]

def send(client, headers, cid, content):
    return client.post(f"/conversations/{cid}/messages", headers=headers, json={"content": content})

def parse_sse(body):
    events = []
    for block in body.strip().split("\n\n"):
        lines = block.split("\n")
        events.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return events

def load(cid):
    db = SessionLocal()
    try:
        c = db.get(Conversation, cid)
        msgs = db.execute(select(Message).where(Message.conversation_id == cid).order_by(Message.sequence_number)).scalars().all()
        responses = db.execute(select(ScreenerResponse).where(ScreenerResponse.conversation_id == cid)).scalars().all()
        events = db.execute(select(CrisisEvent).where(CrisisEvent.conversation_id == cid)).scalars().all()
        return c, msgs, responses, events
    finally:
        db.close()

def test_requires_bearer_token(client, assessment):
    r = client.post("/conversations", json={"assessmentId": assessment.id})
    assert r.status_code == 401

def test_create_conversation_returns_greeting(client, headers, assessment):
    r = client.post("/conversations", headers=headers, json={"assessmentId": assessment.id})
    assert r.status_code == 201
    body = r.json()
    assert body["conversation"]["status"] == "active"
    assert body["conversation"]["totalQuestions"] == 9
    assert body["conversation"]["currentQuestionId"] == "phq9a_1"
    assert "mood and feelings check-in" in body["initialMessage"]["content"]
    assert "Little interest or pleasure in doing things" in body["initialMessage"]["content"]
    assert body["initialMessage"]["sender"] == "ai"
    assert body["initialMessage"]["sequenceNumber"] == 1

def test_one_open_conversation_per_assessment(client, headers, assessment, conversation_id):
    r = client.post("/conversations", headers=headers, json={"assessmentId": assessment.id})
    assert r.status_code == 409

def test_concurrent_create_is_rejected_by_database(client, headers, assessment, conversation_id, monkeypatch):
    # the second request read "no open conversation" before the first committed
    monkeypatch.setattr(conversation_routes, "_has_open_conversation", lambda db, assessment_id: False)
    r = client.post("/conversations", headers=headers, json={"assessmentId": assessment.id})
    assert r.status_code == 409
    db = SessionLocal()
    try:
        rows = db.execute(select(Conversation).where(Conversation.assessment_id == assessment.id)).scalars().all()
    finally:
        db.close()
    assert [c.id for c in rows] == [conversation_id]

def test_open_conversation_index(db, user, assessment):
    db.add(Conversation(assessment_id=assessment.id, user_id=user.id, screener_type="phq9a"))
    db.commit()
    db.add(Conversation(assessment_id=assessment.id, user_id=user.id, screener_type="phq9a"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

def test_closed_conversations_do_not_block_a_new_one(db, user, assessment):
    db.add(Conversation(assessment_id=assessment.id, user_id=user.id, screener_type="phq9a", status=ConversationStatus.ABANDONED))
    db.add(Conversation(assessment_id=assessment.id, user_id=user.id, screener_type="phq9a", discarded_at=datetime.utcnow()))
    db.add(Conversation(assessment_id=assessment.id, user_id=user.id, screener_type="phq9a"))
    db.commit()

def test_other_users_cannot_read_conversation(client, db, conversation_id):
    stranger = make_user(db, email="someone@example.com")
    r = client.get(f"/conversations/{conversation_id}", headers=auth(stranger))
    assert r.status_code == 404

def test_empty_content_rejected(client, headers, conversation_id):
    r = send(client, headers, conversation_id, "   ")
    assert r.status_code == 422
    _, msgs, _, _ = load(conversation_id)
    assert len(msgs) == 1

def test_answer_is_extracted_and_progress_advances(client, headers, conversation_id, fake_llm):
    r = send(client, headers, conversation_id, "Not at all")
    assert r.status_code == 200, r.text
    r = send(client, headers, conversation_id, "I feel sad most days")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message"]["sender"] == "ai"
    assert body["message"]["riskLevel"] == "none"
    assert body["conversation"] == {"questionsCompleted": 2, "totalQuestions": 9, "isComplete": False}
    assert body["showSafetyPivot"] is False

    c, msgs, responses, events = load(conversation_id)
    assert events == []
    assert c.current_question_id == "phq9a_3"
    by_q = {r.question_id: r for r in responses}
    assert by_q["phq9a_2"].extracted_value == 2
    assert by_q["phq9a_2"].confidence == 0.85
    assert not by_q["phq9a_2"].needs_clarification
    assert [m.sequence_number for m in msgs] == [1, 2, 3, 4, 5]
    assert msgs[-1].extracted_response["question_id"] == "phq9a_2"
    assert fake_llm.kinds() == ["chat", "extract", "chat", "extract"]

def test_prompt_names_pending_question(client, headers, conversation_id, fake_llm):
    send(client, headers, conversation_id, "Not at all")
    send(client, headers, conversation_id, "Several days")
    chat_call = [c for c in fake_llm.calls if c["kind"] == "chat"][-1]
    question_context = chat_call["messages"][-1]["content"]
    assert "Question 2 of 9" in question_context
    assert chat_call["messages"][0]["role"] == "system"
    assert chat_call["messages"][-2] == {"role": "user", "content": "Several days"}

def test_low_confidence_reasks_then_updates(client, headers, conversation_id):
    r = send(client, headers, conversation_id, "maybe, I'm not sure")
    assert r.json()["conversation"]["questionsCompleted"] == 0
    _, _, responses, _ = load(conversation_id)
    assert len(responses) == 1 and responses[0].needs_clarification

    r = send(client, headers, conversation_id, "Several days")
    assert r.json()["conversation"]["questionsCompleted"] == 1
    c, _, responses, _ = load(conversation_id)
    assert len(responses) == 1
    assert responses[0].question_id == "phq9a_1"
    assert responses[0].extracted_value == 1
    assert responses[0].clarification_attempts == 1
    assert c.current_question_id == "phq9a_2"

def test_unclear_answer_does_not_store_response(client, headers, conversation_id):
    r = send(client, headers, conversation_id, "what do you mean?")
    assert r.status_code == 200
    assert r.json()["conversation"]["questionsCompleted"] == 0
    _, _, responses, _ = load(conversation_id)
    assert responses == []

def test_completion_scores_assessment_and_is_idempotent(client, headers, conversation_id, assessment):
    for answer in PHQ9A_ANSWERS:
        r = send(client, headers, conversation_id, answer)
        assert r.status_code == 200, r.text
    assert r.json()["conversation"] == {"questionsCompleted": 9, "totalQuestions": 9, "isComplete": True}

    c, msgs, _, _ = load(conversation_id)
    assert c.status == ConversationStatus.COMPLETED
    assert c.current_question_id is None
    db = SessionLocal()
    a = db.get(Assessment, assessment.id)
    db.close()
    assert a.status == "completed"
    assert a.total_score == 10
    assert a.severity == "moderate"

    r = send(client, headers, conversation_id, "Not at all")
    assert r.status_code == 409
    c2, msgs2, _, _ = load(conversation_id)
    assert c2.questions_completed == 9
    assert len(msgs2) == len(msgs)

    report = client.get(f"/conversations/{conversation_id}/report", headers=headers).json()
    assert report["status"] == "COMPLETE"
    assert report["totalScore"] == 10
    assert report["severity"]["level"] == "moderate"

def test_crisis_message_pivots_without_model_call(client, headers, conversation_id, fake_llm):
    r = send(client, headers, conversation_id, "I want to kill myself")
    assert r.status_code == 200
    body = r.json()
    assert body["showSafetyPivot"] is True
    assert body["message"]["riskLevel"] == "critical"
    assert [res["name"] for res in body["crisisResources"]] == [
        "988 Suicide & Crisis Lifeline", "Crisis Text Line", "Emergency Services",
    ]
    assert body["pivot"]["pivotType"] == "full_screen"
    assert fake_llm.calls == []

    c, msgs, responses, events = load(conversation_id)
    assert c.status == ConversationStatus.CRISIS_PAUSED
    assert responses == []
    assert len(events) == 1
    assert events[0].risk_level == RiskLevel.CRITICAL
    assert events[0].detection_method == DetectionMethod.KEYWORD
    assert events[0].safety_pivot_shown is True
    assert "kill myself" in events[0].matched_keywords
    assert msgs[1].risk_level == RiskLevel.CRITICAL
    assert msgs[2].sender.value == "ai"

def test_paused_conversation_rejects_messages(client, headers, conversation_id):
    send(client, headers, conversation_id, "I want to kill myself")
    r = send(client, headers, conversation_id, "Several days")
    assert r.status_code == 409
    assert r.json()["detail"].startswith("Conversation is")

def test_safe_response_resumes(client, headers, conversation_id):
    send(client, headers, conversation_id, "I want to kill myself")
    r = client.post(f"/conversations/{conversation_id}/safety_response", headers=headers, json={"response": "safe"})
    assert r.status_code == 200
    assert r.json()["action"] == "continue"
    assert r.json()["conversationStatus"] == "active"

    r = send(client, headers, conversation_id, "Several days")
    assert r.status_code == 200
    assert r.json()["conversation"]["questionsCompleted"] == 1
    _, _, _, events = load(conversation_id)
    assert events[0].resolved_by == "pivot_safe_response"
    assert events[0].user_response == "safe"

def test_need_help_keeps_conversation_paused(client, headers, conversation_id):
    send(client, headers, conversation_id, "I want to kill myself")
    r = client.post(f"/conversations/{conversation_id}/safety_response", headers=headers, json={"response": "need_help"})
    body = r.json()
    assert body["action"] == "show_resources"
    assert body["conversationStatus"] == "crisis_paused"
    assert len(body["resources"]) == 3
    assert send(client, headers, conversation_id, "Several days").status_code == 409
    _, _, _, events = load(conversation_id)
    assert events[0].context["needs_follow_up"] is True
    assert events[0].resolved_at is None

def test_exit_response_abandons(client, headers, conversation_id):
    send(client, headers, conversation_id, "I want to kill myself")
    r = client.post(f"/conversations/{conversation_id}/safety_response", headers=headers, json={"response": "exit"})
    assert r.json()["conversationStatus"] == "abandoned"
    assert send(client, headers, conversation_id, "Several days").status_code == 409
    c, _, _, _ = load(conversation_id)
    assert c.status == ConversationStatus.ABANDONED

def test_unknown_safety_response_changes_nothing(client, headers, conversation_id):
    send(client, headers, conversation_id, "I want to kill myself")
    r = client.post(f"/conversations/{conversation_id}/safety_response", headers=headers, json={"response": "whatever"})
    assert r.status_code == 422
    c, _, _, events = load(conversation_id)
    assert c.status == ConversationStatus.CRISIS_PAUSED
    assert events[0].user_response is None

def test_safety_response_without_crisis(client, headers, conversation_id):
    r = client.post(f"/conversations/{conversation_id}/safety_response", headers=headers, json={"response": "safe"})
    assert r.status_code == 404

def test_medium_risk_logs_event_without_pivot(client, headers, conversation_id, fake_llm):
    r = send(client, headers, conversation_id, "I feel hopeless")
    body = r.json()
    assert body["showSafetyPivot"] is False
    assert body["message"]["riskLevel"] == "medium"
    c, _, _, events = load(conversation_id)
    assert c.status == ConversationStatus.ACTIVE
    assert [e.risk_level for e in events] == [RiskLevel.MEDIUM]
    question_context = [c for c in fake_llm.calls if c["kind"] == "chat"][-1]["messages"][-1]["content"]
    assert "## Risk Note" in question_context
    assert "Respond with increased empathy" in question_context

def test_model_failure_keeps_user_message(client, headers, conversation_id, fake_llm):
    fake_llm.fail = True
    r = send(client, headers, conversation_id, "Several days")
    assert r.status_code == 503
    assert r.json()["detail"] == "Failed to process message. Please try again."
    c, msgs, responses, _ = load(conversation_id)
    assert [m.sender.value for m in msgs] == ["ai", "user"]
    assert responses == []
    assert c.status == ConversationStatus.ACTIVE

def test_stream_emits_start_chunks_complete(client, headers, conversation_id, fake_llm):
    r = client.get(f"/conversations/{conversation_id}/stream", headers=headers, params={"content": "Several days"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(r.text)
    names = [name for name, _ in events]
    assert names[0] == "start"
    assert names[-1] == "complete"
    assert set(names[1:-1]) == {"chunk"}
    text = "".join(data["content"] for name, data in events if name == "chunk")
    assert text.strip() == fake_llm.reply
    complete = events[-1][1]
    assert complete["questionsCompleted"] == 1
    assert complete["showSafetyPivot"] is False

    _, msgs, _, _ = load(conversation_id)
    assert msgs[-1].id == complete["messageId"]
    assert msgs[-1].content == fake_llm.reply

def test_stream_reports_model_failure_as_error_event(client, headers, conversation_id, fake_llm):
    fake_llm.fail = True
    r = client.get(f"/conversations/{conversation_id}/stream", headers=headers, params={"content": "Several days"})
    events = parse_sse(r.text)
    assert [name for name, _ in events] == ["start", "error"]
    assert events[-1][1]["message"] == "Failed to process message. Please try again."
    _, msgs, _, _ = load(conversation_id)
    assert [m.sender.value for m in msgs] == ["ai", "user"]

def test_stream_crisis_sets_pivot_flag(client, headers, conversation_id):
    r = client.get(f"/conversations/{conversation_id}/stream", headers=headers, params={"content": "I want to kill myself"})
    events = parse_sse(r.text)
    assert events[-1][0] == "complete"
    assert events[-1][1]["showSafetyPivot"] is True
    assert events[-1][1]["riskLevel"] == "critical"

def test_stream_validates_before_opening(client, headers, conversation_id):
    r = client.get(f"/conversations/{conversation_id}/stream", headers=headers, params={"content": ""})
    assert r.status_code == 422
    send(client, headers, conversation_id, "I want to kill myself")
    r = client.get(f"/conversations/{conversation_id}/stream", headers=headers, params={"content": "Several days"})
    assert r.status_code == 409

def test_detail_lists_transcript_in_order(client, headers, conversation_id):
    send(client, headers, conversation_id, "Several days")
    body = client.get(f"/conversations/{conversation_id}", headers=headers).json()
    assert [m["sequenceNumber"] for m in body["messages"]] == [1, 2, 3]
    assert [m["sender"] for m in body["messages"]] == ["ai", "user", "ai"]

def test_discard_is_soft(client, headers, conversation_id, assessment):
    r = client.delete(f"/conversations/{conversation_id}", headers=headers)
    assert r.status_code == 200
    assert client.get(f"/conversations/{conversation_id}", headers=headers).status_code == 404
    c, msgs, _, _ = load(conversation_id)
    assert c is not None and c.discarded_at is not None
    assert len(msgs) == 1
    r = client.post("/conversations", headers=headers, json={"assessmentId": assessment.id})
    assert r.status_code == 201

def test_scripted_replies_without_model_key(client, headers, conversation_id, fake_llm):
    fake_llm.configured = False
    r = send(client, headers, conversation_id, "not at all")
    body = r.json()
    assert body["conversation"]["questionsCompleted"] == 1
    assert "Little interest" not in body["message"]["content"]
    assert "Feeling down, depressed, or hopeless" in body["message"]["content"]
    assert fake_llm.calls == []
