from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from classmark.ai.openai_grader import get_ai_grader
from classmark.main import app
from classmark.models import OutboxMail


def _exam_payload(**overrides) -> dict:
    payload = {
        "title": "Chemistry quiz",
        "course_id": "chem-1",
        "settings": {"auto_mark_mc": True, "auto_mark_yn": True, "ai_essay": True, "ai_math": False},
        "questions": [
            {"type": "mcq", "text": "Pick the metals", "marks": 2, "options": ["Fe", "O", "Cu"], "correct_options": [0, 2]},
            {"type": "yesno", "text": "Is water wet?", "marks": 1, "correct_answer": True},
            {"type": "math", "text": "3 times 3", "marks": 3, "solution": "3*3", "tolerance": 0.5},
            {"type": "essay", "text": "Explain bonding", "marks": 5, "rubric": "Clarity:1, Accuracy:3"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def client(isolated_db) -> TestClient:
    app.dependency_overrides[get_ai_grader] = lambda: None
    return TestClient(app)


def _released_exam(client: TestClient, **overrides) -> dict:
    created = client.post("/exams", json=_exam_payload(**overrides))
    assert created.status_code == 201
    detail = created.json()
    exam_id = detail["exam"]["id"]
    assert client.post(f"/exams/{exam_id}/release").status_code == 200
    return detail


def _answers(detail: dict) -> dict:
    ids = {q["type"]: str(q["id"]) for q in detail["questions"]}
    return {
        ids["mcq"]: {"type": "mcq", "value": [2, 0]},
        ids["yesno"]: True,
        ids["math"]: "8.7",
        ids["essay"]: "Electrons are shared or transferred.",
    }


def test_create_exam_computes_total_marks(client) -> None:
    detail = client.post("/exams", json=_exam_payload()).json()

    assert detail["exam"]["status"] == "draft"
    assert detail["exam"]["total_marks"] == 11
    assert [q["index"] for q in detail["questions"]] == [0, 1, 2, 3]
    assert client.get(f"/exams/{detail['exam']['id']}").json() == detail


def test_invalid_questions_are_rejected(client) -> None:
    bad_mcq = _exam_payload(questions=[{"type": "mcq", "marks": 1, "options": ["a"], "correct_options": [3]}])
    no_solution = _exam_payload(questions=[{"type": "math", "marks": 1}])
    no_key = _exam_payload(questions=[{"type": "mcq", "marks": 1, "options": ["a", "b"], "correct_options": []}])

    assert client.post("/exams", json=bad_mcq).status_code == 422
    assert client.post("/exams", json=no_solution).status_code == 422
    assert client.post("/exams", json=no_key).status_code == 422


def test_submit_grades_in_background_and_hides_scores_until_review(client, fake_ai) -> None:
    detail = _released_exam(client)
    essay_id = str(next(q["id"] for q in detail["questions"] if q["type"] == "essay"))
    grader = fake_ai(reply={essay_id: {"points": 3, "reason": "mostly right", "perCriterion": []}})
    app.dependency_overrides[get_ai_grader] = lambda: grader

    started = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1", "student_email": "s1@example.com"})
    assert started.status_code == 201
    attempt_id = started.json()["id"]
    assert started.json()["status"] == "in_progress"
    assert started.json()["can_edit"] is True

    saved = client.put(f"/attempts/{attempt_id}/answers", json={"answers": _answers(detail)})
    assert saved.status_code == 200
    assert saved.json()["answers"][essay_id]["value"].startswith("Electrons")

    submitted = client.post(f"/attempts/{attempt_id}/submit")
    assert submitted.status_code == 200
    assert len(grader.requests) == 1

    student = client.get(f"/attempts/{attempt_id}").json()
    assert student["status"] == "graded"
    assert student["result_status"] == "awaiting review"
    assert student["scores"] is None
    assert student["can_edit"] is False

    review = client.get(f"/attempts/{attempt_id}/review").json()
    assert review["scores"]["total"] == 9.0
    assert review["ai_report"]["per_question"][essay_id]["reason"] == "mostly right"
    assert review["ai_report"]["ai_meta"]["used"] is True
    assert review["warnings"] == []


def test_resubmitting_and_editing_after_submit_conflict(client) -> None:
    detail = _released_exam(client, settings={"ai_essay": False, "ai_math": False})
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]
    client.post(f"/attempts/{attempt_id}/submit")

    assert client.post(f"/attempts/{attempt_id}/submit").status_code == 409
    locked = client.put(f"/attempts/{attempt_id}/answers", json={"answers": {}})
    assert locked.status_code == 409
    assert "submitted" in locked.json()["detail"]


def test_unknown_question_ids_are_rejected(client) -> None:
    detail = _released_exam(client)
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]

    response = client.put(f"/attempts/{attempt_id}/answers", json={"answers": {"9999": "x"}})
    assert response.status_code == 400


def test_manual_marks_override_and_notify(client, fake_ai, isolated_db) -> None:
    detail = _released_exam(client)
    app.dependency_overrides[get_ai_grader] = lambda: fake_ai(error=RuntimeError("quota exceeded"))
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1", "student_email": "s1@example.com"}).json()["id"]
    client.put(f"/attempts/{attempt_id}/answers", json={"answers": _answers(detail)})
    client.post(f"/attempts/{attempt_id}/submit")

    review = client.get(f"/attempts/{attempt_id}/review").json()
    assert review["attempt"]["needs_manual"] is True
    assert "AI grading failed: quota exceeded" in review["warnings"]

    essay_id = str(next(q["id"] for q in detail["questions"] if q["type"] == "essay"))
    marked = client.put(f"/attempts/{attempt_id}/marks", json={"teacher_id": "t1", "marks": {essay_id: 99}})
    assert marked.status_code == 200
    body = marked.json()
    assert body["scores"] == {**{str(q["id"]): 0.0 for q in detail["questions"]}, essay_id: 5.0, "total": 5.0}
    assert body["attempt"]["teacher_override"] is True

    student = client.get(f"/attempts/{attempt_id}").json()
    assert student["result_status"] == "graded"
    assert student["scores"]["total"] == 5.0

    client.put(f"/attempts/{attempt_id}/marks", json={"teacher_id": "t1", "marks": {essay_id: 4}})
    with Session(isolated_db) as session:
        mails = session.exec(select(OutboxMail)).all()
    assert len(mails) == 1
    assert mails[0].to == "s1@example.com"
    assert "Chemistry quiz" in mails[0].subject


def test_manual_marks_reject_unknown_questions_and_unsubmitted_attempts(client) -> None:
    detail = _released_exam(client)
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]

    assert client.put(f"/attempts/{attempt_id}/marks", json={"teacher_id": "t1", "marks": {}}).status_code == 409

    client.post(f"/attempts/{attempt_id}/submit")
    assert client.put(f"/attempts/{attempt_id}/marks", json={"teacher_id": "t1", "marks": {"9999": 1}}).status_code == 400


def test_release_makes_automatic_scores_visible(client) -> None:
    detail = _released_exam(client, settings={"ai_essay": False, "ai_math": False})
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]
    client.put(f"/attempts/{attempt_id}/answers", json={"answers": _answers(detail)})
    client.post(f"/attempts/{attempt_id}/submit")

    released = client.post(f"/attempts/{attempt_id}/release", json={"teacher_id": "t1"})
    assert released.status_code == 200
    assert released.json()["attempt"]["scores_released"] is True

    student = client.get(f"/attempts/{attempt_id}").json()
    assert student["scores"]["total"] == 6.0


def test_regrade_clears_override(client) -> None:
    detail = _released_exam(client, settings={"ai_essay": False, "ai_math": False})
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]
    client.put(f"/attempts/{attempt_id}/answers", json={"answers": _answers(detail)})
    client.post(f"/attempts/{attempt_id}/submit")
    client.put(f"/attempts/{attempt_id}/marks", json={"teacher_id": "t1", "marks": {}})

    regraded = client.post(f"/attempts/{attempt_id}/regrade")
    assert regraded.status_code == 200
    assert regraded.json()["scores"]["total"] == 6.0

    summary = client.get(f"/exams/{detail['exam']['id']}/attempts").json()
    assert summary[0]["teacher_override"] is False
    assert summary[0]["total"] == 6.0


def test_regrade_of_unsubmitted_attempt_conflicts(client) -> None:
    detail = _released_exam(client)
    attempt_id = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"}).json()["id"]
    assert client.post(f"/attempts/{attempt_id}/regrade").status_code == 409


def test_starting_twice_returns_the_same_attempt(client) -> None:
    detail = _released_exam(client)
    url = f"/exams/{detail['exam']['id']}/attempts"

    first = client.post(url, json={"student_id": "s1"}).json()
    second = client.post(url, json={"student_id": "s1"}).json()
    assert first["id"] == second["id"]


def test_draft_and_closed_exams_cannot_be_started(client) -> None:
    draft = client.post("/exams", json=_exam_payload()).json()
    assert client.post(f"/exams/{draft['exam']['id']}/attempts", json={"student_id": "s1"}).status_code == 403

    closed = _released_exam(client)
    client.post(f"/exams/{closed['exam']['id']}/close")
    assert client.post(f"/exams/{closed['exam']['id']}/attempts", json={"student_id": "s1"}).status_code == 403


def test_window_not_yet_open(client) -> None:
    future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    detail = _released_exam(client, release_at=future)

    response = client.post(f"/exams/{detail['exam']['id']}/attempts", json={"student_id": "s1"})
    assert response.status_code == 403
    assert "window" in response.json()["detail"]


def test_coursework_gate(client) -> None:
    detail = _released_exam(client, require_coursework=True)
    url = f"/exams/{detail['exam']['id']}/attempts"

    assert client.post(url, json={"student_id": "s1"}).status_code == 403

    assert client.put("/coursework/chem-1/s1", json={"essay": "My lab report"}).status_code == 200
    assert client.post(url, json={"student_id": "s1"}).status_code == 403

    approved = client.post("/coursework/chem-1/s1/approve", json={"teacher_id": "t1", "feedback": "Good"})
    assert approved.json()["status"] == "approved"
    assert client.post(url, json={"student_id": "s1"}).status_code == 201

    assert client.put("/coursework/chem-1/s1", json={"essay": "again"}).status_code == 409


def test_coursework_reject_and_missing(client) -> None:
    client.put("/coursework/chem-1/s2", json={"essay": "Draft"})

    rejected = client.post("/coursework/chem-1/s2/reject", json={"teacher_id": "t1", "feedback": "Redo"})
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["feedback"] == "Redo"
    assert client.post("/coursework/chem-1/nobody/approve", json={"teacher_id": "t1"}).status_code == 404


def test_questions_are_frozen_once_attempts_exist(client) -> None:
    detail = _released_exam(client)
    exam_id = detail["exam"]["id"]
    new_questions = [{"type": "yesno", "marks": 2, "correct_answer": False}]

    replaced = client.put(f"/exams/{exam_id}/questions", json=new_questions)
    assert replaced.status_code == 200
    assert replaced.json()["exam"]["total_marks"] == 2

    client.post(f"/exams/{exam_id}/attempts", json={"student_id": "s1"})
    assert client.put(f"/exams/{exam_id}/questions", json=new_questions).status_code == 409


def test_submission_endpoint_grades_immediately(client) -> None:
    detail = _released_exam(client, settings={"ai_essay": False, "ai_math": False})
    exam_id = detail["exam"]["id"]

    created = client.post(f"/exams/{exam_id}/submissions", json={"student_id": "paper-7", "answers": _answers(detail)})
    assert created.status_code == 201
    attempt_id = created.json()["id"]

    review = client.get(f"/attempts/{attempt_id}/review").json()
    assert review["attempt"]["status"] == "graded"
    assert review["scores"]["total"] == 6.0
    assert review["ai_report"]["ai_meta"]["used"] is False

    again = client.post(f"/exams/{exam_id}/submissions", json={"student_id": "paper-7", "answers": {}})
    assert again.status_code == 409


def test_missing_rows_are_404(client) -> None:
    assert client.get("/exams/404").status_code == 404
    assert client.get("/attempts/404").status_code == 404
    assert client.post("/exams/404/release").status_code == 404


def test_submissions_respect_the_start_gate(client) -> None:
    draft = client.post("/exams", json=_exam_payload(settings={"ai_essay": False, "ai_math": False})).json()
    refused = client.post(f"/exams/{draft['exam']['id']}/submissions", json={"student_id": "p1", "answers": _answers(draft)})
    assert refused.status_code == 403
    assert "not released" in refused.json()["detail"]

    gated = _released_exam(client, require_coursework=True, settings={"ai_essay": False, "ai_math": False})
    url = f"/exams/{gated['exam']['id']}/submissions"
    refused = client.post(url, json={"student_id": "p1", "answers": _answers(gated)})
    assert refused.status_code == 403
    assert "coursework" in refused.json()["detail"]
    assert client.get(f"/exams/{gated['exam']['id']}/attempts").json() == []

    client.put("/coursework/chem-1/p1", json={"essay": "Lab report"})
    client.post("/coursework/chem-1/p1/approve", json={"teacher_id": "t1"})
    assert client.post(url, json={"student_id": "p1", "answers": _answers(gated)}).status_code == 201


def test_submissions_refused_after_exam_closes(client) -> None:
    detail = _released_exam(client, settings={"ai_essay": False, "ai_math": False})
    client.post(f"/exams/{detail['exam']['id']}/close")

    response = client.post(f"/exams/{detail['exam']['id']}/submissions", json={"student_id": "p1", "answers": {}})
    assert response.status_code == 403
