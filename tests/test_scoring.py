from decimal import Decimal

import pytest
from sqlmodel import select

from conftest import add_exam, add_mcq, add_sql_question, link
from exam_portal.errors import DuplicateResult
from exam_portal.models import Exam, ExamResult, Question, QuestionType, StudentAnswer
from exam_portal.services.answer_store import save_answer
from exam_portal.services.attempts import finalize_attempt, start_attempt
from exam_portal.services.scoring import (
    NOT_ANSWERED,
    build_breakdown,
    compute_percentage,
    grade_answer,
    score_attempt,
    sql_answer_matches,
)

SCHEMA = "CREATE TABLE T(x INT); INSERT INTO T VALUES (2),(1);"
REFERENCE = "SELECT x FROM T ORDER BY x"


def test_weighted_mcq_scenario(session, mcq_exam, student, sandbox):
    attempt, _, _ = start_attempt(session, mcq_exam.exam.id, student.id)
    q1 = mcq_exam.questions[0]
    save_answer(session, attempt.id, student.id, exam_question_id=mcq_exam.exam_questions[0].id,
                selected_option_id=mcq_exam.correct_options[q1.id].id)

    _, result = finalize_attempt(session, attempt.id, student.id, sandbox)

    assert result.total_score == Decimal("2")
    assert result.max_score == Decimal("5")
    assert result.percentage == Decimal("40")
    assert result.correct_answers == 1
    assert result.total_questions == 2
    assert result.is_passed is False


def test_max_score_ignores_what_was_answered(session, mcq_exam, student, other_student, sandbox):
    idle, _, _ = start_attempt(session, mcq_exam.exam.id, student.id)
    busy, _, _ = start_attempt(session, mcq_exam.exam.id, other_student.id)
    for eq, q in zip(mcq_exam.exam_questions, mcq_exam.questions):
        save_answer(session, busy.id, other_student.id, exam_question_id=eq.id,
                    selected_option_id=mcq_exam.correct_options[q.id].id)

    _, idle_result = finalize_attempt(session, idle.id, student.id, sandbox)
    _, busy_result = finalize_attempt(session, busy.id, other_student.id, sandbox)

    assert idle_result.max_score == busy_result.max_score == Decimal("5")
    assert idle_result.total_score == 0 and idle_result.percentage == 0
    assert busy_result.total_score == Decimal("5") and busy_result.percentage == Decimal("100")
    assert busy_result.is_passed is True
    for result in (idle_result, busy_result):
        assert 0 <= result.total_score <= result.max_score
        assert 0 <= result.percentage <= 100


def test_exam_weightage_overrides_question_default(session, student, sandbox):
    exam = add_exam(session)
    question, correct, _ = add_mcq(session, "Only", weightage="1.00")
    eq = link(session, exam, question, 1, "4.50")
    attempt, _, _ = start_attempt(session, exam.id, student.id)
    save_answer(session, attempt.id, student.id, exam_question_id=eq.id, selected_option_id=correct.id)

    _, result = finalize_attempt(session, attempt.id, student.id, sandbox)
    assert result.total_score == Decimal("4.5")
    assert result.max_score == Decimal("4.5")


def test_percentage_of_empty_exam_is_zero():
    assert compute_percentage(Decimal("0"), Decimal("0")) == Decimal("0.00")
    assert compute_percentage(Decimal("1"), Decimal("3")) == Decimal("33.33")
    assert compute_percentage(Decimal("2"), Decimal("3")) == Decimal("66.67")



def test_pass_decided_before_rounding(session, student, sandbox):
    exam = add_exam(session)
    q1, c1, _ = add_mcq(session, "Heavy")
    q2, _, _ = add_mcq(session, "Heavier")
    eq1 = link(session, exam, q1, 1, "99.99")
    link(session, exam, q2, 2, "100.01")
    attempt, _, _ = start_attempt(session, exam.id, student.id)
    save_answer(session, attempt.id, student.id, exam_question_id=eq1.id, selected_option_id=c1.id)

    _, result = finalize_attempt(session, attempt.id, student.id, sandbox)

    # 49.995% is stored as 50.00 but is still below the 50% pass mark
    assert result.percentage == Decimal("50.00")
    assert result.is_passed is False


def test_second_result_for_an_attempt_is_a_duplicate(session, mcq_exam, student, sandbox):
    attempt, _, _ = start_attempt(session, mcq_exam.exam.id, student.id)
    _, stored = finalize_attempt(session, attempt.id, student.id, sandbox)

    with pytest.raises(DuplicateResult):
        score_attempt(session, attempt, session.get(Exam, attempt.exam_id), sandbox)
    session.rollback()

    results = session.exec(select(ExamResult).where(ExamResult.attempt_id == attempt.id)).all()
    assert [r.id for r in results] == [stored.id]

@pytest.mark.parametrize(
    "answer_text, expected",
    [
        ("SELECT x FROM T ORDER BY x", True),
        ("select x from T order by x;", True),
        ("SELECT x FROM T", False),
        ("SELECT x AS y FROM T ORDER BY x", False),
        ("SELECT x FROM missing", False),
        ("DELETE FROM T", False),
        ("SELECT * FROM users", False),
    ],
)
def test_sql_grading_is_order_sensitive_and_never_raises(sandbox, answer_text, expected):
    question = Question(
        id=1,
        question_text="q",
        question_type=QuestionType.SQL.value,
        database_schema=SCHEMA,
        reference_solution=REFERENCE,
    )
    assert sql_answer_matches(sandbox, question, answer_text) is expected


def test_sql_grading_is_deterministic(sandbox):
    question = Question(
        id=1,
        question_text="q",
        question_type=QuestionType.SQL.value,
        database_schema=SCHEMA,
        reference_solution=REFERENCE,
    )
    verdicts = {sql_answer_matches(sandbox, question, "SELECT x FROM T ORDER BY x") for _ in range(3)}
    assert verdicts == {True}


def test_broken_reference_solution_grades_incorrect(sandbox):
    question = Question(
        id=1,
        question_text="q",
        question_type=QuestionType.SQL.value,
        database_schema=SCHEMA,
        reference_solution="SELECT nothing FROM T",
    )
    assert sql_answer_matches(sandbox, question, "SELECT x FROM T") is False


def test_manual_types_grade_as_incorrect(session, sandbox):
    question = Question(id=1, question_text="Explain", question_type=QuestionType.STATEMENT.value)
    outcome = grade_answer(session, question, StudentAnswer(attempt_id=1, exam_question_id=1, answer_text="because"), sandbox)
    assert outcome.is_correct is False
    assert outcome.display_answer == "because"


def test_sql_attempt_and_breakdown(session, student, sandbox):
    exam = add_exam(session)
    sql_question = add_sql_question(session, SCHEMA, REFERENCE, weightage="5.00")
    mcq_question, _, _ = add_mcq(session, "Pick one", weightage="1.00")
    eq_sql = link(session, exam, sql_question, 2, "5.00")
    eq_mcq = link(session, exam, mcq_question, 1, "1.00")

    attempt, _, _ = start_attempt(session, exam.id, student.id)
    save_answer(session, attempt.id, student.id, exam_question_id=eq_sql.id, answer_text=REFERENCE)
    save_answer(session, attempt.id, student.id, exam_question_id=eq_mcq.id)

    finalized, result = finalize_attempt(session, attempt.id, student.id, sandbox)
    assert result.total_score == Decimal("5")
    assert result.max_score == Decimal("6")
    assert result.percentage == Decimal("83.33")
    assert result.is_passed is True

    breakdown = build_breakdown(session, finalized, sandbox)
    assert [entry["exam_question_id"] for entry in breakdown] == [eq_mcq.id, eq_sql.id]
    mcq_entry, sql_entry = breakdown
    assert mcq_entry["selected_option"] == NOT_ANSWERED
    assert mcq_entry["is_correct"] is False and mcq_entry["score"] == 0.0
    assert sql_entry["selected_option"] == REFERENCE
    assert sql_entry["is_correct"] is True
    assert sql_entry["score"] == 5.0 and sql_entry["weightage"] == 5.0

    # Rebuilding gives the same detail
    assert build_breakdown(session, finalized, sandbox) == breakdown
