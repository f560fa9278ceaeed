"""
Session lifecycle: countdown math, tagged state transitions, start-or-resume,
the submission algorithm and the per-tab ExamAttempt driver.
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from examhost.errors import (
    AnswerValidationError,
    ExamNotStartedError,
    InvalidTransitionError,
    SessionClosedError,
)
from examhost.models import QuestionType, SessionStatus
from examhost.services.session_lifecycle import (
    TIME_UP_MESSAGE,
    Absent,
    AnswerInput,
    AttemptView,
    ExamAttempt,
    Started,
    Submitted,
    TimedOut,
    UploadedFile,
    begin,
    deadline,
    finish,
    format_time,
    is_terminal,
    remaining_seconds,
    start_or_resume,
    state_from_record,
    status_of,
    submit_session,
)
from conftest import T0


def _questions_by_type(repo, exam):
    return {q.type: q for q in repo.list_questions(exam.id)}


# =============================================================================
# Countdown
# =============================================================================

def test_remaining_seconds_counts_down_from_join_time():
    assert remaining_seconds(T0, 60, T0) == 3600
    assert remaining_seconds(T0, 60, T0 + timedelta(minutes=59, seconds=59, milliseconds=400)) == 0
    assert remaining_seconds(T0, 60, T0 + timedelta(minutes=10, milliseconds=999)) == 2999
    assert remaining_seconds(T0, 60, T0 + timedelta(minutes=61)) == 0


def test_remaining_seconds_is_a_pure_function():
    now = T0 + timedelta(minutes=17, seconds=3)
    assert remaining_seconds(T0, 45, now) == remaining_seconds(T0, 45, now) == 45 * 60 - (17 * 60 + 3)


def test_remaining_seconds_accepts_naive_utc_join_time():
    naive = T0.replace(tzinfo=None)
    assert remaining_seconds(naive, 30, T0 + timedelta(minutes=10)) == 20 * 60


def test_deadline_is_join_time_plus_duration():
    assert deadline(T0, 90) == T0 + timedelta(minutes=90)


@pytest.mark.parametrize("seconds, expected", [
    (None, "00:00:00"),
    (0, "00:00:00"),
    (59, "00:00:59"),
    (3600 + 61, "01:01:01"),
    (-5, "00:00:00"),
])
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected


# =============================================================================
# Tagged state
# =============================================================================

def test_begin_only_from_absent():
    state = begin(Absent(), 7, T0)
    assert state == Started(session_id=7, join_time=T0)
    with pytest.raises(InvalidTransitionError):
        begin(state, 7, T0)


def test_finish_picks_status_from_remaining_time():
    started = Started(session_id=3, join_time=T0)
    assert finish(started, 12) == Submitted(session_id=3)
    assert finish(started, 0) == TimedOut(session_id=3)


@pytest.mark.parametrize("state", [Absent(), Submitted(session_id=1), TimedOut(session_id=1)])
def test_finish_rejects_non_started_states(state):
    with pytest.raises(InvalidTransitionError):
        finish(state, 100)


def test_terminal_states_and_statuses():
    assert not is_terminal(Absent())
    assert not is_terminal(Started(session_id=1, join_time=T0))
    assert is_terminal(Submitted(session_id=1))
    assert is_terminal(TimedOut(session_id=1))
    assert status_of(Absent()) is None
    assert status_of(TimedOut(session_id=1)) == SessionStatus.TIMED_OUT
    assert state_from_record(None) == Absent()


# =============================================================================
# Start or resume
# =============================================================================

def test_start_or_resume_is_idempotent(repo, make_exam, clock):
    exam = make_exam()
    first, created = start_or_resume(repo, exam, "student_a", clock())
    assert created
    assert first.status == SessionStatus.STARTED

    clock.advance(minutes=25)
    second, created_again = start_or_resume(repo, exam, "student_a", clock())
    assert not created_again
    assert second.id == first.id
    assert state_from_record(second) == Started(session_id=first.id, join_time=T0)


def test_sessions_are_per_student(repo, make_exam, clock):
    exam = make_exam()
    a, _ = start_or_resume(repo, exam, "student_a", clock())
    b, _ = start_or_resume(repo, exam, "student_b", clock())
    assert a.id != b.id


def test_start_rejected_before_exam_start_time(repo, make_exam, clock):
    exam = make_exam(start_time=(T0 + timedelta(hours=1)).isoformat())
    with pytest.raises(ExamNotStartedError):
        start_or_resume(repo, exam, "student_a", clock())
    assert repo.get_session(exam.id, "student_a") is None

    clock.advance(hours=1)
    session, created = start_or_resume(repo, exam, "student_a", clock())
    assert created
    assert state_from_record(session).join_time == T0 + timedelta(hours=1)


def test_resume_does_not_reopen_a_terminal_session(repo, storage, make_exam, clock):
    exam = make_exam()
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    submit_session(repo, storage, exam, session, [], clock())

    resumed, created = start_or_resume(repo, exam, "student_a", clock())
    assert not created
    assert resumed.status == SessionStatus.SUBMITTED


# =============================================================================
# Submission
# =============================================================================

def test_submit_persists_answers_and_marks_submitted(repo, storage, make_exam, clock):
    exam = make_exam()
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    clock.advance(minutes=20)

    outcome = submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=qs[QuestionType.MULTIPLE_CHOICE].id, selected_option_index=0),
        AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="It flows through Paris."),
        AnswerInput(
            question_id=qs[QuestionType.FILE_UPLOAD].id,
            file=UploadedFile(filename="map.png", content=b"\x89PNG", content_type="image/png"),
        ),
    ], clock())

    assert outcome.status == SessionStatus.SUBMITTED
    assert outcome.status_recorded
    assert outcome.remaining_seconds == 40 * 60
    assert outcome.answers_saved == 3
    assert outcome.files_uploaded == 1
    assert outcome.warnings == []
    assert repo.get_session_by_id(session.id).status == SessionStatus.SUBMITTED

    rows = {row.question_id: row for row in repo.list_submissions(session.id)}
    assert rows[qs[QuestionType.MULTIPLE_CHOICE].id].selected_option_index == 0
    assert rows[qs[QuestionType.TEXT].id].answer_text == "It flows through Paris."
    file_row = rows[qs[QuestionType.FILE_UPLOAD].id]
    expected_path = f"student_a/{exam.id}/{qs[QuestionType.FILE_UPLOAD].id}/map.png"
    assert file_row.answer_file_url == f"http://testserver/uploads/{expected_path}"
    assert file_row.answer_file_filename == "map.png"
    with open(storage._resolve(expected_path), "rb") as f:
        assert f.read() == b"\x89PNG"


def test_submit_after_deadline_records_timed_out(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=60)
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    clock.advance(minutes=61)

    outcome = submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="late"),
    ], clock())

    assert outcome.remaining_seconds == 0
    assert outcome.status == SessionStatus.TIMED_OUT
    assert repo.get_session_by_id(session.id).status == SessionStatus.TIMED_OUT


def test_failed_upload_does_not_block_the_rest(repo, storage, make_exam, clock):
    exam = make_exam(questions=[
        {"question_text": "Upload your essay", "type": "file_upload"},
        {"question_text": "Upload your drawing", "type": "file_upload"},
        {"question_text": "Any comments?", "type": "text"},
    ])
    essay, drawing, comments = repo.list_questions(exam.id)
    session, _ = start_or_resume(repo, exam, "student_a", clock())

    outcome = submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=essay.id, file=UploadedFile(filename="fail_essay.pdf", content=b"x")),
        AnswerInput(question_id=drawing.id, file=UploadedFile(filename="drawing.png", content=b"y")),
        AnswerInput(question_id=comments.id, answer_text="none"),
    ], clock())

    assert outcome.status == SessionStatus.SUBMITTED
    assert outcome.files_uploaded == 1
    assert len(outcome.warnings) == 1
    assert f"question {essay.id}" in outcome.warnings[0]

    rows = {row.question_id: row for row in repo.list_submissions(session.id)}
    assert rows[essay.id].answer_file_url is None
    assert rows[drawing.id].answer_file_filename == "drawing.png"
    assert rows[comments.id].answer_text == "none"


def test_terminal_session_accepts_no_further_answers(repo, storage, make_exam, clock):
    exam = make_exam()
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="first"),
    ], clock())

    with pytest.raises(SessionClosedError) as excinfo:
        submit_session(repo, storage, exam, session, [
            AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="second"),
        ], clock())
    assert excinfo.value.status_code == 409

    rows = repo.list_submissions(session.id)
    assert [row.answer_text for row in rows] == ["first"]


def test_submit_with_no_answers_still_closes_session(repo, storage, make_exam, clock):
    exam = make_exam()
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    outcome = submit_session(repo, storage, exam, session, [], clock())
    assert outcome.answers_saved == 0
    assert repo.get_session_by_id(session.id).status == SessionStatus.SUBMITTED


@pytest.mark.parametrize("bad_answer", [
    lambda qs: AnswerInput(question_id=999999, answer_text="?"),
    lambda qs: AnswerInput(question_id=qs[QuestionType.MULTIPLE_CHOICE].id, selected_option_index=3),
    lambda qs: AnswerInput(question_id=qs[QuestionType.MULTIPLE_CHOICE].id),
    lambda qs: AnswerInput(question_id=qs[QuestionType.FILE_UPLOAD].id, answer_text="no file"),
    lambda qs: AnswerInput(question_id=qs[QuestionType.TEXT].id, selected_option_index=0),
])
def test_invalid_answers_are_rejected_before_any_write(repo, storage, make_exam, clock, bad_answer):
    exam = make_exam()
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())

    with pytest.raises(AnswerValidationError):
        submit_session(repo, storage, exam, session, [bad_answer(qs)], clock())

    assert repo.list_submissions(session.id) == []
    assert repo.get_session_by_id(session.id).status == SessionStatus.STARTED


# =============================================================================
# ExamAttempt
# =============================================================================

def _attempt(repo, storage, clock, exam, student="student_a"):
    return ExamAttempt(repo, storage, exam.exam_code.lower(), student, clock=clock)


def test_attempt_load_starts_countdown(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=30)
    attempt = _attempt(repo, storage, clock, exam)

    assert attempt.load() is AttemptView.TAKING
    assert isinstance(attempt.state, Started)
    assert attempt.remaining == 30 * 60
    assert [q.sort_order for q in attempt.questions] == [1, 2, 3]
    assert attempt.current_question.type == QuestionType.MULTIPLE_CHOICE


def test_reloading_does_not_extend_time(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=30)
    _attempt(repo, storage, clock, exam).load()

    clock.advance(minutes=12)
    reloaded = _attempt(repo, storage, clock, exam)
    reloaded.load()
    assert reloaded.remaining == 18 * 60
    assert reloaded.state.join_time == T0


def test_attempt_load_errors(repo, storage, make_exam, clock):
    missing = ExamAttempt(repo, storage, "NOPE00", "student_a", clock=clock)
    assert missing.load() is AttemptView.ERROR
    assert "not found" in missing.error
    assert missing.back_url == "/"

    exam = make_exam(start_time=(T0 + timedelta(days=1)).isoformat())
    early = _attempt(repo, storage, clock, exam)
    assert early.load() is AttemptView.ERROR
    assert "scheduled to start" in early.error
    assert repo.get_session(exam.id, "student_a") is None


def test_navigation_and_answer_buffering(repo, storage, make_exam, clock):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    mc, text, upload = attempt.questions

    attempt.previous_question()
    assert attempt.current_index == 0
    attempt.next_question()
    attempt.next_question()
    attempt.next_question()
    assert attempt.current_index == 2
    assert attempt.is_last_question

    attempt.answer(mc.id, "0")
    attempt.answer(text.id, "draft")
    attempt.answer(text.id, "final")
    attempt.answer(upload.id, UploadedFile(filename="map.png", content=b"img"))
    assert attempt.answers[mc.id].selected_option_index == 0
    assert attempt.answers[text.id].answer_text == "final"
    assert attempt.answers[upload.id].file.filename == "map.png"

    with pytest.raises(AnswerValidationError):
        attempt.answer(upload.id, "not a file")
    with pytest.raises(AnswerValidationError):
        attempt.answer(424242, "x")

    # Nothing is persisted before submission.
    assert repo.list_submissions(attempt.state.session_id) == []


def test_manual_submit_finishes_attempt(repo, storage, make_exam, clock):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    mc = attempt.questions[0]
    attempt.answer(mc.id, 0)
    clock.advance(minutes=5)

    outcome = attempt.submit()
    assert outcome.status == SessionStatus.SUBMITTED
    assert attempt.view is AttemptView.FINISHED
    assert attempt.state == Submitted(session_id=outcome.session_id)
    assert attempt.finished_message == "Exam submitted successfully!"
    assert attempt.remaining == 0

    rows = repo.list_submissions(outcome.session_id)
    assert [(r.question_id, r.selected_option_index) for r in rows] == [(mc.id, 0)]

    with pytest.raises(InvalidTransitionError):
        attempt.answer(mc.id, 1)


def test_expiry_auto_submits_as_timed_out(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=60)
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    attempt.answer(attempt.questions[1].id, "partial answer")

    clock.advance(minutes=30)
    assert attempt.tick() == 30 * 60
    assert attempt.view is AttemptView.TAKING

    clock.advance(minutes=31)
    assert attempt.tick() == 0
    assert attempt.view is AttemptView.FINISHED
    assert isinstance(attempt.state, TimedOut)
    assert attempt.finished_message == TIME_UP_MESSAGE
    assert repo.get_session_by_id(attempt.state.session_id).status == SessionStatus.TIMED_OUT


def test_manual_submit_and_expiry_race_submit_once(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=10)
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    attempt.answer(attempt.questions[1].id, "answer")

    clock.advance(minutes=10)
    first = attempt.submit()
    second = attempt.tick()
    third = attempt.submit()

    assert first is not None
    assert first.status == SessionStatus.TIMED_OUT
    assert second == 0
    assert third is None
    assert len(repo.list_submissions(first.session_id)) == 1


def test_second_tab_cannot_submit_twice(repo, storage, make_exam, clock):
    exam = make_exam()
    tab_one = _attempt(repo, storage, clock, exam)
    tab_two = _attempt(repo, storage, clock, exam)
    tab_one.load()
    tab_two.load()
    text_q = tab_one.questions[1]
    tab_one.answer(text_q.id, "from tab one")
    tab_two.answer(text_q.id, "from tab two")

    assert tab_one.submit() is not None
    assert tab_two.submit() is None
    assert tab_two.view is AttemptView.FINISHED
    assert "already submitted" in tab_two.finished_message

    rows = repo.list_submissions(tab_one.state.session_id)
    assert [r.answer_text for r in rows] == ["from tab one"]


def test_loading_a_finished_session_short_circuits(repo, storage, make_exam, clock):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    attempt.submit()

    class NoQuestionReads:
        def __init__(self, inner):
            self.inner = inner

        def __getattr__(self, name):
            if name == "list_questions":
                raise AssertionError("questions must not be read for a finished session")
            return getattr(self.inner, name)

    again = ExamAttempt(NoQuestionReads(repo), storage, exam.exam_code, "student_a", clock=clock)
    assert again.load() is AttemptView.FINISHED
    assert again.finished_message == "You have already submitted this exam."
    assert again.submit() is None


def test_upload_failure_is_a_warning_not_an_error(repo, storage, make_exam, clock):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    upload = attempt.questions[2]
    attempt.answer(upload.id, UploadedFile(filename="fail.png", content=b"img"))

    outcome = attempt.submit()
    assert outcome is not None
    assert attempt.view is AttemptView.FINISHED
    assert len(attempt.warnings) == 1


async def test_run_countdown_stops_after_auto_submit(repo, storage, make_exam, clock):
    exam = make_exam(duration_minutes=1)
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()

    ticks = []
    original_tick = attempt.tick

    def tick():
        clock.advance(seconds=20)
        ticks.append(original_tick())
        return ticks[-1]

    attempt.tick = tick
    await attempt.run_countdown(interval=0)

    assert ticks == [40, 20, 0]
    assert attempt.view is AttemptView.FINISHED
    assert isinstance(attempt.state, TimedOut)


# =============================================================================
# Partial failures
# =============================================================================

def _fail_with(name):
    def _raise(*args, **kwargs):
        raise OperationalError(name, {}, Exception("database is locked"))
    return _raise


def test_failed_status_update_keeps_answers(repo, storage, make_exam, clock, monkeypatch):
    exam = make_exam()
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())
    monkeypatch.setattr(repo, "mark_session_terminal", _fail_with("UPDATE student_exam_sessions"))

    outcome = submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="kept"),
    ], clock())

    assert outcome.status_recorded is False
    assert outcome.status == SessionStatus.SUBMITTED
    assert [r.answer_text for r in repo.list_submissions(session.id)] == ["kept"]
    assert repo.get_session_status(session.id) == SessionStatus.STARTED


def test_retry_after_failed_status_update_closes_session(repo, storage, make_exam, clock, monkeypatch):
    exam = make_exam()
    qs = _questions_by_type(repo, exam)
    text_id = qs[QuestionType.TEXT].id
    mc_id = qs[QuestionType.MULTIPLE_CHOICE].id
    session, _ = start_or_resume(repo, exam, "student_a", clock())

    monkeypatch.setattr(repo, "mark_session_terminal", _fail_with("UPDATE student_exam_sessions"))
    submit_session(repo, storage, exam, session, [AnswerInput(question_id=text_id, answer_text="first")], clock())
    monkeypatch.undo()

    with pytest.raises(SessionClosedError) as excinfo:
        submit_session(repo, storage, exam, session, [AnswerInput(question_id=text_id, answer_text="again")], clock())
    assert excinfo.value.status_value == "submitted"
    assert repo.get_session_status(session.id) == SessionStatus.SUBMITTED

    # A retry with other questions adds nothing to the saved attempt.
    with pytest.raises(SessionClosedError):
        submit_session(repo, storage, exam, session, [
            AnswerInput(question_id=mc_id, selected_option_index=1),
        ], clock())
    assert [r.answer_text for r in repo.list_submissions(session.id)] == ["first"]


def test_late_retry_after_failed_status_update_records_timed_out(repo, storage, make_exam, clock, monkeypatch):
    exam = make_exam(duration_minutes=30)
    qs = _questions_by_type(repo, exam)
    session, _ = start_or_resume(repo, exam, "student_a", clock())

    clock.advance(minutes=30)
    monkeypatch.setattr(repo, "mark_session_terminal", _fail_with("UPDATE student_exam_sessions"))
    submit_session(repo, storage, exam, session, [
        AnswerInput(question_id=qs[QuestionType.TEXT].id, answer_text="late"),
    ], clock())
    monkeypatch.undo()

    with pytest.raises(SessionClosedError) as excinfo:
        submit_session(repo, storage, exam, session, [], clock())
    assert excinfo.value.status_value == "timed_out"
    assert "timed out" in excinfo.value.message
    assert repo.get_session_status(session.id) == SessionStatus.TIMED_OUT


def test_attempt_finishes_when_status_update_fails(repo, storage, make_exam, clock, monkeypatch):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    text_q = attempt.questions[1]
    attempt.answer(text_q.id, "saved anyway")
    monkeypatch.setattr(repo, "mark_session_terminal", _fail_with("UPDATE student_exam_sessions"))

    outcome = attempt.submit()

    assert outcome is not None
    assert outcome.status_recorded is False
    assert attempt.view is AttemptView.FINISHED
    assert isinstance(attempt.state, Submitted)
    assert [r.answer_text for r in repo.list_submissions(outcome.session_id)] == ["saved anyway"]


def test_attempt_shows_error_when_answers_cannot_be_saved(repo, storage, make_exam, clock, monkeypatch):
    exam = make_exam()
    attempt = _attempt(repo, storage, clock, exam)
    attempt.load()
    session_id = attempt.state.session_id
    attempt.answer(attempt.questions[1].id, "lost")
    monkeypatch.setattr(repo, "insert_submissions", _fail_with("INSERT INTO submissions"))

    assert attempt.submit() is None
    assert attempt.view is AttemptView.ERROR
    assert attempt.error == "Failed to save some answers. Please try again or contact support."
    assert attempt.back_url == "/"
    assert isinstance(attempt.state, Started)

    monkeypatch.undo()
    assert repo.list_submissions(session_id) == []
    assert repo.get_session_status(session_id) == SessionStatus.STARTED
