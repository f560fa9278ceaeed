"""
Exam Session Lifecycle.

States: Absent -> Started(join_time) -> Submitted | TimedOut (terminal).

- The deadline is fixed at ``join_time + duration_minutes`` and the countdown
  is always recomputed from ``join_time``, so reloading cannot extend time.
- Joining is "read if it exists, else insert": resuming never rewrites
  ``join_time`` or ``status``.
- Submission runs at most once per session. A terminal session never accepts
  further answer writes.
"""
import asyncio
import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from examhost.errors import (
    AnswerValidationError,
    ExamHostError,
    ExamNotFoundError,
    InvalidTransitionError,
    SessionClosedError,
    SessionNotFoundError,
    StorageError,
)
from examhost.models import Exam, Question, QuestionType, SessionStatus, StudentExamSession
from examhost.repository import ExamRepository
from examhost.services.clock import Clock, ensure_utc, utcnow
from examhost.services.join import check_exam_available
from examhost.storage import FileStorage, answer_file_path, safe_filename

logger = logging.getLogger(__name__)


# =============================================================================
# Tagged session state
# =============================================================================

@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Started:
    session_id: int
    join_time: datetime


@dataclass(frozen=True)
class Submitted:
    session_id: int


@dataclass(frozen=True)
class TimedOut:
    session_id: int


SessionState = Union[Absent, Started, Submitted, TimedOut]


def is_terminal(state: SessionState) -> bool:
    return isinstance(state, (Submitted, TimedOut))


def begin(state: SessionState, session_id: int, join_time: datetime) -> Started:
    """Absent -> Started."""
    if not isinstance(state, Absent):
        raise InvalidTransitionError(f"Cannot start a session from {type(state).__name__}")
    return Started(session_id=session_id, join_time=ensure_utc(join_time))


def finish(state: SessionState, remaining: int) -> Union[Submitted, TimedOut]:
    """Started -> Submitted if time remained, otherwise TimedOut."""
    if not isinstance(state, Started):
        raise InvalidTransitionError(f"Cannot submit a session from {type(state).__name__}")
    if remaining <= 0:
        return TimedOut(session_id=state.session_id)
    return Submitted(session_id=state.session_id)


def state_from_record(session: Optional[StudentExamSession]) -> SessionState:
    if session is None:
        return Absent()
    if session.status == SessionStatus.SUBMITTED:
        return Submitted(session_id=session.id)
    if session.status == SessionStatus.TIMED_OUT:
        return TimedOut(session_id=session.id)
    return Started(session_id=session.id, join_time=ensure_utc(session.join_time))


def status_of(state: SessionState) -> Optional[SessionStatus]:
    if isinstance(state, Started):
        return SessionStatus.STARTED
    if isinstance(state, Submitted):
        return SessionStatus.SUBMITTED
    if isinstance(state, TimedOut):
        return SessionStatus.TIMED_OUT
    return None


# =============================================================================
# Countdown
# =============================================================================

def deadline(join_time: datetime, duration_minutes: int) -> datetime:
    return ensure_utc(join_time) + timedelta(minutes=duration_minutes)


def remaining_seconds(join_time: datetime, duration_minutes: int, now: datetime) -> int:
    """max(0, floor((join_time + duration - now) / 1s))"""
    delta = (deadline(join_time, duration_minutes) - ensure_utc(now)).total_seconds()
    return max(0, math.floor(delta))


def format_time(seconds: Optional[int]) -> str:
    """HH:MM:SS for the countdown display."""
    if seconds is None:
        return "00:00:00"
    h, rest = divmod(max(0, seconds), 3600)
    m, s = divmod(rest, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


# =============================================================================
# Start or resume
# =============================================================================

def start_or_resume(
    repo: ExamRepository,
    exam: Exam,
    student_identifier: str,
    now: datetime,
) -> Tuple[StudentExamSession, bool]:
    """
    Return the student's session for ``exam``, creating it on first load.

    Returns:
        (session, created) - ``created`` is False when an existing session
        was resumed untouched.
    """
    check_exam_available(exam, now)

    existing = repo.get_session(exam.id, student_identifier)
    if existing is not None:
        logger.debug("Resuming session %s for %s", existing.id, student_identifier)
        return existing, False

    try:
        session = repo.create_session(exam.id, student_identifier, now)
        repo.commit()
    except IntegrityError:
        # Another request created the pair first; keep the winner's row.
        repo.rollback()
        existing = repo.get_session(exam.id, student_identifier)
        if existing is None:
            raise
        return existing, False

    logger.info("Started session %s for %s on exam %s", session.id, student_identifier, exam.exam_code)
    return session, True


# =============================================================================
# Submission
# =============================================================================

@dataclass
class UploadedFile:
    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class AnswerInput:
    """One buffered answer: free text, a selected option index or a file."""
    question_id: int
    answer_text: Optional[str] = None
    selected_option_index: Optional[int] = None
    file: Optional[UploadedFile] = None


@dataclass
class SubmissionOutcome:
    session_id: int
    status: SessionStatus
    remaining_seconds: int
    status_recorded: bool
    answers_saved: int
    files_uploaded: int
    warnings: List[str] = field(default_factory=list)


def validate_answers(answers: List[AnswerInput], questions: Dict[int, Question]) -> None:
    seen = set()
    for answer in answers:
        question = questions.get(answer.question_id)
        if question is None:
            raise AnswerValidationError(f"Question {answer.question_id} does not belong to this exam")
        if answer.question_id in seen:
            raise AnswerValidationError(f"Question {answer.question_id} was answered more than once")
        seen.add(answer.question_id)

        if question.type == QuestionType.MULTIPLE_CHOICE:
            index = answer.selected_option_index
            option_count = len(question.options or [])
            if index is None or not 0 <= index < option_count:
                raise AnswerValidationError(
                    f"Question {answer.question_id} needs an option index between 0 and {option_count - 1}"
                )
        elif question.type == QuestionType.FILE_UPLOAD:
            if answer.file is None:
                raise AnswerValidationError(f"Question {answer.question_id} expects a file")
        elif answer.selected_option_index is not None or answer.file is not None:
            raise AnswerValidationError(f"Question {answer.question_id} expects a text answer")


def _recorded_status(repo: ExamRepository, session_id: int, fallback: SessionStatus) -> SessionStatus:
    status = repo.get_session_status(session_id)
    if status is None or status == SessionStatus.STARTED:
        return fallback
    return status


def _close_after_conflict(
    repo: ExamRepository,
    session: StudentExamSession,
    final_status: SessionStatus,
) -> SessionClosedError:
    """
    Answers for ``session`` are already saved. Make sure the session is
    terminal, then return the error describing its stored status.
    """
    try:
        if repo.mark_session_terminal(session.id, final_status):
            logger.warning("Closed session %s left open by an earlier submit", session.id)
        repo.commit()
    except SQLAlchemyError:
        repo.rollback()
        logger.exception("Failed to close session %s after a duplicate submit", session.id)
    return SessionClosedError(_recorded_status(repo, session.id, final_status).value)


def submit_session(
    repo: ExamRepository,
    storage: FileStorage,
    exam: Exam,
    session: StudentExamSession,
    answers: List[AnswerInput],
    now: datetime,
) -> SubmissionOutcome:
    """
    Persist a student's answers and close the session.

    1. one batch insert with a row per answer
    2. upload each answer file and attach its public URL to the row;
       a failed upload is recorded as a warning and the rest continue
    3. mark the session ``timed_out`` if no time remained at submission,
       ``submitted`` otherwise; a failed status update is logged only

    Raises:
        SessionClosedError: the session is already terminal, or an earlier
            submit saved its answers (the session is closed first)
        AnswerValidationError: an answer does not fit its question
        SQLAlchemyError: the primary answer batch could not be saved
    """
    if session.status != SessionStatus.STARTED:
        raise SessionClosedError(session.status.value)

    questions = {q.id: q for q in repo.list_questions(exam.id)}
    validate_answers(answers, questions)

    remaining = remaining_seconds(session.join_time, exam.duration_minutes, now)
    final_status = SessionStatus.TIMED_OUT if remaining <= 0 else SessionStatus.SUBMITTED

    if repo.has_submissions(session.id):
        # An earlier submit saved its answers but never closed the session.
        raise _close_after_conflict(repo, session, final_status)

    rows = [
        {
            "session_id": session.id,
            "question_id": answer.question_id,
            "answer_text": answer.answer_text,
            "selected_option_index": answer.selected_option_index,
        }
        for answer in answers
    ]
    if rows:
        try:
            repo.insert_submissions(rows)
            repo.commit()
        except IntegrityError:
            # Answer rows for this session already exist: a parallel submit won.
            repo.rollback()
            raise _close_after_conflict(repo, session, final_status)
        except SQLAlchemyError:
            repo.rollback()
            logger.exception("Failed to save answers for session %s", session.id)
            raise

    warnings: List[str] = []
    files_uploaded = 0
    for answer in answers:
        if answer.file is None:
            continue
        filename = safe_filename(answer.file.filename)
        path = answer_file_path(session.student_identifier, exam.id, answer.question_id, filename)
        try:
            storage.upload(path, answer.file.content, answer.file.content_type)
            repo.update_submission_file(session.id, answer.question_id, storage.public_url(path), filename)
            repo.commit()
            files_uploaded += 1
        except StorageError as e:
            logger.warning("Upload failed for session %s question %s: %s", session.id, answer.question_id, e)
            warnings.append(f"Failed to upload file for question {answer.question_id}: {e.message}")
        except SQLAlchemyError as e:
            repo.rollback()
            logger.warning("Could not attach file to session %s question %s: %s", session.id, answer.question_id, e)
            warnings.append(f"Failed to save file for question {answer.question_id}")

    try:
        status_recorded = repo.mark_session_terminal(session.id, final_status)
        repo.commit()
    except SQLAlchemyError:
        repo.rollback()
        logger.exception("Failed to update status of session %s", session.id)
        status_recorded = False
    else:
        if not status_recorded:
            # A parallel submit closed the session between our check and this update.
            logger.warning("Session %s was already closed before its status update", session.id)
            raise SessionClosedError(_recorded_status(repo, session.id, final_status).value)

    logger.info(
        "Session %s %s: %d answers, %d files, %d warnings",
        session.id, final_status.value, len(rows), files_uploaded, len(warnings),
    )
    return SubmissionOutcome(
        session_id=session.id,
        status=final_status,
        remaining_seconds=remaining,
        status_recorded=status_recorded,
        answers_saved=len(rows),
        files_uploaded=files_uploaded,
        warnings=warnings,
    )


# =============================================================================
# Exam attempt (one student, one tab)
# =============================================================================

class AttemptView(str, enum.Enum):
    LOADING = "loading"
    ERROR = "error"
    FINISHED = "finished"
    TAKING = "taking"


SUBMITTED_MESSAGE = "Exam submitted successfully!"
TIME_UP_MESSAGE = "Time's up! Your exam is being submitted automatically."


class ExamAttempt:
    """
    Drives one student's attempt: load, answer, count down, submit once.

    All calls happen on one thread/event loop. ``tick`` is the once-per-second
    timer callback; it recomputes the remaining time from the session's
    ``join_time`` and auto-submits when it reaches zero. Manual submit and
    auto-submit share ``submit``, guarded by a single in-flight/finished check.
    """

    def __init__(
        self,
        repo: ExamRepository,
        storage: FileStorage,
        exam_code: str,
        student_identifier: str,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.storage = storage
        self.exam_code = exam_code
        self.student_identifier = student_identifier
        self.clock = clock

        self.state: SessionState = Absent()
        self.view = AttemptView.LOADING
        self.exam: Optional[Exam] = None
        self.questions: List[Question] = []
        self.current_index = 0
        self.answers: Dict[int, AnswerInput] = {}
        self.remaining: Optional[int] = None
        self.error: Optional[str] = None
        self.finished_message: Optional[str] = None
        self.warnings: List[str] = []
        self.back_url = "/"
        self._submitting = False

    # --- Loading ---

    def _fail(self, message: str) -> None:
        self.error = message
        self.view = AttemptView.ERROR

    def load(self) -> AttemptView:
        self.view = AttemptView.LOADING
        self.error = None
        now = self.clock()

        try:
            exam = self.repo.get_exam_by_code(self.exam_code.strip().upper())
            if exam is None:
                raise ExamNotFoundError(self.exam_code)
        except ExamNotFoundError:
            self._fail("Failed to load exam details or exam not found.")
            return self.view
        except SQLAlchemyError:
            logger.exception("Failed to load exam %s", self.exam_code)
            self._fail("Failed to load exam details or exam not found.")
            return self.view

        try:
            session, created = start_or_resume(self.repo, exam, self.student_identifier, now)
        except ExamHostError as e:
            self._fail(e.message)
            return self.view
        except SQLAlchemyError:
            logger.exception("Session error for %s on %s", self.student_identifier, exam.exam_code)
            self._fail("Failed to start or resume exam session.")
            return self.view

        self.exam = exam
        if created:
            self.state = begin(Absent(), session.id, session.join_time)
        else:
            self.state = state_from_record(session)

        if is_terminal(self.state):
            verb = "submitted" if isinstance(self.state, Submitted) else "timed out of"
            self.finished_message = f"You have already {verb} this exam."
            self.remaining = 0
            self.view = AttemptView.FINISHED
            return self.view

        try:
            self.questions = self.repo.list_questions(exam.id)
        except SQLAlchemyError:
            logger.exception("Failed to load questions for exam %s", exam.exam_code)
            self._fail("Failed to load exam details or exam not found.")
            return self.view

        if not self.questions:
            self._fail("No questions found for this exam or exam is not available.")
            return self.view

        self.remaining = remaining_seconds(self.state.join_time, exam.duration_minutes, now)
        self.view = AttemptView.TAKING
        return self.view

    # --- Navigation & answers ---

    @property
    def current_question(self) -> Optional[Question]:
        if not self.questions:
            return None
        return self.questions[self.current_index]

    @property
    def is_last_question(self) -> bool:
        return bool(self.questions) and self.current_index == len(self.questions) - 1

    def next_question(self) -> None:
        if self.current_index < len(self.questions) - 1 and not self._submitting:
            self.current_index += 1

    def previous_question(self) -> None:
        if self.current_index > 0 and not self._submitting:
            self.current_index -= 1

    def answer(self, question_id: int, value) -> None:
        """Buffer an answer locally; nothing is written before submission."""
        if self.view is not AttemptView.TAKING or self._submitting:
            raise InvalidTransitionError("Answers can only be changed while the exam is in progress")
        question = next((q for q in self.questions if q.id == question_id), None)
        if question is None:
            raise AnswerValidationError(f"Question {question_id} does not belong to this exam")

        if question.type == QuestionType.MULTIPLE_CHOICE:
            entry = AnswerInput(question_id=question_id, selected_option_index=int(value))
        elif question.type == QuestionType.FILE_UPLOAD:
            if not isinstance(value, UploadedFile):
                raise AnswerValidationError(f"Question {question_id} expects a file")
            entry = AnswerInput(question_id=question_id, file=value)
        else:
            entry = AnswerInput(question_id=question_id, answer_text=str(value))
        self.answers[question_id] = entry

    # --- Countdown ---

    def tick(self) -> Optional[int]:
        """Timer callback: refresh the remaining time, auto-submit at zero."""
        if self.view is not AttemptView.TAKING or not isinstance(self.state, Started):
            return self.remaining
        self.remaining = remaining_seconds(self.state.join_time, self.exam.duration_minutes, self.clock())
        if self.remaining <= 0:
            self.submit(TIME_UP_MESSAGE)
        return self.remaining

    async def run_countdown(self, interval: float = 1.0) -> None:
        """Call ``tick`` once per ``interval`` until the attempt leaves the taking view."""
        while self.view is AttemptView.TAKING:
            self.tick()
            if self.view is not AttemptView.TAKING:
                break
            await asyncio.sleep(interval)

    # --- Submission ---

    def submit(self, reason: str = SUBMITTED_MESSAGE) -> Optional[SubmissionOutcome]:
        """Submit the buffered answers. Returns None when the guard refuses."""
        if self._submitting or self.view is not AttemptView.TAKING or not isinstance(self.state, Started):
            return None
        self._submitting = True
        self.error = None
        try:
            session = self.repo.get_session_by_id(self.state.session_id)
            if session is None:
                raise SessionNotFoundError()
            outcome = submit_session(
                self.repo,
                self.storage,
                self.exam,
                session,
                list(self.answers.values()),
                self.clock(),
            )
        except SessionClosedError as e:
            self.state = state_from_record(self.repo.get_session_by_id(self.state.session_id))
            self.finished_message = e.message
            self.remaining = 0
            self.view = AttemptView.FINISHED
            return None
        except ExamHostError as e:
            self._fail(e.message)
            return None
        except SQLAlchemyError:
            self._fail("Failed to save some answers. Please try again or contact support.")
            return None
        finally:
            self._submitting = False

        self.state = finish(self.state, outcome.remaining_seconds)
        self.warnings = outcome.warnings
        self.finished_message = reason
        self.remaining = 0
        self.view = AttemptView.FINISHED
        return outcome
