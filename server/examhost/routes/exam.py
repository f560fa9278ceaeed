import json
import logging
import re
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from examhost.database import get_db
from examhost.errors import (
    AnswerValidationError,
    ExamCreationError,
    ExamNotFoundError,
    SessionNotFoundError,
    StudentIdentityError,
)
from examhost.models import Exam, SessionStatus, StudentExamSession
from examhost.repository import ExamRepository
from examhost.schemas import (
    AnswerPayload,
    CreateExamResponse,
    ExamDraft,
    GenerateQuestionRequest,
    GeneratedQuestion,
    RemainingTimeResponse,
    StudentQuestion,
    SubmitExamResponse,
    TakeExamResponse,
)
from examhost.services.ai_generator import draft_question
from examhost.services.clock import Clock, ensure_utc, get_clock
from examhost.services.exam_code import validate_exam_code
from examhost.services.exam_creation import create_exam
from examhost.services.llm_service import TextGenerationService, get_llm_service
from examhost.services.session_lifecycle import (
    SUBMITTED_MESSAGE,
    AnswerInput,
    UploadedFile,
    deadline,
    remaining_seconds,
    start_or_resume,
    submit_session,
)
from examhost.storage import FileStorage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Exam"])

_STUDENT_ID_RE = re.compile(r"^[\w.@-]{1,128}$")
_ATTACHMENT_FIELD_RE = re.compile(r"^question_attachment_(\d+)$")
_ANSWER_FILE_FIELD_RE = re.compile(r"^answer_file_(\d+)$")

_answers_adapter = TypeAdapter(List[AnswerPayload])


def get_student_identifier(x_student_identifier: Optional[str] = Header(default=None)) -> str:
    """
    Student identity comes from the identity provider in front of this
    service, as the X-Student-Identifier header. It is never generated here.
    """
    student_identifier = (x_student_identifier or "").strip()
    if not _STUDENT_ID_RE.match(student_identifier) or student_identifier in (".", ".."):
        raise StudentIdentityError()
    return student_identifier


def _find_exam(repo: ExamRepository, raw_code: str) -> Exam:
    exam_code = validate_exam_code(raw_code)
    exam = repo.get_exam_by_code(exam_code)
    if exam is None:
        raise ExamNotFoundError(exam_code)
    return exam


def _find_session(repo: ExamRepository, raw_code: str, student_identifier: str) -> Tuple[Exam, StudentExamSession]:
    exam = _find_exam(repo, raw_code)
    session = repo.get_session(exam.id, student_identifier)
    if session is None:
        raise SessionNotFoundError()
    return exam, session


async def _read_upload(value: UploadFile) -> UploadedFile:
    return UploadedFile(
        filename=value.filename or "upload",
        content=await value.read(),
        content_type=value.content_type,
    )


def _is_file(value) -> bool:
    return isinstance(value, UploadFile) and bool(value.filename)


# =============================================================================
# Teacher side
# =============================================================================

@router.post("/create-exam", response_model=CreateExamResponse)
async def create_exam_route(
    request: Request,
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    clock: Clock = Depends(get_clock),
):
    """
    Teacher creates an exam from the multi-step form.

    Multipart fields: title, description, duration_minutes, start_time,
    questions (JSON list), question_attachment_{index} (optional files).
    """
    form = await request.form()

    try:
        raw_questions = json.loads(form.get("questions") or "[]")
    except json.JSONDecodeError:
        raise ExamCreationError(ExamCreationError.VALIDATION, "Questions must be a JSON list")

    try:
        draft = ExamDraft.model_validate({
            "title": form.get("title") or "",
            "description": form.get("description") or None,
            "duration_minutes": form.get("duration_minutes") or 0,
            "start_time": form.get("start_time") or None,
            "questions": raw_questions,
        })
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ExamCreationError(ExamCreationError.VALIDATION, "; ".join(problems), details={"problems": problems})

    attachments: Dict[int, UploadedFile] = {}
    for key, value in form.multi_items():
        match = _ATTACHMENT_FIELD_RE.match(key)
        if match and _is_file(value):
            attachments[int(match.group(1))] = await _read_upload(value)

    created = await run_in_threadpool(create_exam, ExamRepository(db), storage, draft, attachments, clock())

    return CreateExamResponse(
        exam_id=created.exam_id,
        exam_code=created.exam_code,
        title=created.title,
        warnings=created.warnings,
    )


@router.post("/generate-question", response_model=GeneratedQuestion)
def generate_question_route(
    request: GenerateQuestionRequest,
    llm: TextGenerationService = Depends(get_llm_service),
):
    """Draft one question about a topic with the text-generation provider."""
    return draft_question(request.topic, request.question_type, llm)


# =============================================================================
# Student side
# =============================================================================

@router.get("/{exam_code}/take", response_model=TakeExamResponse)
def take_exam(
    exam_code: str,
    student_identifier: str = Depends(get_student_identifier),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Start or resume the student's session and return the exam.
    A terminal session gets the finished view and no questions.
    """
    repo = ExamRepository(db)
    now = clock()
    exam = _find_exam(repo, exam_code)
    session, _ = start_or_resume(repo, exam, student_identifier, now)

    join_time = ensure_utc(session.join_time)
    response = TakeExamResponse(
        exam_id=exam.id,
        exam_code=exam.exam_code,
        title=exam.title,
        description=exam.description,
        duration_minutes=exam.duration_minutes,
        session_id=session.id,
        status=session.status,
        join_time=join_time,
        deadline=deadline(join_time, exam.duration_minutes),
        remaining_seconds=0,
        finished=session.status.is_terminal,
    )
    if response.finished:
        verb = "submitted" if session.status == SessionStatus.SUBMITTED else "timed out of"
        response.message = f"You have already {verb} this exam."
        return response

    response.remaining_seconds = remaining_seconds(join_time, exam.duration_minutes, now)
    response.questions = [StudentQuestion.from_question(q) for q in repo.list_questions(exam.id)]
    return response


@router.get("/{exam_code}/remaining", response_model=RemainingTimeResponse)
def get_remaining_time(
    exam_code: str,
    student_identifier: str = Depends(get_student_identifier),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Countdown resync, always derived from the session's join time."""
    repo = ExamRepository(db)
    exam, session = _find_session(repo, exam_code, student_identifier)

    join_time = ensure_utc(session.join_time)
    remaining = 0
    if not session.status.is_terminal:
        remaining = remaining_seconds(join_time, exam.duration_minutes, clock())
    return RemainingTimeResponse(
        session_id=session.id,
        status=session.status,
        remaining_seconds=remaining,
        deadline=deadline(join_time, exam.duration_minutes),
    )


@router.post("/{exam_code}/submit", response_model=SubmitExamResponse)
async def submit_exam(
    exam_code: str,
    request: Request,
    student_identifier: str = Depends(get_student_identifier),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    clock: Clock = Depends(get_clock),
):
    """
    One-shot submission.

    Multipart fields: answers (JSON list of {question_id, answer_text?,
    selected_option_index?}), answer_file_{question_id} (files).
    """
    repo = ExamRepository(db)
    exam, session = await run_in_threadpool(_find_session, repo, exam_code, student_identifier)

    form = await request.form()
    try:
        payloads = _answers_adapter.validate_json(form.get("answers") or "[]")
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise AnswerValidationError("Answers must be a JSON list of answer objects", details={"problems": problems})

    answers: Dict[int, AnswerInput] = {}
    for payload in payloads:
        if payload.question_id in answers:
            raise AnswerValidationError(f"Question {payload.question_id} was answered more than once")
        answers[payload.question_id] = AnswerInput(
            question_id=payload.question_id,
            answer_text=payload.answer_text,
            selected_option_index=payload.selected_option_index,
        )
    for key, value in form.multi_items():
        match = _ANSWER_FILE_FIELD_RE.match(key)
        if match and _is_file(value):
            question_id = int(match.group(1))
            answer = answers.setdefault(question_id, AnswerInput(question_id=question_id))
            answer.file = await _read_upload(value)

    outcome = await run_in_threadpool(submit_session, repo, storage, exam, session, list(answers.values()), clock())

    message = SUBMITTED_MESSAGE
    if outcome.status == SessionStatus.TIMED_OUT:
        message = "Time's up! Your exam was submitted automatically."
    return SubmitExamResponse(
        session_id=outcome.session_id,
        status=outcome.status,
        status_recorded=outcome.status_recorded,
        answers_saved=outcome.answers_saved,
        files_uploaded=outcome.files_uploaded,
        warnings=outcome.warnings,
        message=message,
    )
