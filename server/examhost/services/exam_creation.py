"""
Exam Creation Service.

Validates a teacher's draft, allocates a unique join code and persists the
exam with its ordered questions. Attachment uploads are best-effort: a failed
upload leaves that question without an attachment.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from examhost.config import settings
from examhost.errors import ExamCreationError, ExamValidationError, StorageError
from examhost.models import Exam, Question, QuestionType
from examhost.repository import ExamRepository
from examhost.schemas import ExamDraft
from examhost.services.clock import ensure_utc
from examhost.services.exam_code import generate_exam_code
from examhost.services.session_lifecycle import UploadedFile
from examhost.storage import FileStorage, attachment_path, safe_filename

logger = logging.getLogger(__name__)


@dataclass
class CreatedExam:
    exam_id: int
    exam_code: str
    title: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class StoredAttachment:
    path: str
    url: str
    filename: str


def validate_exam_draft(draft: ExamDraft) -> None:
    """Raise ExamValidationError listing every problem found in the draft."""
    problems: List[str] = []

    if not draft.title or not draft.title.strip():
        problems.append("Title is required")
    if draft.duration_minutes is None or draft.duration_minutes <= 0:
        problems.append("Duration must be a positive number of minutes")
    if not draft.questions:
        problems.append("At least one question is required")

    for number, question in enumerate(draft.questions, start=1):
        if not question.question_text or not question.question_text.strip():
            problems.append(f"Question {number}: text is required")
        if question.points is not None and question.points <= 0:
            problems.append(f"Question {number}: points must be positive")
        if question.type == QuestionType.MULTIPLE_CHOICE:
            options = question.options or []
            if len(options) < 2:
                problems.append(f"Question {number}: multiple choice needs at least 2 options")
            if any(not option.text.strip() for option in options):
                problems.append(f"Question {number}: every option needs text")
            if not any(option.is_correct for option in options):
                problems.append(f"Question {number}: mark at least one option as correct")

    if problems:
        raise ExamValidationError(problems)

def _upload_attachments(
    storage: FileStorage,
    exam_id: int,
    draft: ExamDraft,
    attachments: Dict[int, UploadedFile],
    now: datetime,
) -> Tuple[Dict[int, StoredAttachment], List[str]]:
    uploaded: Dict[int, StoredAttachment] = {}
    warnings: List[str] = []
    base_ms = int(now.timestamp() * 1000)

    for offset, (index, attachment) in enumerate(sorted(attachments.items())):
        if not 0 <= index < len(draft.questions):
            logger.warning("Ignoring attachment for missing question index %s", index)
            continue
        filename = safe_filename(attachment.filename)
        # One timestamp per upload, so equal filenames never share a path.
        path = attachment_path(exam_id, filename, base_ms + offset)
        try:
            storage.upload(path, attachment.content, attachment.content_type)
        except StorageError as e:
            logger.warning("Failed to upload attachment for question %s: %s", index, e)
            warnings.append(f"Attachment for question {index + 1} could not be uploaded and was skipped")
            continue
        uploaded[index] = StoredAttachment(path=path, url=storage.public_url(path), filename=filename)

    return uploaded, warnings


def _discard_attachments(storage: FileStorage, uploaded: Dict[int, StoredAttachment]) -> None:
    """Remove files uploaded for an exam whose insert was rolled back."""
    for stored in uploaded.values():
        try:
            storage.delete(stored.path)
        except StorageError as e:
            logger.warning("Orphaned attachment left at %s: %s", stored.path, e)


def create_exam(
    repo: ExamRepository,
    storage: FileStorage,
    draft: ExamDraft,
    attachments: Optional[Dict[int, UploadedFile]],
    now: datetime,
) -> CreatedExam:
    """
    Create an exam from a validated draft.

    Args:
        draft: exam metadata and ordered questions
        attachments: question index -> teacher attachment file
        now: creation time, used for attachment path timestamps

    Returns:
        CreatedExam with the generated join code

    Raises:
        ExamCreationError: category ``validation``, ``storage`` or ``unknown``
    """
    try:
        validate_exam_draft(draft)
    except ExamValidationError as e:
        raise ExamCreationError(ExamCreationError.VALIDATION, e.message, details={"problems": e.problems})

    uploaded: Dict[int, StoredAttachment] = {}
    try:
        exam_code = generate_exam_code(repo.exam_code_exists)
        exam = repo.add_exam(
            Exam(
                title=draft.title.strip(),
                description=(draft.description or "").strip() or None,
                exam_code=exam_code,
                start_time=ensure_utc(draft.start_time) if draft.start_time else None,
                duration_minutes=draft.duration_minutes,
            )
        )

        uploaded, warnings = _upload_attachments(storage, exam.id, draft, attachments or {}, now)

        questions = []
        for index, q in enumerate(draft.questions):
            stored = uploaded.get(index)
            options = None
            if q.type == QuestionType.MULTIPLE_CHOICE:
                options = [{"text": o.text.strip(), "is_correct": o.is_correct} for o in q.options]
            questions.append(
                Question(
                    exam_id=exam.id,
                    question_text=q.question_text.strip(),
                    type=q.type,
                    options=options,
                    teacher_attachment_url=stored.url if stored else None,
                    teacher_attachment_filename=stored.filename if stored else None,
                    points=q.points or settings.default_question_points,
                    sort_order=index + 1,
                )
            )
        repo.add_questions(questions)
        repo.commit()
    except ExamCreationError:
        repo.rollback()
        _discard_attachments(storage, uploaded)
        raise
    except SQLAlchemyError as e:
        repo.rollback()
        logger.exception("Failed to persist exam %r", draft.title)
        _discard_attachments(storage, uploaded)
        raise ExamCreationError(ExamCreationError.STORAGE, f"Failed to create exam: {e.__class__.__name__}")
    except Exception as e:
        repo.rollback()
        logger.exception("Unexpected error creating exam %r", draft.title)
        _discard_attachments(storage, uploaded)
        raise ExamCreationError(ExamCreationError.UNKNOWN, f"An unexpected error occurred: {e}")

    logger.info("Created exam %s (%s) with %d questions", exam.exam_code, exam.title, len(questions))
    return CreatedExam(exam_id=exam.id, exam_code=exam.exam_code, title=exam.title, warnings=warnings)
