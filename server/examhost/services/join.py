"""
Exam join: validate the code, find the exam, check it has started.
"""
import logging
from datetime import datetime

from examhost.errors import ExamNotFoundError, ExamNotStartedError
from examhost.models import Exam
from examhost.repository import ExamRepository
from examhost.services.clock import ensure_utc
from examhost.services.exam_code import validate_exam_code

logger = logging.getLogger(__name__)


def check_exam_available(exam: Exam, now: datetime) -> None:
    """Raise ExamNotStartedError while ``now`` is before the exam's start time."""
    if exam.start_time is None:
        return
    start_time = ensure_utc(exam.start_time)
    if now < start_time:
        raise ExamNotStartedError(start_time)


def join_exam(repo: ExamRepository, raw_code: str, now: datetime) -> Exam:
    """
    Resolve a raw join code to an exam the student may start now.

    Raises:
        InvalidExamCodeError: code is not 6 alphanumeric characters
        ExamNotFoundError: no exam with that code
        ExamNotStartedError: exam has a start time in the future
    """
    exam_code = validate_exam_code(raw_code)
    exam = repo.get_exam_by_code(exam_code)
    if exam is None:
        logger.info("Join attempt for unknown exam code %s", exam_code)
        raise ExamNotFoundError(exam_code)
    check_exam_available(exam, now)
    return exam
