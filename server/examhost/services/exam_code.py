"""
Exam code validation and allocation.

An exam code is 6 ASCII alphanumeric characters, case-insensitive,
stored upper-case.
"""
import re
import secrets
import string
from typing import Callable

from examhost.errors import ExamCreationError, InvalidExamCodeError

EXAM_CODE_LENGTH = 6
EXAM_CODE_ALPHABET = string.ascii_uppercase + string.digits
_EXAM_CODE_RE = re.compile(r"^[A-Za-z0-9]{%d}$" % EXAM_CODE_LENGTH)

MAX_CODE_ATTEMPTS = 20


def validate_exam_code(raw_code) -> str:
    """Return the normalized (upper-case) code or raise InvalidExamCodeError."""
    if not isinstance(raw_code, str):
        raise InvalidExamCodeError()
    code = raw_code.strip()
    if not _EXAM_CODE_RE.match(code):
        raise InvalidExamCodeError()
    return code.upper()


def generate_exam_code(exists: Callable[[str], bool]) -> str:
    """Pick a random code that ``exists`` reports as unused."""
    for _ in range(MAX_CODE_ATTEMPTS):
        code = "".join(secrets.choice(EXAM_CODE_ALPHABET) for _ in range(EXAM_CODE_LENGTH))
        if not exists(code):
            return code
    raise ExamCreationError(
        ExamCreationError.STORAGE,
        "Failed to generate exam code. Please try again.",
    )
