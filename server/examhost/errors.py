"""
Typed errors for the exam host.

Every error carries an HTTP status, a machine-readable code and a
user-safe message. The FastAPI handler registered in main.py renders them as:

{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {}   (optional)
}
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EXAM_CODE = "INVALID_EXAM_CODE"
    INVALID_ANSWER = "INVALID_ANSWER"
    STUDENT_IDENTITY_REQUIRED = "STUDENT_IDENTITY_REQUIRED"

    EXAM_NOT_FOUND = "EXAM_NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    EXAM_NOT_STARTED = "EXAM_NOT_STARTED"

    SESSION_CLOSED = "SESSION_CLOSED"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"

    STORAGE_ERROR = "STORAGE_ERROR"
    AI_SERVICE_ERROR = "AI_SERVICE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ExamHostError(Exception):
    """Base error with consistent structure"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal Error"
    code: str = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result


# --- Join flow ---

class InvalidExamCodeError(ExamHostError):
    """Raw code is not 6 alphanumeric characters after trimming"""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"
    code = ErrorCode.INVALID_EXAM_CODE
    reason = "invalid-code"

    def __init__(self, message: str = "Invalid exam code format. Please enter a 6-character code."):
        super().__init__(message)


class ExamNotFoundError(ExamHostError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    code = ErrorCode.EXAM_NOT_FOUND
    reason = "not-found"

    def __init__(self, exam_code: str):
        self.exam_code = exam_code
        super().__init__("Exam not found. Please check the code and try again.")


class ExamNotStartedError(ExamHostError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Not Started"
    code = ErrorCode.EXAM_NOT_STARTED
    reason = "not-started"

    def __init__(self, start_time: datetime):
        self.start_time = start_time
        super().__init__(
            f"This exam is scheduled to start at {start_time.isoformat()}.",
            details={"start_time": start_time.isoformat()},
        )


# --- Session lifecycle ---

class SessionNotFoundError(ExamHostError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, message: str = "No exam session found for this student."):
        super().__init__(message)


class SessionClosedError(ExamHostError):
    """The session is already submitted or timed out"""
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"
    code = ErrorCode.SESSION_CLOSED

    def __init__(self, status_value: str):
        self.status_value = status_value
        super().__init__(
            f"This exam session is already {status_value.replace('_', ' ')}.",
            details={"status": status_value},
        )


class InvalidTransitionError(ExamHostError):
    status_code = status.HTTP_409_CONFLICT
    error = "Invalid State"
    code = ErrorCode.STATE_TRANSITION_INVALID


class AnswerValidationError(ExamHostError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"
    code = ErrorCode.INVALID_ANSWER


class StudentIdentityError(ExamHostError):
    """Missing or unusable student identifier from the identity provider"""
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"
    code = ErrorCode.STUDENT_IDENTITY_REQUIRED

    def __init__(self, message: str = "A valid student identifier is required."):
        super().__init__(message)


# --- Exam creation ---

class ExamValidationError(ExamHostError):
    """All validation problems of an exam draft, reported together"""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error = "Validation Error"
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems), details={"problems": problems})


class ExamCreationError(ExamHostError):
    """Creation failure categorized as validation, storage or unknown"""

    VALIDATION = "validation"
    STORAGE = "storage"
    UNKNOWN = "unknown"

    def __init__(self, category: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.category = category
        if category == self.VALIDATION:
            self.status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
            self.error = "Validation Error"
            self.code = ErrorCode.VALIDATION_ERROR
        elif category == self.STORAGE:
            self.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            self.error = "Storage Error"
            self.code = ErrorCode.STORAGE_ERROR
        details = dict(details or {}, category=category)
        super().__init__(message, details=details)


# --- Collaborators ---

class StorageError(ExamHostError):
    """File storage upload failure"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "Storage Error"
    code = ErrorCode.STORAGE_ERROR


class AIDraftError(ExamHostError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "AI Service Error"
    code = ErrorCode.AI_SERVICE_ERROR


async def exam_host_error_handler(request: Request, exc: ExamHostError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def database_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Transient backend failures: log the detail, show a generic retry prompt"""
    logger.error("Database error on %s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Storage Error",
            "message": "Something went wrong while saving. Please try again.",
            "code": ErrorCode.STORAGE_ERROR,
        },
    )
