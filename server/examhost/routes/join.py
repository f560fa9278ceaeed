"""
Join flow.

The form endpoint answers with redirects; its query parameters
(``error=invalid-code|not-found|not-started``, ``start``) are what the
entry page reads to show a message.
"""
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from examhost.database import get_db
from examhost.errors import ExamNotFoundError, ExamNotStartedError, InvalidExamCodeError
from examhost.repository import ExamRepository
from examhost.schemas import JoinResponse
from examhost.services.clock import Clock, ensure_utc, get_clock
from examhost.services.join import join_exam

router = APIRouter(tags=["Join"])


def take_url(exam_code: str) -> str:
    return f"/exam/{exam_code}/take"


@router.post("/join")
def join_exam_form(
    examCode: str = Form(default=""),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Code-submission form: redirect to the exam or back to / with an error."""
    try:
        exam = join_exam(ExamRepository(db), examCode, clock())
    except (InvalidExamCodeError, ExamNotFoundError) as e:
        return RedirectResponse(f"/?{urlencode({'error': e.reason})}", status_code=status.HTTP_303_SEE_OTHER)
    except ExamNotStartedError as e:
        query = urlencode({"error": e.reason, "start": e.start_time.isoformat()})
        return RedirectResponse(f"/?{query}", status_code=status.HTTP_303_SEE_OTHER)

    return RedirectResponse(take_url(exam.exam_code), status_code=status.HTTP_303_SEE_OTHER)


@router.get("/api/exam/join/{exam_code}", response_model=JoinResponse)
def check_exam_code(
    exam_code: str,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """JSON variant of the join check; errors use the standard error body."""
    exam = join_exam(ExamRepository(db), exam_code, clock())
    return JoinResponse(
        exam_code=exam.exam_code,
        title=exam.title,
        duration_minutes=exam.duration_minutes,
        start_time=ensure_utc(exam.start_time) if exam.start_time else None,
        take_url=take_url(exam.exam_code),
    )
