from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from examhost.models.content import Question, QuestionType
from examhost.models.session import SessionStatus


# =============================================================================
# Exam creation
# =============================================================================

class OptionDraft(BaseModel):
    """A multiple choice option as entered by the teacher."""
    text: str = ""
    is_correct: bool = False


class QuestionDraft(BaseModel):
    """One question of the creation form, in order."""
    question_text: str = ""
    type: QuestionType = QuestionType.TEXT
    options: Optional[List[OptionDraft]] = None
    points: Optional[int] = None


class ExamDraft(BaseModel):
    """Exam metadata plus its ordered question list."""
    title: str = ""
    description: Optional[str] = None
    duration_minutes: int = 0
    start_time: Optional[datetime] = None
    questions: List[QuestionDraft] = []


class CreateExamResponse(BaseModel):
    success: bool = True
    exam_id: int
    exam_code: str
    title: str
    warnings: List[str] = []


# =============================================================================
# AI drafting
# =============================================================================

class GenerateQuestionRequest(BaseModel):
    topic: str = Field(min_length=1)
    question_type: QuestionType = QuestionType.TEXT

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("topic is empty")
        return value


class GeneratedOption(BaseModel):
    text: str
    is_correct: bool = False


class GeneratedQuestion(BaseModel):
    """Question draft parsed from the text-generation response."""
    question_text: str
    options: Optional[List[GeneratedOption]] = None

    @field_validator("question_text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("question_text is empty")
        return value


# =============================================================================
# Join & session flow
# =============================================================================

class JoinResponse(BaseModel):
    exam_code: str
    title: str
    duration_minutes: int
    start_time: Optional[datetime] = None
    take_url: str


class StudentOption(BaseModel):
    """Option as shown to students: correctness is never included."""
    text: str


class StudentQuestion(BaseModel):
    id: int
    question_text: str
    type: QuestionType
    options: Optional[List[StudentOption]] = None
    teacher_attachment_url: Optional[str] = None
    teacher_attachment_filename: Optional[str] = None
    points: int
    sort_order: int

    @classmethod
    def from_question(cls, question: Question) -> "StudentQuestion":
        options = None
        if question.type == QuestionType.MULTIPLE_CHOICE and question.options:
            options = [StudentOption(text=o.get("text", "")) for o in question.options]
        return cls(
            id=question.id,
            question_text=question.question_text,
            type=question.type,
            options=options,
            teacher_attachment_url=question.teacher_attachment_url,
            teacher_attachment_filename=question.teacher_attachment_filename,
            points=question.points,
            sort_order=question.sort_order,
        )


class TakeExamResponse(BaseModel):
    """Start-or-resume result. ``questions`` is empty once the session is terminal."""
    exam_id: int
    exam_code: str
    title: str
    description: Optional[str] = None
    duration_minutes: int
    session_id: int
    status: SessionStatus
    join_time: datetime
    deadline: datetime
    remaining_seconds: int
    finished: bool
    message: Optional[str] = None
    questions: List[StudentQuestion] = []


class RemainingTimeResponse(BaseModel):
    session_id: int
    status: SessionStatus
    remaining_seconds: int
    deadline: datetime


class AnswerPayload(BaseModel):
    """Non-file part of a student's answer; files come as answer_file_{question_id}."""
    question_id: int
    answer_text: Optional[str] = None
    selected_option_index: Optional[int] = None


class SubmitExamResponse(BaseModel):
    success: bool = True
    session_id: int
    status: SessionStatus
    status_recorded: bool
    answers_saved: int
    files_uploaded: int
    warnings: List[str] = []
    message: str
