"""
Models package initialization
Import all models here to ensure they are registered with SQLAlchemy
"""

from examhost.models.content import Exam, Question, QuestionType
from examhost.models.session import StudentExamSession, Submission, SessionStatus

__all__ = [
    "Exam",
    "Question",
    "QuestionType",
    "StudentExamSession",
    "Submission",
    "SessionStatus",
]
