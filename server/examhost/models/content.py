from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from examhost.database import Base
import enum


class QuestionType(str, enum.Enum):
    TEXT = "text"
    MULTIPLE_CHOICE = "multiple_choice"
    FILE_UPLOAD = "file_upload"


class Exam(Base):
    """Exams created by teachers. There is no update path once created."""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    exam_code = Column(String(6), unique=True, index=True, nullable=False)  # upper-case
    start_time = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    questions = relationship(
        "Question",
        back_populates="exam",
        order_by="Question.sort_order",
        cascade="all, delete-orphan",
    )
    sessions = relationship("StudentExamSession", back_populates="exam")


class Question(Base):
    """A single question belonging to exactly one exam"""
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    type = Column(SQLEnum(QuestionType), nullable=False)
    options = Column(JSON, nullable=True)  # [{"text": "...", "is_correct": bool}, ...]
    teacher_attachment_url = Column(String, nullable=True)
    teacher_attachment_filename = Column(String, nullable=True)
    points = Column(Integer, nullable=False, default=10)
    sort_order = Column(Integer, nullable=False)

    # Relationships
    exam = relationship("Exam", back_populates="questions")
