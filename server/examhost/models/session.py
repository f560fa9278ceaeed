from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from examhost.database import Base
import enum


class SessionStatus(str, enum.Enum):
    STARTED = "started"
    SUBMITTED = "submitted"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.STARTED


class StudentExamSession(Base):
    """One student's single attempt at one exam"""
    __tablename__ = "student_exam_sessions"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_identifier", name="uq_session_exam_student"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    student_identifier = Column(String, nullable=False)
    status = Column(SQLEnum(SessionStatus), nullable=False, default=SessionStatus.STARTED)
    join_time = Column(DateTime(timezone=True), nullable=False)  # deadline anchor, set once

    # Relationships
    exam = relationship("Exam", back_populates="sessions")
    submissions = relationship("Submission", back_populates="session")


class Submission(Base):
    """One answer row per (session, question), written on final submission only"""
    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_submission_session_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("student_exam_sessions.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    answer_text = Column(Text, nullable=True)
    selected_option_index = Column(Integer, nullable=True)
    answer_file_url = Column(String, nullable=True)
    answer_file_filename = Column(String, nullable=True)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    session = relationship("StudentExamSession", back_populates="submissions")
