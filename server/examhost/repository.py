"""
Persistence access for exams, questions, sessions and submissions.

Keyed reads, an explicit read-then-insert for sessions, a batch insert for
answers and targeted updates. Callers decide when to commit.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from examhost.models import Exam, Question, SessionStatus, StudentExamSession, Submission

logger = logging.getLogger(__name__)


class ExamRepository:
    def __init__(self, db: Session):
        self.db = db

    # --- Exams & questions ---

    def get_exam_by_code(self, exam_code: str) -> Optional[Exam]:
        return self.db.scalar(select(Exam).where(Exam.exam_code == exam_code))

    def exam_code_exists(self, exam_code: str) -> bool:
        return self.db.scalar(select(Exam.id).where(Exam.exam_code == exam_code)) is not None

    def add_exam(self, exam: Exam) -> Exam:
        self.db.add(exam)
        self.db.flush()  # assigns exam.id
        return exam

    def add_questions(self, questions: Iterable[Question]) -> List[Question]:
        questions = list(questions)
        self.db.add_all(questions)
        self.db.flush()
        return questions

    def list_questions(self, exam_id: int) -> List[Question]:
        return list(
            self.db.scalars(
                select(Question).where(Question.exam_id == exam_id).order_by(Question.sort_order, Question.id)
            )
        )

    # --- Sessions ---

    def get_session(self, exam_id: int, student_identifier: str) -> Optional[StudentExamSession]:
        return self.db.scalar(
            select(StudentExamSession).where(
                StudentExamSession.exam_id == exam_id,
                StudentExamSession.student_identifier == student_identifier,
            )
        )

    def get_session_by_id(self, session_id: int) -> Optional[StudentExamSession]:
        return self.db.get(StudentExamSession, session_id)

    def create_session(self, exam_id: int, student_identifier: str, join_time: datetime) -> StudentExamSession:
        """Insert a started session. Raises IntegrityError if the pair already exists."""
        session = StudentExamSession(
            exam_id=exam_id,
            student_identifier=student_identifier,
            status=SessionStatus.STARTED,
            join_time=join_time,
        )
        self.db.add(session)
        self.db.flush()
        return session

    def get_session_status(self, session_id: int) -> Optional[SessionStatus]:
        """Status as stored right now, bypassing any loaded instance."""
        return self.db.scalar(select(StudentExamSession.status).where(StudentExamSession.id == session_id))

    def mark_session_terminal(self, session_id: int, status: SessionStatus) -> bool:
        """Move a started session to a terminal status. False if it was no longer started."""
        result = self.db.execute(
            update(StudentExamSession)
            .where(StudentExamSession.id == session_id, StudentExamSession.status == SessionStatus.STARTED)
            .values(status=status)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    # --- Submissions ---

    def insert_submissions(self, rows: List[Dict]) -> List[Submission]:
        submissions = [Submission(**row) for row in rows]
        self.db.add_all(submissions)
        self.db.flush()
        return submissions

    def update_submission_file(self, session_id: int, question_id: int, url: str, filename: str) -> None:
        self.db.execute(
            update(Submission)
            .where(Submission.session_id == session_id, Submission.question_id == question_id)
            .values(answer_file_url=url, answer_file_filename=filename)
            .execution_options(synchronize_session="fetch")
        )

    def has_submissions(self, session_id: int) -> bool:
        return self.db.scalar(select(Submission.id).where(Submission.session_id == session_id).limit(1)) is not None

    def list_submissions(self, session_id: int) -> List[Submission]:
        return list(
            self.db.scalars(select(Submission).where(Submission.session_id == session_id).order_by(Submission.id))
        )

    # --- Transactions ---

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
