"""
Exam catalog backed by SQLAlchemy.

An exam and its questions are written in a single transaction, so readers see
either the whole exam or nothing.  Connection failures surface as
``StoreUnavailable``.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from exambot.core.errors import DuplicateExamName, StoreUnavailable
from exambot.models.orm import UNCATEGORIZED, Category, Exam, Question, Result, User
from exambot.models.schemas import CategoryDef, ExamDef, QuizResult
from exambot.models.session import QuestionSpec

logger = logging.getLogger(__name__)

# Categories without a display order sort after every ordered one
UNORDERED_POSITION = 999


class Catalog:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as db:
                yield db
        except (OperationalError, InterfaceError) as exc:
            logger.error(f"Catalog unavailable: {exc}")
            raise StoreUnavailable(str(exc)) from exc

    # ------------------------------------------------------------------ exams
    async def exam_exists(self, exam_id: str) -> bool:
        async with self._db() as db:
            return await db.get(Exam, exam_id) is not None

    async def get_exam(self, exam_id: str) -> Optional[ExamDef]:
        async with self._db() as db:
            exam = await db.get(Exam, exam_id)
            return ExamDef.model_validate(exam) if exam else None

    async def list_exams(self, category_name: Optional[str] = None) -> List[ExamDef]:
        stmt = select(Exam).order_by(Exam.created_at, Exam.exam_id)
        if category_name is not None:
            stmt = stmt.where(Exam.category_name == category_name)
        async with self._db() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [ExamDef.model_validate(r) for r in rows]

    async def get_exam_questions(self, exam_id: str) -> List[QuestionSpec]:
        stmt = select(Question).where(Question.exam_id == exam_id).order_by(Question.position)
        async with self._db() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [
            QuestionSpec(question_text=q.question_text, options=list(q.options), correct_option_index=q.correct_option_index)
            for q in rows
        ]

    async def create_exam_with_questions(
        self,
        exam: ExamDef,
        questions: Sequence[QuestionSpec],
    ) -> ExamDef:
        """Commit the exam row, its questions and a missing category atomically.

        Raises ``DuplicateExamName`` if the id is already taken; nothing is
        written in that case.
        """
        category_name = exam.category_name or UNCATEGORIZED
        # A second pass covers a category created concurrently under the same name
        for _ in range(2):
            async with self._db() as db:
                if await db.get(Category, category_name) is None:
                    # Unordered, so implicit categories list after the curated ones
                    db.add(Category(name=category_name))
                row = Exam(
                    exam_id=exam.exam_id,
                    allow_retake=exam.allow_retake,
                    time_per_question=exam.time_per_question,
                    category_name=category_name,
                    question_count=len(questions),
                    commit_token=exam.commit_token,
                )
                db.add(row)
                for position, q in enumerate(questions, start=1):
                    db.add(Question(
                        exam_id=exam.exam_id,
                        position=position,
                        question_text=q.question_text,
                        options=list(q.options),
                        correct_option_index=q.correct_option_index,
                    ))
                try:
                    await db.commit()
                except IntegrityError as exc:
                    await db.rollback()
                    if await db.get(Exam, exam.exam_id) is not None:
                        raise DuplicateExamName(exam.exam_id) from exc
                    logger.info(f"Category {category_name} appeared during commit of {exam.exam_id}; retrying")
                    continue
                logger.info(f"Exam {exam.exam_id} created with {len(questions)} questions")
                return ExamDef.model_validate(row)
        raise DuplicateExamName(exam.exam_id)

    # ------------------------------------------------------------------ categories
    async def list_categories(self) -> List[CategoryDef]:
        async with self._db() as db:
            rows = (await db.execute(select(Category))).scalars().all()
        ordered = sorted(rows, key=lambda c: (c.display_order if c.display_order is not None else UNORDERED_POSITION, c.name))
        return [CategoryDef.model_validate(c) for c in ordered]

    async def add_category(self, name: str, display_order: Optional[int] = None) -> CategoryDef:
        """Create a category, or return the existing one with that name."""
        async with self._db() as db:
            existing = await db.get(Category, name)
            if existing is not None:
                return CategoryDef.model_validate(existing)
            if display_order is None:
                current = await db.scalar(select(func.max(Category.display_order)))
                display_order = (current or 0) + 1
            row = Category(name=name, display_order=display_order)
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Created concurrently under the same name
                await db.rollback()
                existing = await db.get(Category, name)
                return CategoryDef.model_validate(existing)
            return CategoryDef.model_validate(row)

    # ------------------------------------------------------------------ users
    async def register_user(self, user_id: str, username: Optional[str], first_name: Optional[str]) -> bool:
        """Record a first contact; returns True only for a user not seen before."""
        async with self._db() as db:
            if await db.get(User, user_id) is not None:
                return False
            db.add(User(user_id=user_id, username=username or "", first_name=first_name))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True

    async def count_users(self) -> int:
        async with self._db() as db:
            return int(await db.scalar(select(func.count()).select_from(User)) or 0)

    # ------------------------------------------------------------------ results
    async def record_result(self, result: QuizResult) -> bool:
        """Store a finished attempt once; replays of the same attempt are ignored."""
        async with self._db() as db:
            if await db.get(Result, result.attempt_id) is not None:
                return False
            db.add(Result(
                attempt_id=result.attempt_id,
                user_id=result.user_id,
                user_name=result.user_name,
                exam_id=result.exam_id,
                score=result.score,
                total=result.total,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
            return True

    async def has_result(self, user_id: str, exam_id: str) -> bool:
        stmt = select(Result.attempt_id).where(Result.user_id == user_id, Result.exam_id == exam_id).limit(1)
        async with self._db() as db:
            return (await db.scalar(stmt)) is not None
