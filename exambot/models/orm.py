from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exambot.core.database import Base

UNCATEGORIZED = "Uncategorized"

# ========== Catalog Models ==========

class Category(Base):
    __tablename__ = "categories"
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    # Presentation only; categories without an order sort last
    display_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Exam(Base):
    __tablename__ = "exams"
    __table_args__ = (
        Index("idx_exams_category", "category_name"),
    )

    exam_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    allow_retake: Mapped[bool] = mapped_column(Boolean, default=False)
    time_per_question: Mapped[int] = mapped_column(Integer, default=0)
    category_name: Mapped[str] = mapped_column(String(255), default=UNCATEGORIZED)
    question_count: Mapped[int] = mapped_column(Integer, default=0)
    # Written by the authoring flow so a replayed commit can recognise its own exam
    commit_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    questions: Mapped[List["Question"]] = relationship(
        back_populates="exam", order_by="Question.position", cascade="all, delete-orphan"
    )


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint("exam_id", "position", name="uq_questions_exam_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exam_id: Mapped[str] = mapped_column(String(255), ForeignKey("exams.exam_id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list] = mapped_column(JSON, nullable=False)
    correct_option_index: Mapped[int] = mapped_column(Integer, nullable=False)

    exam: Mapped[Exam] = relationship(back_populates="questions")

# ========== Audience Models ==========

class User(Base):
    __tablename__ = "users"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), default="")
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class Result(Base):
    __tablename__ = "results"
    __table_args__ = (
        Index("idx_results_user_exam", "user_id", "exam_id"),
    )

    # One row per quiz attempt; the attempt id makes recording idempotent
    attempt_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), default="")
    exam_id: Mapped[str] = mapped_column(String(255), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
