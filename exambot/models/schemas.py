from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class _CatalogModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ExamDef(_CatalogModel):
    exam_id: str
    allow_retake: bool
    time_per_question: int
    category_name: str
    question_count: int
    commit_token: Optional[str] = None


class CategoryDef(_CatalogModel):
    name: str
    display_order: Optional[int] = None


class QuizResult(BaseModel):
    attempt_id: str
    user_id: str
    user_name: str = ""
    exam_id: str
    score: int
    total: int
    finished_at: Optional[datetime] = None


class BulkReport(BaseModel):
    """Outcome of one bulk question submission during authoring."""
    accepted: int
    rejected: int
    total: int
