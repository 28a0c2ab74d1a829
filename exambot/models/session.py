"""
Per-user session record and its stage-indexed payloads.

A session is owned by exactly one state machine at a time: the authoring
stages carry a ``DraftExam`` payload and the quiz stage carries a
``QuizProgress`` payload.  The pairing is enforced on construction, so a handler
for one stage never sees the other machine's fields.
"""
import enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class Stage(str, enum.Enum):
    AWAITING_EXAM_NAME = "awaiting_exam_name"
    AWAITING_RETAKE_CHOICE = "awaiting_retake_choice"
    AWAITING_TIME_CHOICE = "awaiting_time_choice"
    AWAITING_TIME_PER_QUESTION = "awaiting_time_per_question"
    SELECTING_CATEGORY = "selecting_category"
    AWAITING_QUESTIONS = "awaiting_questions"
    TAKING_EXAM = "taking_exam"


AUTHORING_STAGES = frozenset({
    Stage.AWAITING_EXAM_NAME,
    Stage.AWAITING_RETAKE_CHOICE,
    Stage.AWAITING_TIME_CHOICE,
    Stage.AWAITING_TIME_PER_QUESTION,
    Stage.SELECTING_CATEGORY,
    Stage.AWAITING_QUESTIONS,
})


class QuestionSpec(BaseModel):
    question_text: str
    options: List[str] = Field(min_length=2, max_length=10)
    correct_option_index: int = Field(ge=0)

    @model_validator(mode="after")
    def _correct_option_in_range(self) -> "QuestionSpec":
        if self.correct_option_index >= len(self.options):
            raise ValueError("correct_option_index out of range")
        return self


class DraftExam(BaseModel):
    """Exam under construction, accumulated across the authoring stages."""

    kind: Literal["draft"] = "draft"
    exam_id: Optional[str] = None
    allow_retake: bool = False
    time_per_question: int = Field(default=0, ge=0)
    category_name: Optional[str] = None
    questions: List[QuestionSpec] = Field(default_factory=list)
    # Write-ahead marker: set before the catalog commit, cleared with the session
    committing: bool = False
    commit_token: Optional[str] = None
    # Name clashed at commit; waiting for a new one before committing again
    renaming: bool = False


class QuizProgress(BaseModel):
    """Quiz in progress, with the question set snapshotted at start."""

    kind: Literal["quiz"] = "quiz"
    attempt_id: str
    exam_id: str
    user_name: str = ""
    questions: List[QuestionSpec] = Field(min_length=1)
    current_index: int = Field(default=0, ge=0)
    score: int = Field(default=0, ge=0)
    time_per_question: int = Field(default=0, ge=0)
    last_question_at: Optional[float] = None
    answered: bool = False
    # Set once the current question reached the user
    dispatched: bool = False

    @model_validator(mode="after")
    def _index_in_range(self) -> "QuizProgress":
        if self.current_index > len(self.questions):
            raise ValueError("current_index past the end of the question list")
        return self

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def is_complete(self) -> bool:
        return self.current_index == len(self.questions)

    @property
    def is_timed(self) -> bool:
        return self.time_per_question > 0

    @property
    def current_question(self) -> Optional[QuestionSpec]:
        if self.is_complete:
            return None
        return self.questions[self.current_index]


SessionPayload = Annotated[Union[DraftExam, QuizProgress], Field(discriminator="kind")]


class SessionRecord(BaseModel):
    stage: Stage
    payload: SessionPayload
    revision: int = 0

    @model_validator(mode="after")
    def _payload_matches_stage(self) -> "SessionRecord":
        expected = "quiz" if self.stage is Stage.TAKING_EXAM else "draft"
        if self.payload.kind != expected:
            raise ValueError(f"stage {self.stage.value} cannot carry a {self.payload.kind} payload")
        return self

    @property
    def is_authoring(self) -> bool:
        return self.stage in AUTHORING_STAGES

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "SessionRecord":
        return cls.model_validate_json(raw)
