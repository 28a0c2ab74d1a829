from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import fakeredis
import pytest

from exambot.api.deps import build_services
from exambot.core.config import Settings
from exambot.core.database import build_engine, build_sessionmaker, close_db, init_db
from exambot.models.events import BaseAction
from exambot.models.schemas import ExamDef
from exambot.models.session import QuestionSpec
from exambot.services.catalog import Catalog
from exambot.services.outbox import Keyboard, QuestionPrompt
from exambot.services.session_store import MemorySessionStore, RedisSessionStore

OPERATOR_ID = "1000"
STUDENT_ID = "2000"


@dataclass
class Shown:
    chat_id: str
    text: str
    keyboard: Keyboard = field(default_factory=list)
    message_id: Optional[int] = None

    @property
    def actions(self) -> List[BaseAction]:
        return [button.action for row in self.keyboard for button in row]


class RecordingOutbox:
    """Outbox that keeps everything it was asked to deliver."""

    def __init__(self):
        self.shown: List[Shown] = []
        self.questions: List[tuple] = []
        self.choice_answers: List[tuple] = []
        self._next_message_id = 100

    async def show(self, chat_id, text, keyboard=None, *, message_id=None, markdown=False):
        self.shown.append(Shown(chat_id, text, keyboard or [], message_id))
        if message_id is not None:
            return message_id
        self._next_message_id += 1
        return self._next_message_id

    async def send_question(self, chat_id: str, prompt: QuestionPrompt):
        self.questions.append((chat_id, prompt))
        return f"poll-{len(self.questions)}"

    async def answer_choice(self, callback_id, text=None, alert=False):
        self.choice_answers.append((callback_id, text, alert))

    def to(self, chat_id: str) -> List[Shown]:
        return [m for m in self.shown if m.chat_id == chat_id]

    def last(self, chat_id: str) -> Shown:
        return self.to(chat_id)[-1]

    def questions_to(self, chat_id: str) -> List[QuestionPrompt]:
        return [p for c, p in self.questions if c == chat_id]


class ManualClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_questions() -> List[QuestionSpec]:
    return [
        QuestionSpec(question_text="2+2?", options=["3", "4", "5"], correct_option_index=1),
        QuestionSpec(question_text="3+3?", options=["6", "7"], correct_option_index=0),
        QuestionSpec(question_text="5+5?", options=["9", "10", "11"], correct_option_index=1),
    ]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        TELEGRAM_BOT_TOKEN="test-token",
        ADMIN_ID=OPERATOR_ID,
        DATABASE_URL="sqlite+aiosqlite://",
        SESSION_BACKEND="memory",
        PAGE_SIZE=2,
    )


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture(params=["memory", "redis"])
async def store(request, redis_client):
    if request.param == "memory":
        return MemorySessionStore()
    return RedisSessionStore(redis_client, prefix="test", ttl=3600)


@pytest.fixture
async def sessions(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await init_db(engine)
    yield build_sessionmaker(engine)
    await close_db(engine)


@pytest.fixture
def catalog(sessions) -> Catalog:
    return Catalog(sessions)


@pytest.fixture
def outbox() -> RecordingOutbox:
    return RecordingOutbox()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def services(settings, store, sessions, outbox, clock):
    return build_services(settings, store, sessions, outbox, clock=clock)


@pytest.fixture
def make_exam(catalog):
    async def _make(
        exam_id: str = "math101",
        *,
        time_per_question: int = 0,
        allow_retake: bool = True,
        category_name: str = "Math",
        questions: Optional[Sequence[QuestionSpec]] = None,
    ) -> ExamDef:
        questions = make_questions() if questions is None else list(questions)
        exam = ExamDef(
            exam_id=exam_id,
            allow_retake=allow_retake,
            time_per_question=time_per_question,
            category_name=category_name,
            question_count=len(questions),
        )
        return await catalog.create_exam_with_questions(exam, questions)

    return _make
