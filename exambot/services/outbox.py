"""
What the state machines need from the push transport.

Rendering is limited to text, inline choice keyboards built from typed actions,
and quiz questions with a known correct option.
"""
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from exambot.models.events import BaseAction


@dataclass(frozen=True)
class Button:
    text: str
    action: BaseAction


Keyboard = List[List[Button]]


@dataclass(frozen=True)
class QuestionPrompt:
    number: int
    text: str
    options: Sequence[str]
    correct_option_index: int
    # Seconds the question stays open; None for untimed quizzes
    open_period: Optional[int] = None


class Outbox(Protocol):
    async def show(
        self,
        chat_id: str,
        text: str,
        keyboard: Optional[Keyboard] = None,
        *,
        message_id: Optional[int] = None,
        markdown: bool = False,
    ) -> Optional[int]:
        """Send ``text``, or replace the message ``message_id`` in place when given."""
        ...

    async def send_question(self, chat_id: str, prompt: QuestionPrompt) -> Optional[str]: ...

    async def answer_choice(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> None: ...
