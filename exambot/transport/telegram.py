"""
Telegram Bot API transport: outbound calls over httpx and update parsing.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from exambot.core.errors import ExamBotError
from exambot.models.events import (
    AnswerSubmitted,
    ChoiceEvent,
    Command,
    InboundEvent,
    TextMessage,
    decode_action,
    encode_action,
)
from exambot.services.outbox import Keyboard, QuestionPrompt

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query", "poll_answer"]


class TelegramError(ExamBotError):
    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        super().__init__(f"{method} failed: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code


def render_keyboard(keyboard: Keyboard) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": button.text, "callback_data": encode_action(button.action)} for button in row]
            for row in keyboard
        ]
    }


class TelegramOutbox:
    def __init__(self, token: str, client: httpx.AsyncClient, base_url: str = "https://api.telegram.org"):
        self._token = token
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/bot{self._token}/{method}"
        try:
            response = await self.client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TelegramError(method, str(exc)) from exc
        try:
            data = response.json()
        except ValueError:
            raise TelegramError(method, f"HTTP {response.status_code}", response.status_code) from None
        if not data.get("ok"):
            raise TelegramError(method, data.get("description", ""), data.get("error_code"))
        return data.get("result")

    async def show(
        self,
        chat_id: str,
        text: str,
        keyboard: Optional[Keyboard] = None,
        *,
        message_id: Optional[int] = None,
        markdown: bool = False,
    ) -> Optional[int]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if keyboard:
            payload["reply_markup"] = render_keyboard(keyboard)
        if markdown:
            payload["parse_mode"] = "Markdown"

        if message_id is not None:
            try:
                await self._call("editMessageText", {**payload, "message_id": message_id})
                return message_id
            except TelegramError as exc:
                if "message is not modified" in exc.description:
                    return message_id
                logger.warning(f"Editing message {message_id} in chat {chat_id} failed, sending instead: {exc}")

        result = await self._call("sendMessage", payload)
        return result.get("message_id") if result else None

    async def send_question(self, chat_id: str, prompt: QuestionPrompt) -> Optional[str]:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "question": f"Question {prompt.number}:\n\n{prompt.text}",
            "options": [{"text": option} for option in prompt.options],
            "is_anonymous": False,
            "type": "quiz",
            "correct_option_id": prompt.correct_option_index,
        }
        if prompt.open_period:
            payload["open_period"] = prompt.open_period
        result = await self._call("sendPoll", payload)
        poll = (result or {}).get("poll") or {}
        return poll.get("id")

    async def answer_choice(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_id, "show_alert": alert}
        if text:
            payload["text"] = text
        try:
            await self._call("answerCallbackQuery", payload)
        except TelegramError as exc:
            # Expired callback ids are routine after redelivery
            logger.warning(f"answerCallbackQuery failed: {exc}")

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"url": url, "allowed_updates": ALLOWED_UPDATES}
        if secret_token:
            payload["secret_token"] = secret_token
        await self._call("setWebhook", payload)
        logger.info(f"Webhook set to {url}")


def _sender(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": str(user["id"]),
        "username": user.get("username"),
        "first_name": user.get("first_name"),
    }


def parse_update(update: Dict[str, Any]) -> Optional[InboundEvent]:
    """Turn a raw update into a typed event; None for updates the bot does not handle.

    Raises ``UnsupportedEvent`` for callback data that names no known action.
    """
    event_id = str(update["update_id"]) if "update_id" in update else None

    message = update.get("message")
    if message is not None:
        text = message.get("text")
        if text is None or "from" not in message:
            return None
        sender = _sender(message["from"])
        if text.startswith("/"):
            head, _, args = text[1:].partition(" ")
            name = head.split("@", 1)[0].lower()
            return Command(name=name, args=args.strip(), event_id=event_id, **sender)
        return TextMessage(text=text, event_id=event_id, **sender)

    callback = update.get("callback_query")
    if callback is not None:
        action = decode_action(callback.get("data", ""))
        return ChoiceEvent(
            action=action,
            message_id=(callback.get("message") or {}).get("message_id"),
            callback_id=callback.get("id"),
            event_id=event_id,
            **_sender(callback["from"]),
        )

    poll_answer = update.get("poll_answer")
    if poll_answer is not None and "user" in poll_answer:
        option_ids = poll_answer.get("option_ids") or []
        return AnswerSubmitted(
            option_index=option_ids[0] if option_ids else None,
            event_id=event_id,
            **_sender(poll_answer["user"]),
        )

    return None
