"""
Inbound event dispatch.

Each event is routed on its variant and, for stage-bound choices and free text,
on the stage of the sender's stored session.  Choices a stage does not accept
are rejected with a notice instead of falling through.
"""
import logging
from typing import Dict, Optional, Tuple, Type

from exambot.core.config import Settings
from exambot.core.errors import EmptyExam, EmptyQuestionSet, ExamNotFound, RetakeNotAllowed
from exambot.models.events import (
    AnswerSubmitted,
    BackToMain,
    BaseAction,
    ChoiceEvent,
    Command,
    ConfirmStartExam,
    FinishQuestions,
    InboundEvent,
    ListCategories,
    ListExamsInCategory,
    Noop,
    OpenAdminPanel,
    OpenStudentPanel,
    SelectCategory,
    SetRetake,
    SetTime,
    ShowExam,
    StartAddExam,
    TextMessage,
)
from exambot.models.session import SessionRecord, Stage
from exambot.services.authoring import AuthoringMachine
from exambot.services.catalog import Catalog
from exambot.services.menus import Menus
from exambot.services.outbox import Outbox
from exambot.services.quiz import QuizMachine
from exambot.services.session_store import SessionStore

logger = logging.getLogger(__name__)

# Choices that only make sense at one step of a flow
STAGE_ACTIONS: Dict[Stage, Tuple[Type[BaseAction], ...]] = {
    Stage.AWAITING_RETAKE_CHOICE: (SetRetake,),
    Stage.AWAITING_TIME_CHOICE: (SetTime,),
    Stage.SELECTING_CATEGORY: (SelectCategory,),
    Stage.AWAITING_QUESTIONS: (FinishQuestions,),
}

# Choices accepted in any stage
NAVIGATION_ACTIONS: Tuple[Type[BaseAction], ...] = (
    BackToMain,
    OpenAdminPanel,
    OpenStudentPanel,
    StartAddExam,
    ListCategories,
    ListExamsInCategory,
    ShowExam,
    ConfirmStartExam,
    Noop,
)

NOT_AVAILABLE = "⚠️ This option is no longer available."
ADMINS_ONLY = "⛔ This option is for the admin only."


class EventRouter:
    def __init__(
        self,
        store: SessionStore,
        catalog: Catalog,
        outbox: Outbox,
        authoring: AuthoringMachine,
        quiz: QuizMachine,
        menus: Menus,
        settings: Settings,
    ):
        self.store = store
        self.catalog = catalog
        self.outbox = outbox
        self.authoring = authoring
        self.quiz = quiz
        self.menus = menus
        self.settings = settings
        self._text_handlers = {
            Stage.AWAITING_EXAM_NAME: authoring.submit_name,
            Stage.AWAITING_TIME_PER_QUESTION: authoring.submit_time,
            Stage.SELECTING_CATEGORY: authoring.submit_category_name,
            Stage.AWAITING_QUESTIONS: authoring.add_questions,
        }

    async def dispatch(self, event: InboundEvent) -> None:
        """Handle one inbound event; a redelivered event id is dropped.

        ``StoreUnavailable`` propagates after the event id is released so the
        channel's redelivery is processed.
        """
        claimed = False
        if event.event_id is not None:
            if not await self.store.claim_event(event.event_id, self.settings.EVENT_DEDUP_TTL):
                logger.info(f"Dropping redelivered event {event.event_id}")
                return
            claimed = True
        try:
            if isinstance(event, Command):
                await self._on_command(event)
            elif isinstance(event, TextMessage):
                await self._on_text(event)
            elif isinstance(event, ChoiceEvent):
                await self._on_choice(event)
            elif isinstance(event, AnswerSubmitted):
                await self._on_answer(event)
        except Exception:
            if claimed:
                await self.store.release_event(event.event_id)
            raise

    async def _session(self, user_id: str) -> Optional[SessionRecord]:
        record = await self.store.get(user_id)
        if record is not None and record.is_authoring and record.payload.committing:
            await self.authoring.recover(user_id, record)
            record = await self.store.get(user_id)
        return record

    async def _reset(self, user_id: str) -> None:
        await self._session(user_id)
        await self.store.delete(user_id)

    # ------------------------------------------------------------------ commands
    async def _on_command(self, event: Command) -> None:
        user_id = event.user_id
        if event.name == "start":
            if await self.catalog.register_user(user_id, event.username, event.first_name):
                await self._notify_new_user(event)
            await self._reset(user_id)
            await self.menus.main(user_id)
        elif event.name == "usercount":
            if not self.settings.is_operator(user_id):
                logger.info(f"Ignoring /usercount from non-operator {user_id}")
                return
            total = await self.catalog.count_users()
            await self.outbox.show(user_id, f"📊 Total users: {total}")
        else:
            logger.debug(f"Unknown command /{event.name} from {user_id}")

    async def _notify_new_user(self, event: Command) -> None:
        if not self.settings.ADMIN_ID or self.settings.is_operator(event.user_id):
            return
        total = await self.catalog.count_users()
        await self.outbox.show(
            self.settings.ADMIN_ID,
            f"👤 New user: {event.display_name} (id {event.user_id})\nTotal users: {total}",
        )

    # ------------------------------------------------------------------ free text
    async def _on_text(self, event: TextMessage) -> None:
        record = await self._session(event.user_id)
        if record is None:
            return
        if record.is_authoring and record.payload.renaming:
            if await self.authoring.rename(event.user_id, event.text) is not None:
                await self.menus.admin(event.user_id)
            return
        handler = self._text_handlers.get(record.stage)
        if handler is None:
            await self.outbox.show(event.user_id, "Please use the buttons to continue.")
            return
        await handler(event.user_id, event.text)

    # ------------------------------------------------------------------ choices
    async def _on_choice(self, event: ChoiceEvent) -> None:
        notice = await self._on_action(event)
        if event.callback_id:
            await self.outbox.answer_choice(event.callback_id, notice, alert=notice is not None)

    async def _on_action(self, event: ChoiceEvent) -> Optional[str]:
        user_id, action, message_id = event.user_id, event.action, event.message_id
        record = await self._session(user_id)

        if isinstance(action, NAVIGATION_ACTIONS):
            return await self._navigate(event)

        stage = record.stage if record is not None else None
        if not isinstance(action, STAGE_ACTIONS.get(stage, ())):
            logger.info(f"Rejecting {action.action} from {user_id} in stage {stage}")
            return NOT_AVAILABLE

        if isinstance(action, SetRetake):
            await self.authoring.choose_retake(user_id, action.allow, message_id)
        elif isinstance(action, SetTime):
            await self.authoring.choose_time(user_id, action.wants_time, message_id)
        elif isinstance(action, SelectCategory):
            await self.authoring.select_category(user_id, action.category_name, message_id)
        elif isinstance(action, FinishQuestions):
            try:
                committed = await self.authoring.finish(user_id) is not None
            except EmptyQuestionSet:
                committed = True
            # A name clash sends the operator back to naming instead
            if committed:
                await self.menus.admin(user_id)
        return None

    async def _navigate(self, event: ChoiceEvent) -> Optional[str]:
        user_id, action, message_id = event.user_id, event.action, event.message_id

        if isinstance(action, BackToMain):
            await self._reset(user_id)
            await self.menus.main(user_id, message_id)
        elif isinstance(action, OpenAdminPanel):
            if not self.settings.is_operator(user_id):
                return ADMINS_ONLY
            await self._reset(user_id)
            await self.menus.admin(user_id, message_id)
        elif isinstance(action, OpenStudentPanel):
            await self._reset(user_id)
            await self.menus.student(user_id, message_id)
        elif isinstance(action, StartAddExam):
            if not self.settings.is_operator(user_id):
                return ADMINS_ONLY
            await self.authoring.start(user_id)
        elif isinstance(action, ListCategories):
            await self.menus.categories(user_id, message_id)
        elif isinstance(action, ListExamsInCategory):
            await self.menus.exams(user_id, action.category_name, action.page, message_id)
        elif isinstance(action, ShowExam):
            if not await self.menus.exam_confirmation(user_id, action.exam_id, message_id):
                return NOT_AVAILABLE
        elif isinstance(action, ConfirmStartExam):
            try:
                await self.quiz.start(user_id, action.exam_id, event.display_name, message_id)
            except ExamNotFound:
                return NOT_AVAILABLE
            except EmptyExam:
                return "⚠️ Sorry, this exam has no questions yet."
            except RetakeNotAllowed:
                return "🔁 You have already taken this exam and it cannot be retaken."
        return None

    # ------------------------------------------------------------------ answers
    async def _on_answer(self, event: AnswerSubmitted) -> None:
        if event.option_index is None:
            return
        await self.quiz.submit_answer(event.user_id, event.option_index)
