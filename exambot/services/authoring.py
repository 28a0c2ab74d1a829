"""
Exam authoring wizard.

Stages run strictly forward::

    awaiting_exam_name -> awaiting_retake_choice -> awaiting_time_choice
        -> [awaiting_time_per_question] -> selecting_category
        -> awaiting_questions -> (finish)

Every step is a guarded transition on the stored stage, so a redelivered or
out-of-order event for an earlier step is a no-op.  Finishing writes a
write-ahead marker into the session before committing to the catalog; a session
found with the marker is recovered by ``recover``.  If the name was taken in
the meantime the draft stays in awaiting_questions and only a new name is asked
for (``rename``), which commits again.
"""
import logging
from typing import Optional
from uuid import uuid4

from exambot.core.errors import DuplicateExamName, EmptyQuestionSet
from exambot.models.events import FinishQuestions, SelectCategory, SetRetake, SetTime
from exambot.models.orm import UNCATEGORIZED
from exambot.models.schemas import BulkReport, ExamDef
from exambot.models.session import DraftExam, SessionRecord, Stage
from exambot.services.catalog import Catalog
from exambot.services.codec import parse_bulk_questions
from exambot.services.outbox import Button, Outbox
from exambot.services.session_store import DELETE, SessionStore

logger = logging.getLogger(__name__)

# Exam and category names travel inside 64-byte choice payloads
MAX_NAME_BYTES = 36
# Range accepted by the transport for a question's open period
MIN_SECONDS_PER_QUESTION = 5
MAX_SECONDS_PER_QUESTION = 600

QUESTION_FORMAT_HELP = (
    "Send the questions in this format:\n"
    "question text\n"
    "option 1\n"
    "option 2\n"
    "...\n"
    "number of the correct option\n\n"
    "Separate questions with a line containing ---. "
    "You can send several messages."
)


def _valid_name(name: str) -> bool:
    return bool(name) and len(name.encode("utf-8")) <= MAX_NAME_BYTES and ":" not in name


class AuthoringMachine:
    def __init__(self, store: SessionStore, catalog: Catalog, outbox: Outbox):
        self.store = store
        self.catalog = catalog
        self.outbox = outbox

    async def _step(self, user_id: str, expected: Stage, next_stage: Stage, **changes) -> Optional[SessionRecord]:
        """Move from ``expected`` to ``next_stage``, or do nothing if the session is elsewhere."""

        def mutate(before: Optional[SessionRecord]):
            if before is None or before.stage is not expected or before.payload.committing:
                return None
            return SessionRecord(stage=next_stage, payload=before.payload.model_copy(update=changes))

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            logger.debug(f"Ignoring {expected.value} step for {user_id}: session is not in that stage")
            return None
        return transition.after

    # ------------------------------------------------------------------ stages
    async def start(self, user_id: str) -> None:
        # Replaces whatever session the user had
        await self.store.put(user_id, SessionRecord(stage=Stage.AWAITING_EXAM_NAME, payload=DraftExam()))
        await self.outbox.show(
            user_id,
            "📝 Let's add a new exam.\n\nPlease send the *exam name* (it must be unique).",
            markdown=True,
        )

    async def _name_available(self, user_id: str, exam_id: str) -> bool:
        if not _valid_name(exam_id):
            await self.outbox.show(
                user_id, f"⚠️ Exam names must be non-empty, without ':', and at most {MAX_NAME_BYTES} bytes long."
            )
            return False
        if await self.catalog.exam_exists(exam_id):
            await self.outbox.show(user_id, "⚠️ This exam name is already taken. Please choose another one.")
            return False
        return True

    async def submit_name(self, user_id: str, text: str) -> bool:
        exam_id = text.strip()
        if not await self._name_available(user_id, exam_id):
            return False
        if await self._step(user_id, Stage.AWAITING_EXAM_NAME, Stage.AWAITING_RETAKE_CHOICE, exam_id=exam_id) is None:
            return False
        await self.outbox.show(
            user_id,
            "🔁 Can students retake this exam?",
            [
                [Button("✅ Yes, allow retakes", SetRetake(allow=True))],
                [Button("❌ No, one attempt only", SetRetake(allow=False))],
            ],
        )
        return True

    async def choose_retake(self, user_id: str, allow: bool, message_id: Optional[int] = None) -> bool:
        if await self._step(user_id, Stage.AWAITING_RETAKE_CHOICE, Stage.AWAITING_TIME_CHOICE, allow_retake=allow) is None:
            return False
        await self.outbox.show(
            user_id,
            "⏰ Do you want a time limit for each question?",
            [
                [Button("⏱️ Yes, set a time limit", SetTime(wants_time=True))],
                [Button("♾️ No, untimed", SetTime(wants_time=False))],
            ],
            message_id=message_id,
        )
        return True

    async def choose_time(self, user_id: str, wants_time: bool, message_id: Optional[int] = None) -> bool:
        if wants_time:
            if await self._step(user_id, Stage.AWAITING_TIME_CHOICE, Stage.AWAITING_TIME_PER_QUESTION) is None:
                return False
            await self.outbox.show(
                user_id,
                "⏱️ Great. Send the number of seconds allowed per question (for example: 30).",
                message_id=message_id,
            )
            return True
        if await self._step(user_id, Stage.AWAITING_TIME_CHOICE, Stage.SELECTING_CATEGORY, time_per_question=0) is None:
            return False
        await self._prompt_category(user_id, message_id)
        return True

    async def submit_time(self, user_id: str, text: str) -> bool:
        try:
            seconds = int(text.strip())
        except ValueError:
            seconds = -1
        if not MIN_SECONDS_PER_QUESTION <= seconds <= MAX_SECONDS_PER_QUESTION:
            await self.outbox.show(
                user_id,
                f"⚠️ Please send a whole number of seconds between {MIN_SECONDS_PER_QUESTION} and {MAX_SECONDS_PER_QUESTION}.",
            )
            return False
        if await self._step(
            user_id, Stage.AWAITING_TIME_PER_QUESTION, Stage.SELECTING_CATEGORY, time_per_question=seconds
        ) is None:
            return False
        await self._prompt_category(user_id)
        return True

    async def _prompt_category(self, user_id: str, message_id: Optional[int] = None) -> None:
        categories = await self.catalog.list_categories()
        keyboard = [
            [Button(c.name, SelectCategory(category_name=c.name))]
            for c in categories
            if c.name != UNCATEGORIZED
        ]
        keyboard.append([Button(f"📁 {UNCATEGORIZED}", SelectCategory(category_name=UNCATEGORIZED))])
        await self.outbox.show(
            user_id,
            "🗂️ Choose a category for this exam, or send the name of a new category.",
            keyboard,
            message_id=message_id,
        )

    async def select_category(self, user_id: str, category_name: str, message_id: Optional[int] = None) -> bool:
        if await self._step(
            user_id, Stage.SELECTING_CATEGORY, Stage.AWAITING_QUESTIONS, category_name=category_name
        ) is None:
            return False
        await self.outbox.show(
            user_id,
            f"🗂️ Category: {category_name}\n\n✍️ {QUESTION_FORMAT_HELP}",
            message_id=message_id,
        )
        return True

    async def submit_category_name(self, user_id: str, text: str) -> bool:
        name = text.strip()
        if not _valid_name(name):
            await self.outbox.show(
                user_id, f"⚠️ Category names must be non-empty, without ':', and at most {MAX_NAME_BYTES} bytes long."
            )
            return False
        category = await self.catalog.add_category(name)
        return await self.select_category(user_id, category.name)

    async def add_questions(self, user_id: str, text: str) -> Optional[BulkReport]:
        """Append every well-formed block to the draft and report the counts back."""
        accepted, rejected = parse_bulk_questions(text)

        def mutate(before: Optional[SessionRecord]):
            if before is None or before.stage is not Stage.AWAITING_QUESTIONS:
                return None
            if before.payload.committing or before.payload.renaming:
                return None
            questions = [*before.payload.questions, *accepted]
            return before.model_copy(update={"payload": before.payload.model_copy(update={"questions": questions})})

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            return None

        report = BulkReport(accepted=len(accepted), rejected=rejected, total=len(transition.after.payload.questions))
        lines = ["Questions processed:"]
        if report.accepted:
            lines.append(f"✅ Added: {report.accepted}")
        if report.rejected:
            lines.append(f"⚠️ Rejected: {report.rejected}")
        lines.append(f"Total questions so far: {report.total}.\nSend more, or press finish.")
        await self.outbox.show(
            user_id,
            "\n".join(lines),
            [[Button("✅ Done, finish adding questions", FinishQuestions())]],
        )
        return report

    # ------------------------------------------------------------------ finalize
    async def finish(self, user_id: str) -> Optional[ExamDef]:
        """Commit the draft as an exam.

        Raises ``EmptyQuestionSet`` (after clearing the session) when nothing
        was accepted.  Returns None if the session moved on concurrently or the
        name had to be re-chosen.
        """
        record = await self.store.get(user_id)
        if record is None or record.stage is not Stage.AWAITING_QUESTIONS:
            return None
        if record.payload.committing:
            return await self.recover(user_id, record)
        if record.payload.renaming:
            await self.outbox.show(user_id, "⚠️ Please send a new exam name first.")
            return None
        if not record.payload.questions:
            await self.store.delete(user_id)
            await self.outbox.show(user_id, "⚠️ You did not add any questions! Exam creation was cancelled.")
            raise EmptyQuestionSet(f"draft {record.payload.exam_id!r} has no questions")

        token = uuid4().hex

        def mark(before: Optional[SessionRecord]):
            if before is None or before.stage is not Stage.AWAITING_QUESTIONS:
                return None
            if before.payload.committing or before.payload.renaming or not before.payload.questions:
                return None
            payload = before.payload.model_copy(update={"committing": True, "commit_token": token})
            return before.model_copy(update={"payload": payload})

        transition = await self.store.transact(user_id, mark)
        if not transition.applied:
            return None
        return await self._commit(user_id, transition.after)

    async def recover(self, user_id: str, record: SessionRecord) -> Optional[ExamDef]:
        """Complete a finish that was interrupted after the marker was written."""
        draft = record.payload
        existing = await self.catalog.get_exam(draft.exam_id)
        if existing is not None and existing.commit_token == draft.commit_token:
            logger.info(f"Exam {draft.exam_id} commit had landed; clearing session for {user_id}")
            await self._clear(user_id, draft.commit_token)
            await self._announce(user_id, existing)
            return existing
        logger.warning(f"Replaying interrupted commit of exam {draft.exam_id} for {user_id}")
        return await self._commit(user_id, record)

    async def _commit(self, user_id: str, record: SessionRecord) -> Optional[ExamDef]:
        draft = record.payload
        exam = ExamDef(
            exam_id=draft.exam_id,
            allow_retake=draft.allow_retake,
            time_per_question=draft.time_per_question,
            category_name=draft.category_name or UNCATEGORIZED,
            question_count=len(draft.questions),
            commit_token=draft.commit_token,
        )
        try:
            created = await self.catalog.create_exam_with_questions(exam, draft.questions)
        except DuplicateExamName:
            logger.info(f"Exam name {draft.exam_id} was taken before commit; asking {user_id} for another")
            await self._await_new_name(user_id, draft.commit_token)
            await self.outbox.show(
                user_id,
                f"⚠️ The name '{draft.exam_id}' was taken in the meantime. "
                "Please send a new exam name; your questions are kept.",
            )
            return None
        await self._clear(user_id, draft.commit_token)
        await self._announce(user_id, created)
        return created

    async def _clear(self, user_id: str, token: Optional[str]) -> None:
        def mutate(before: Optional[SessionRecord]):
            if before is None or before.payload.kind != "draft" or before.payload.commit_token != token:
                return None
            return DELETE

        await self.store.transact(user_id, mutate)

    async def _await_new_name(self, user_id: str, token: Optional[str]) -> None:
        def mutate(before: Optional[SessionRecord]):
            if before is None or before.payload.kind != "draft" or before.payload.commit_token != token:
                return None
            payload = before.payload.model_copy(update={"committing": False, "commit_token": None, "renaming": True})
            return before.model_copy(update={"payload": payload})

        await self.store.transact(user_id, mutate)

    async def rename(self, user_id: str, text: str) -> Optional[ExamDef]:
        """Take a new name for a draft whose name clashed at commit, then commit again."""
        exam_id = text.strip()
        if not await self._name_available(user_id, exam_id):
            return None

        def mutate(before: Optional[SessionRecord]):
            if before is None or before.stage is not Stage.AWAITING_QUESTIONS or not before.payload.renaming:
                return None
            payload = before.payload.model_copy(update={"exam_id": exam_id, "renaming": False})
            return before.model_copy(update={"payload": payload})

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            return None
        return await self.finish(user_id)

    async def _announce(self, user_id: str, exam: ExamDef) -> None:
        await self.outbox.show(
            user_id,
            f"🎉 Exam *{exam.exam_id}* was created with {exam.question_count} questions.",
            markdown=True,
        )
