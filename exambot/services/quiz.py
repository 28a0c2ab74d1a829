"""
Quiz session state machine.

A quiz session moves through ``current_index`` 0..N.  Two independent triggers
can move it forward: an answer on an untimed quiz, and the timeout sweeper on a
timed one.  Both go through ``advance(user_id, expected_index)``, a guarded
transition that only applies while the stored index still equals
``expected_index``; the loser of a race sees ``False`` and does nothing else.
"""
import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from exambot.core.errors import EmptyExam, ExamNotFound, RetakeNotAllowed
from exambot.models.events import OpenStudentPanel
from exambot.models.schemas import QuizResult
from exambot.models.session import QuizProgress, SessionRecord, Stage
from exambot.services.catalog import Catalog
from exambot.services.outbox import Button, Outbox, QuestionPrompt
from exambot.services.session_store import DELETE, SessionStore

logger = logging.getLogger(__name__)


def _taking(record: Optional[SessionRecord]) -> bool:
    return record is not None and record.stage is Stage.TAKING_EXAM


class QuizMachine:
    def __init__(
        self,
        store: SessionStore,
        catalog: Catalog,
        outbox: Outbox,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.catalog = catalog
        self.outbox = outbox
        self.clock = clock

    async def start(
        self,
        user_id: str,
        exam_id: str,
        user_name: str = "",
        message_id: Optional[int] = None,
    ) -> QuizProgress:
        """Snapshot the exam into a fresh session and send the first question.

        Any session the user had is replaced.  Nothing is written when the exam
        is missing, empty, or already taken by a user who may not retake it.
        """
        exam = await self.catalog.get_exam(exam_id)
        if exam is None:
            raise ExamNotFound(exam_id)
        if not exam.allow_retake and await self.catalog.has_result(user_id, exam_id):
            raise RetakeNotAllowed(exam_id)
        questions = await self.catalog.get_exam_questions(exam_id)
        if not questions:
            raise EmptyExam(exam_id)

        progress = QuizProgress(
            attempt_id=uuid4().hex,
            exam_id=exam_id,
            user_name=user_name,
            questions=questions,
            time_per_question=exam.time_per_question,
            last_question_at=self.clock(),
        )
        await self.store.put(user_id, SessionRecord(stage=Stage.TAKING_EXAM, payload=progress))
        logger.info(f"User {user_id} started exam {exam_id} with {progress.total} questions")

        await self.outbox.show(
            user_id,
            f"🚀 Exam *{exam_id}* starts now. Get ready!",
            message_id=message_id,
            markdown=True,
        )
        await self._dispatch(user_id, progress)
        return progress

    async def _dispatch(self, user_id: str, progress: QuizProgress) -> None:
        """Send the current question, then mark it delivered.

        A send that raises leaves ``dispatched`` unset, and the sweeper resends.
        """
        question = progress.current_question
        await self.outbox.send_question(
            user_id,
            QuestionPrompt(
                number=progress.current_index + 1,
                text=question.question_text,
                options=question.options,
                correct_option_index=question.correct_option_index,
                open_period=progress.time_per_question if progress.is_timed else None,
            ),
        )

        def mark(before: Optional[SessionRecord]):
            if not _taking(before):
                return None
            current = before.payload
            if current.attempt_id != progress.attempt_id or current.current_index != progress.current_index:
                return None
            if current.dispatched:
                return None
            return before.model_copy(update={"payload": current.model_copy(update={"dispatched": True})})

        await self.store.transact(user_id, mark)

    async def redispatch(self, user_id: str, expected_index: int, stale_after: float) -> bool:
        """Resend question ``expected_index`` if it never reached the user.

        Only a session whose question has been pending for more than
        ``stale_after`` seconds qualifies; the question clock restarts so the
        resent question gets its full time.
        """
        now = self.clock()

        def mutate(before: Optional[SessionRecord]):
            if not _taking(before):
                return None
            progress = before.payload
            if progress.is_complete or progress.dispatched or progress.current_index != expected_index:
                return None
            if progress.last_question_at is not None and now - progress.last_question_at <= stale_after:
                return None
            return before.model_copy(update={"payload": progress.model_copy(update={"last_question_at": now})})

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            return False
        logger.warning(f"Resending question {expected_index + 1} to {user_id}: it was never delivered")
        await self._dispatch(user_id, transition.after.payload)
        return True

    async def submit_answer(self, user_id: str, option_index: int) -> bool:
        """Score the answer to the current question.

        Only the first answer per question counts.  On an untimed quiz the
        answer also advances; on a timed one the sweeper does.  A repeated
        answer to an already scored untimed question retries the advance, so a
        redelivery after a failed advance moves the quiz on.
        """

        def mutate(before: Optional[SessionRecord]):
            if not _taking(before):
                return None
            progress = before.payload
            if progress.is_complete or progress.answered:
                return None
            correct = option_index == progress.current_question.correct_option_index
            payload = progress.model_copy(update={"score": progress.score + int(correct), "answered": True})
            return before.model_copy(update={"payload": payload})

        transition = await self.store.transact(user_id, mutate)
        record = transition.after
        if not _taking(record) or record.payload.is_complete:
            logger.debug(f"Ignoring answer from {user_id}: no open question")
            return False

        progress = record.payload
        if progress.is_timed:
            return transition.applied
        if not transition.applied:
            logger.info(f"Question {progress.current_index + 1} of {user_id} already scored; retrying advance")
        await self.advance(user_id, progress.current_index)
        return transition.applied

    async def advance(self, user_id: str, expected_index: int) -> bool:
        """Move from ``expected_index`` to the next question, at most once.

        Returns False when another caller already moved the session on, or the
        session is gone.
        """
        now = self.clock()

        def mutate(before: Optional[SessionRecord]):
            if not _taking(before):
                return None
            progress = before.payload
            if progress.is_complete or progress.current_index != expected_index:
                return None
            payload = progress.model_copy(update={
                "current_index": progress.current_index + 1,
                "last_question_at": now,
                "answered": False,
                "dispatched": False,
            })
            return before.model_copy(update={"payload": payload})

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            logger.debug(f"Advance of {user_id} from {expected_index} lost the race or found no session")
            return False

        progress = transition.after.payload
        if progress.is_complete:
            await self.finalize(user_id)
        else:
            await self._dispatch(user_id, progress)
        return True

    async def finalize(self, user_id: str) -> Optional[QuizResult]:
        """Record the result and clear a session that reached the last index.

        A session that is absent or not yet complete is left alone and None is
        returned; only the caller whose delete lands sends the summary.
        """
        record = await self.store.get(user_id)
        if not _taking(record) or not record.payload.is_complete:
            return None
        progress = record.payload

        result = QuizResult(
            attempt_id=progress.attempt_id,
            user_id=user_id,
            user_name=progress.user_name,
            exam_id=progress.exam_id,
            score=progress.score,
            total=progress.total,
        )
        # Keyed by attempt, so a replay after a crash does not double count
        await self.catalog.record_result(result)

        def mutate(before: Optional[SessionRecord]):
            if not _taking(before) or before.payload.attempt_id != progress.attempt_id:
                return None
            if not before.payload.is_complete:
                return None
            return DELETE

        transition = await self.store.transact(user_id, mutate)
        if not transition.applied:
            return None

        logger.info(f"User {user_id} finished exam {progress.exam_id}: {progress.score}/{progress.total}")
        await self.outbox.show(
            user_id,
            f"🎉 *Exam finished!* 🎉\n\nYour score: *{progress.score}* out of *{progress.total}*",
            [[Button("Back to menu", OpenStudentPanel())]],
            markdown=True,
        )
        return result
