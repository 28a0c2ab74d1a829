import asyncio

import pytest

from exambot.models.session import QuizProgress, SessionRecord, Stage
from exambot.services.quiz import QuizMachine
from exambot.services.sweeper import TimeoutSweeper, is_expired
from exambot.transport.telegram import TelegramError

from tests.conftest import STUDENT_ID, RecordingOutbox, make_questions

TIME_LIMIT = 30
GRACE = 3
RESEND_AFTER = 30


@pytest.fixture
def sweeper(services):
    return services.sweeper


async def start_timed(quiz, make_exam, user_id=STUDENT_ID, exam_id="timed"):
    await make_exam(exam_id, time_per_question=TIME_LIMIT)
    await quiz.start(user_id, exam_id)


def test_is_expired_boundaries():
    progress = QuizProgress(
        attempt_id="a", exam_id="e", questions=make_questions(), time_per_question=TIME_LIMIT, last_question_at=100.0
    )
    assert not is_expired(progress, 100.0 + TIME_LIMIT + GRACE - 1, GRACE)
    assert not is_expired(progress, 100.0 + TIME_LIMIT + GRACE, GRACE)
    assert is_expired(progress, 100.0 + TIME_LIMIT + GRACE + 0.5, GRACE)

    untimed = progress.model_copy(update={"time_per_question": 0})
    assert not is_expired(untimed, 10_000.0, GRACE)


async def test_sweep_advances_expired_session(services, sweeper, store, make_exam, outbox, clock):
    await start_timed(services.quiz, make_exam)
    clock.advance(TIME_LIMIT + GRACE + 1)

    report = await sweeper.sweep_once()

    assert (report.scanned, report.advanced, report.failed) == (1, 1, 0)
    assert (await store.get(STUDENT_ID)).payload.current_index == 1
    assert [p.number for p in outbox.questions_to(STUDENT_ID)] == [1, 2]


async def test_sweep_leaves_session_just_inside_grace(services, sweeper, store, make_exam, clock):
    await start_timed(services.quiz, make_exam)
    clock.advance(TIME_LIMIT + GRACE - 1)

    report = await sweeper.sweep_once()

    assert report.advanced == 0
    assert (await store.get(STUDENT_ID)).payload.current_index == 0


async def test_sweep_ignores_untimed_quizzes(services, sweeper, store, make_exam, clock):
    await make_exam("untimed")
    await services.quiz.start(STUDENT_ID, "untimed")
    clock.advance(3600)

    report = await sweeper.sweep_once()

    assert (report.scanned, report.advanced) == (1, 0)
    assert (await store.get(STUDENT_ID)).payload.current_index == 0


async def test_repeated_sweeps_walk_to_the_end(services, sweeper, store, catalog, make_exam, outbox, clock):
    await start_timed(services.quiz, make_exam)
    await services.quiz.submit_answer(STUDENT_ID, 1)

    for _ in range(3):
        clock.advance(TIME_LIMIT + GRACE + 1)
        await sweeper.sweep_once()

    assert await store.get(STUDENT_ID) is None
    assert "*1* out of *3*" in outbox.last(STUDENT_ID).text
    assert await catalog.has_result(STUDENT_ID, "timed")


async def test_sweep_and_answer_race_advance_once(services, sweeper, store, make_exam, outbox, clock):
    await make_exam("untimed-race")
    await services.quiz.start(STUDENT_ID, "untimed-race")
    # Force the session to look expired to the sweeper as well
    await store.transact(
        STUDENT_ID,
        lambda before: before.model_copy(update={
            "payload": before.payload.model_copy(update={"time_per_question": TIME_LIMIT}),
        }),
    )
    clock.advance(TIME_LIMIT + GRACE + 1)

    await asyncio.gather(sweeper.sweep_once(), services.quiz.advance(STUDENT_ID, 0))

    assert (await store.get(STUDENT_ID)).payload.current_index == 1
    assert len(outbox.questions_to(STUDENT_ID)) == 2


async def test_sweep_finalizes_session_left_at_the_end(sweeper, store, catalog, outbox):
    progress = QuizProgress(
        attempt_id="a1", exam_id="timed", questions=make_questions(), current_index=3, score=2,
        time_per_question=TIME_LIMIT, last_question_at=0.0,
    )
    await store.put(STUDENT_ID, SessionRecord(stage=Stage.TAKING_EXAM, payload=progress))

    report = await sweeper.sweep_once()

    assert report.finalized == 1
    assert await store.get(STUDENT_ID) is None
    assert "*2* out of *3*" in outbox.last(STUDENT_ID).text


class FlakyQuiz(QuizMachine):
    def __init__(self, *args, failing_user, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_user = failing_user

    async def advance(self, user_id, expected_index):
        if user_id == self.failing_user:
            raise RuntimeError("boom")
        return await super().advance(user_id, expected_index)


async def test_one_failing_session_does_not_stop_the_sweep(store, catalog, outbox, clock, make_exam):
    quiz = FlakyQuiz(store, catalog, outbox, clock=clock, failing_user="bad")
    await make_exam("timed", time_per_question=TIME_LIMIT)
    for user_id in ("bad", "good-1", "good-2"):
        await quiz.start(user_id, "timed")
    clock.advance(TIME_LIMIT + GRACE + 1)

    sweeper = TimeoutSweeper(store, quiz, clock=clock, grace=GRACE, concurrency=2)
    report = await sweeper.sweep_once()

    assert (report.scanned, report.advanced, report.failed) == (3, 2, 1)
    assert (await store.get("bad")).payload.current_index == 0
    assert (await store.get("good-1")).payload.current_index == 1


async def test_start_and_stop_run_the_loop(services, store, make_exam, clock):
    await start_timed(services.quiz, make_exam)
    clock.advance(TIME_LIMIT + GRACE + 1)
    sweeper = TimeoutSweeper(store, services.quiz, clock=clock, interval=3600, grace=GRACE)

    sweeper.start()
    for _ in range(50):
        await asyncio.sleep(0.01)
        if (await store.get(STUDENT_ID)).payload.current_index == 1:
            break
    await sweeper.stop()

    assert (await store.get(STUDENT_ID)).payload.current_index == 1


class DroppingOutbox(RecordingOutbox):
    """Fails the next question send once when armed."""

    def __init__(self):
        super().__init__()
        self.drop_next = False

    async def send_question(self, chat_id, prompt):
        if self.drop_next:
            self.drop_next = False
            raise TelegramError("sendPoll", "Too Many Requests: retry after 5", 429)
        return await super().send_question(chat_id, prompt)


@pytest.fixture
def dropping(store, catalog, clock):
    outbox = DroppingOutbox()
    quiz = QuizMachine(store, catalog, outbox, clock=clock)
    sweeper = TimeoutSweeper(store, quiz, clock=clock, grace=GRACE, redispatch_after=RESEND_AFTER)
    return outbox, quiz, sweeper


async def test_sweep_resends_untimed_question_that_failed_to_send(dropping, store, make_exam, clock):
    outbox, quiz, sweeper = dropping
    await make_exam("untimed")
    await quiz.start(STUDENT_ID, "untimed")

    outbox.drop_next = True
    with pytest.raises(TelegramError):
        await quiz.submit_answer(STUDENT_ID, 1)
    progress = (await store.get(STUDENT_ID)).payload
    assert (progress.current_index, progress.dispatched) == (1, False)

    clock.advance(RESEND_AFTER - 1)
    assert (await sweeper.sweep_once()).resent == 0

    clock.advance(2)
    assert (await sweeper.sweep_once()).resent == 1
    assert [p.number for p in outbox.questions_to(STUDENT_ID)] == [1, 2]
    assert (await store.get(STUDENT_ID)).payload.dispatched

    # The resent question is answerable and the quiz carries on
    await quiz.submit_answer(STUDENT_ID, 0)
    assert (await store.get(STUDENT_ID)).payload.current_index == 2
    assert (await sweeper.sweep_once()).resent == 0


async def test_timed_question_that_never_arrived_is_resent_not_skipped(dropping, store, make_exam, clock):
    outbox, quiz, sweeper = dropping
    await make_exam("timed", time_per_question=TIME_LIMIT)
    outbox.drop_next = True
    with pytest.raises(TelegramError):
        await quiz.start(STUDENT_ID, "timed")
    clock.advance(TIME_LIMIT + GRACE + 1)

    report = await sweeper.sweep_once()

    assert (report.resent, report.advanced) == (1, 0)
    progress = (await store.get(STUDENT_ID)).payload
    assert (progress.current_index, progress.last_question_at) == (0, clock.now)
    assert [p.number for p in outbox.questions_to(STUDENT_ID)] == [1]
