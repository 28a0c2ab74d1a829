"""
Periodic sweep over quiz sessions whose question deadline has passed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from exambot.models.session import QuizProgress, SessionRecord, Stage
from exambot.services.quiz import QuizMachine
from exambot.services.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    scanned: int = 0
    advanced: int = 0
    resent: int = 0
    finalized: int = 0
    failed: int = 0


def is_expired(progress: QuizProgress, now: float, grace: float) -> bool:
    if progress.time_per_question <= 0 or progress.last_question_at is None:
        return False
    return now - progress.last_question_at > progress.time_per_question + grace


class TimeoutSweeper:
    def __init__(
        self,
        store: SessionStore,
        quiz: QuizMachine,
        clock: Callable[[], float] = time.time,
        interval: float = 60.0,
        grace: float = 3.0,
        redispatch_after: float = 30.0,
        concurrency: int = 16,
    ):
        self.store = store
        self.quiz = quiz
        self.clock = clock
        self.interval = interval
        self.grace = grace
        self.redispatch_after = redispatch_after
        self._semaphore = asyncio.Semaphore(concurrency)
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> SweepReport:
        """One pass over all quiz sessions: finalize, resend or advance each as needed."""
        sessions = await self.store.scan(Stage.TAKING_EXAM)
        report = SweepReport(scanned=len(sessions))
        if not sessions:
            return report
        now = self.clock()
        await asyncio.gather(*(self._sweep_session(key, record, now, report) for key, record in sessions))
        if report.advanced or report.resent or report.finalized or report.failed:
            logger.info(
                f"Sweep: scanned={report.scanned} advanced={report.advanced} resent={report.resent} "
                f"finalized={report.finalized} failed={report.failed}"
            )
        return report

    async def _sweep_session(self, key: str, record: SessionRecord, now: float, report: SweepReport) -> None:
        progress = record.payload
        async with self._semaphore:
            try:
                if progress.is_complete:
                    # Left at the terminal index by an interrupted finalize
                    if await self.quiz.finalize(key) is not None:
                        report.finalized += 1
                elif not progress.dispatched:
                    # The send for the current question failed
                    if await self.quiz.redispatch(key, progress.current_index, self.redispatch_after):
                        report.resent += 1
                elif is_expired(progress, now, self.grace):
                    if await self.quiz.advance(key, progress.current_index):
                        report.advanced += 1
            except Exception:
                report.failed += 1
                logger.exception(f"Sweep failed for session {key}")

    async def run(self) -> None:
        logger.info(f"Timeout sweeper running every {self.interval}s")
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Sweep pass failed; retrying next tick")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
