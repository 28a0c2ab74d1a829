"""
Service graph shared by the HTTP endpoints.

Built once in the application lifespan and stored on ``app.state``; endpoints
reach it through the ``get_services`` dependency.
"""
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from exambot.core.config import Settings
from exambot.services.authoring import AuthoringMachine
from exambot.services.catalog import Catalog
from exambot.services.menus import Menus
from exambot.services.outbox import Outbox
from exambot.services.quiz import QuizMachine
from exambot.services.router import EventRouter
from exambot.services.session_store import SessionStore
from exambot.services.sweeper import TimeoutSweeper


@dataclass
class Services:
    settings: Settings
    store: SessionStore
    catalog: Catalog
    outbox: Outbox
    authoring: AuthoringMachine
    quiz: QuizMachine
    menus: Menus
    router: EventRouter
    sweeper: TimeoutSweeper


def build_services(
    settings: Settings,
    store: SessionStore,
    sessions: async_sessionmaker[AsyncSession],
    outbox: Outbox,
    clock: Callable[[], float] = time.time,
) -> Services:
    catalog = Catalog(sessions)
    authoring = AuthoringMachine(store, catalog, outbox)
    quiz = QuizMachine(store, catalog, outbox, clock=clock)
    menus = Menus(catalog, outbox, settings)
    router = EventRouter(store, catalog, outbox, authoring, quiz, menus, settings)
    sweeper = TimeoutSweeper(
        store,
        quiz,
        clock=clock,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        grace=settings.SWEEP_GRACE_SECONDS,
        redispatch_after=settings.SWEEP_REDISPATCH_SECONDS,
        concurrency=settings.SWEEP_CONCURRENCY,
    )
    return Services(
        settings=settings,
        store=store,
        catalog=catalog,
        outbox=outbox,
        authoring=authoring,
        quiz=quiz,
        menus=menus,
        router=router,
        sweeper=sweeper,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
