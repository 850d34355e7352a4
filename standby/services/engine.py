"""
Wiring for the replacement engine: one object graph per process.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from standby.core.config import settings
from standby.services.notifications import (
    IntentPublisher,
    NotificationDispatcher,
)
from standby.services.search import DirectoryFactory, ReplacementSearch
from standby.services.state_machine import ReplacementStateMachine
from standby.services.stores import SqlProviderDirectory
from standby.services.sweep import ReplacementSweeper
from standby.services.workflow import AbsenceWorkflow


@dataclass
class ReplacementEngine:
    publisher: IntentPublisher
    state_machine: ReplacementStateMachine
    search: ReplacementSearch
    workflow: AbsenceWorkflow
    sweeper: ReplacementSweeper


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: NotificationDispatcher | None = None,
    directory_factory: DirectoryFactory = SqlProviderDirectory,
    search_on_approval: bool = settings.SEARCH_ON_APPROVAL,
    today: Callable[[], date] | None = None,
) -> ReplacementEngine:
    publisher = IntentPublisher(dispatcher)
    state_machine = ReplacementStateMachine(session_factory)
    search = ReplacementSearch(session_factory, state_machine, publisher, directory_factory)
    workflow = AbsenceWorkflow(
        session_factory,
        state_machine,
        search,
        directory_factory=directory_factory,
        search_on_approval=search_on_approval,
        today=today,
    )
    return ReplacementEngine(
        publisher=publisher,
        state_machine=state_machine,
        search=search,
        workflow=workflow,
        sweeper=ReplacementSweeper(session_factory, workflow),
    )
