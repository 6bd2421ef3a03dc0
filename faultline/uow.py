"""
Unit of work for the relational registry.

A unit of work binds the alert, notification and issue stores to one
session and one transaction. It commits only when the body finishes
without raising and the commit itself succeeds; every other path rolls
back. A unit of work already open in the current context is reused, so
nested calls join the outer transaction instead of opening their own.

The analytics store is never part of a unit of work.
"""
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from faultline.errors import DuplicateKeyError, RegistryError

logger = logging.getLogger(__name__)

_current_uow: ContextVar[Optional["UnitOfWork"]] = ContextVar("unit_of_work", default=None)


class UnitOfWork:
    """Stores sharing one registry session."""

    def __init__(self, session: AsyncSession, session_factory):
        from faultline.stores.alerts import AlertStore
        from faultline.stores.issues import IssueStore
        from faultline.stores.notifications import NotificationStore

        self.session = session
        self.session_factory = session_factory
        self.alerts = AlertStore(session_factory)
        self.notifications = NotificationStore(session_factory)
        self.issues = IssueStore(session_factory)


def current_unit_of_work() -> Optional[UnitOfWork]:
    return _current_uow.get()


@asynccontextmanager
async def unit_of_work(session_factory):
    """Open (or join) a unit of work on the given registry session factory."""
    existing = _current_uow.get()
    if existing is not None and existing.session_factory is session_factory:
        yield existing
        return

    async with session_factory() as session:
        uow = UnitOfWork(session, session_factory)
        token = _current_uow.set(uow)
        committed = False
        try:
            yield uow
            await session.commit()
            committed = True
        finally:
            _current_uow.reset(token)
            if not committed:
                await session.rollback()


async def run_in_unit_of_work(session_factory, fn: Callable[[UnitOfWork], Awaitable[Any]]) -> Any:
    """Run fn against a unit of work and return its result."""
    async with unit_of_work(session_factory) as uow:
        return await fn(uow)


@asynccontextmanager
async def session_scope(session_factory, operation: str):
    """
    Session for a single store call.

    Inside a unit of work the shared session is used and transaction
    control stays with the unit of work. Outside one, a session is opened,
    committed on success and rolled back otherwise. Integrity violations
    surface as DuplicateKeyError, other driver errors as RegistryError.
    """
    uow = _current_uow.get()
    try:
        if uow is not None and uow.session_factory is session_factory:
            yield uow.session
            return

        async with session_factory() as session:
            committed = False
            try:
                yield session
                await session.commit()
                committed = True
            finally:
                if not committed:
                    await session.rollback()
    except IntegrityError as e:
        raise DuplicateKeyError(f"{operation}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise RegistryError(operation, str(e)) from e
