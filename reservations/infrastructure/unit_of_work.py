from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reservations.infrastructure.repositories import (
    OutboxRepository,
    PuppyRepository,
    ReservationRepository,
    WebhookEventRepository,
)


class UnitOfWork:
    """Opens one session shared by the puppy, reservation, webhook event and
    outbox repositories, so a gate, a reservation, its ledger entry and its
    outbox row commit or roll back together. Nothing is kept unless `commit()`
    is called inside the block.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                yield _UnitOfWorkImplementation(session)
                # Rollback if commit wasn't explicitly called
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImplementation:
    def __init__(self, session: AsyncSession):
        self._session = session
        self._puppy_repo = PuppyRepository(session)
        self._reservation_repo = ReservationRepository(session)
        self._webhook_event_repo = WebhookEventRepository(session)
        self._outbox_repo = OutboxRepository(session)

    @property
    def puppies(self) -> PuppyRepository:
        return self._puppy_repo

    @property
    def reservations(self) -> ReservationRepository:
        return self._reservation_repo

    @property
    def webhook_events(self) -> WebhookEventRepository:
        return self._webhook_event_repo

    @property
    def outbox(self) -> OutboxRepository:
        return self._outbox_repo

    async def commit(self):
        await self._session.commit()
