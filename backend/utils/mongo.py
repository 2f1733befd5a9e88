import logging
from contextlib import asynccontextmanager

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from config.env import MONGO_TRANSACTIONS
from utils.errors import InternalError

logger = logging.getLogger(__name__)


def with_session(session) -> dict:
    return {"session": session} if session is not None else {}


@asynccontextmanager
async def transaction(db):
    """
    Yields a Motor session inside a multi-document transaction when
    MONGO_TRANSACTIONS is on (replica set required), otherwise None.
    """
    if not MONGO_TRANSACTIONS:
        yield None
        return

    async with await db.client.start_session() as session:
        async with session.start_transaction():
            yield session


class UnitOfWork:
    """
    Groups the writes of one engine operation.

    With a session, MongoDB aborts the transaction on failure. Without
    one, registered compensations run in reverse order instead.
    """

    def __init__(self, session=None):
        self.session = session
        self._compensations = []

    @property
    def kw(self) -> dict:
        return with_session(self.session)

    def on_rollback(self, func, *args, **kwargs):
        if self.session is None:
            self._compensations.append((func, args, kwargs))

    async def rollback(self):
        while self._compensations:
            func, args, kwargs = self._compensations.pop()
            try:
                await func(*args, **kwargs)
            except Exception:
                logger.exception("ROLLBACK_ERROR step=%s", getattr(func, "__name__", func))


@asynccontextmanager
async def unit_of_work(db, name: str):
    try:
        async with transaction(db) as session:
            uow = UnitOfWork(session)
            try:
                yield uow
            except Exception:
                if session is None:
                    logger.warning("UNIT_OF_WORK_ROLLBACK name=%s", name)
                await uow.rollback()
                raise
    except PyMongoError as e:
        logger.exception("UNIT_OF_WORK_FAILED name=%s", name)
        raise InternalError(f"{name} failed; all changes were rolled back", code="STORAGE_FAILURE") from e


async def next_sequence(db, name: str, session=None) -> int:
    counter = await db.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        **with_session(session),
    )
    return counter["seq"]
