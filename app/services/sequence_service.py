import logging
from datetime import date
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import and_, select

from app.db.engine import async_session_factory
from app.models.sequence import Sequence


logger = logging.getLogger(__name__)


class SequenceService:
    """Issues per (company, module, date bucket) numbers.

    Every allocation runs in its own short session and commits immediately, so
    the lock on the sequence row is held only for the allocator's commit and
    never for the caller's enclosing transaction. Callers allocate before they
    stage their own writes.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session_factory

    async def _allocate(self, company_id: str, module_code: str, date_key: str) -> int:
        bucket = and_(
            Sequence.company_id == company_id,
            Sequence.module_code == module_code,
            Sequence.date_key == date_key,
        )
        async with self._session_factory() as seq_session:
            try:
                # Increment first: the write takes the row lock (the database
                # lock on SQLite) before the value is read back.
                conn = await seq_session.connection()
                bumped = await conn.execute(
                    update(Sequence).where(bucket).values(next_seq=Sequence.next_seq + 1)
                )
                if bumped.rowcount:
                    next_seq = (await seq_session.exec(select(Sequence.next_seq).where(bucket))).one()
                    current = int(next_seq) - 1
                else:
                    seq_session.add(
                        Sequence(
                            company_id=company_id,
                            module_code=module_code,
                            date_key=date_key,
                            next_seq=2,
                        )
                    )
                    current = 1
                await seq_session.commit()
                return current
            except IntegrityError:
                await seq_session.rollback()
                raise

    async def next_sequence(self, company_id: str, module_code: str, date_key: str) -> int:
        try:
            return await self._allocate(company_id, module_code, date_key)
        except IntegrityError:
            # Two allocators created the same bucket row; the loser increments it.
            logger.info(
                "Sequence bucket race for %s/%s/%s; retrying",
                company_id,
                module_code,
                date_key,
            )
            return await self._allocate(company_id, module_code, date_key)

    async def generate_tx_id(
        self,
        company_id: str,
        module_code: str,
        day: Optional[date] = None,
    ) -> str:
        date_key = (day or date.today()).strftime("%y%m%d")
        seq = await self.next_sequence(company_id, module_code, date_key)
        return f"{module_code}{date_key}{seq:03d}"


sequence_service = SequenceService()
