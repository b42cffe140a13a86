"""Atomic named counters.

`get_next_order` is one indivisible increment-and-fetch executed by the
database. The counter row is upserted on first use, so N concurrent callers
on a fresh counter receive exactly 1..N.
"""
import logging

from sqlalchemy import func, select
from sqlalchemy.dialects import mysql, postgresql, sqlite

from batchkeeper.models import Counter

logger = logging.getLogger(__name__)

DOCUMENT_ORDER = "document-order"


class OrderStore:

    def __init__(self, session_factory, name: str = DOCUMENT_ORDER):
        self.Session = session_factory
        self.name = name

    def get_next_order(self) -> int:
        with self.Session() as session, session.begin():
            dialect = session.get_bind().dialect.name
            if dialect == "mysql":
                value = self._increment_mysql(session)
            elif dialect in ("sqlite", "postgresql"):
                value = self._increment_upsert(session, dialect)
            else:
                raise NotImplementedError(f"Atomic counters are not supported on {dialect}")

        logger.debug("Next value for counter '%s' is %d", self.name, value)
        return value

    def _increment_upsert(self, session, dialect: str) -> int:
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(Counter).values(name=self.name, seq=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Counter.name],
            set_={"seq": Counter.seq + 1},
        ).returning(Counter.seq)
        return int(session.execute(stmt).scalar_one())

    def _increment_mysql(self, session) -> int:
        # LAST_INSERT_ID(expr) stores the incremented value per connection,
        # so the follow-up read cannot observe another caller's increment.
        stmt = mysql.insert(Counter).values(name=self.name, seq=1)
        stmt = stmt.on_duplicate_key_update(seq=func.last_insert_id(Counter.seq + 1))
        result = session.execute(stmt)
        if result.rowcount == 1:
            # fresh row
            return 1
        return int(session.execute(select(func.last_insert_id())).scalar_one())
