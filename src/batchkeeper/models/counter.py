from sqlalchemy import Column, String, BigInteger

from batchkeeper.models import Base


class Counter(Base):
    """Named counter. A row is created on first increment."""
    __tablename__ = "counters"

    name = Column(String(64), primary_key=True)
    seq = Column(BigInteger, nullable=False, default=0)
