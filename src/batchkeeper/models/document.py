from sqlalchemy import Column, BigInteger, String, Text, DateTime

from batchkeeper.models import Base


class Document(Base):
    """Local record of a document and its current revision.

    `origin` is "internal" for locally authored documents and
    "external/<host name>" for documents imported from another instance.
    """
    __tablename__ = "documents"

    key = Column(String(64), primary_key=True)
    revision = Column(String(64), nullable=False)
    order = Column(BigInteger, nullable=False)
    origin = Column(String(255), nullable=False, index=True)
    origin_url = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    slug = Column(Text, nullable=True)
    language = Column(String(16), nullable=True)
    created_by = Column(String(64), nullable=True)
    updated_on = Column(DateTime, nullable=True)
