from typing import Optional

from sqlalchemy import select

from batchkeeper.lib.database import session_scope
from batchkeeper.models import Document

DOCUMENT_ORIGIN_INTERNAL = "internal"
DOCUMENT_ORIGIN_EXTERNAL = "external"


def external_origin(host_name: str) -> str:
    return f"{DOCUMENT_ORIGIN_EXTERNAL}/{host_name}"


def _to_dict(doc: Document) -> dict:
    return {
        "key": doc.key,
        "revision": doc.revision,
        "order": doc.order,
        "origin": doc.origin,
        "originUrl": doc.origin_url,
        "title": doc.title,
        "slug": doc.slug,
        "language": doc.language,
        "createdBy": doc.created_by,
        "updatedOn": doc.updated_on,
    }


class DocumentStore:
    """Local documents, as far as importing needs them."""

    def __init__(self, session_factory):
        self.Session = session_factory

    def get_documents_metadata_by_origin(self, origin: str) -> list[dict]:
        with self.Session() as session:
            rows = session.execute(
                select(Document.key, Document.revision).where(Document.origin == origin)
            ).all()
        return [{"key": key, "revision": revision} for key, revision in rows]

    def get_document_by_key(self, key: str) -> Optional[dict]:
        with self.Session() as session:
            doc = session.get(Document, key)
            return _to_dict(doc) if doc else None

    def save_document(self, doc: dict, session=None) -> None:
        """Insert or replace the document with key `doc["key"]`."""
        with session_scope(self.Session, session) as s:
            s.merge(Document(
                key=doc["key"],
                revision=doc["revision"],
                order=doc["order"],
                origin=doc["origin"],
                origin_url=doc.get("originUrl"),
                title=doc.get("title"),
                slug=doc.get("slug"),
                language=doc.get("language"),
                created_by=doc.get("createdBy"),
                updated_on=doc.get("updatedOn"),
            ))
