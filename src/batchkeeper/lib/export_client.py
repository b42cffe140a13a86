"""Client for the export endpoint of another instance."""
from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


class ExportApiError(Exception):
    """Raised when the export endpoint cannot be reached or answers with an error."""
    pass


class ExportApiClient:

    def __init__(self, database_schema_hash: str = "", timeout: float = 30, session: Optional[requests.Session] = None):
        self.database_schema_hash = database_schema_hash
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.setdefault("User-Agent", "batchkeeper/1.0")

    def _get(self, url: str, api_key: str, params: dict) -> dict:
        params = {"databaseSchemaHash": self.database_schema_hash, **params}
        try:
            resp = self.http.get(url, params=params, headers={API_KEY_HEADER: api_key}, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise ExportApiError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise ExportApiError(f"GET {url} returned invalid JSON") from exc

    def get_exports(self, base_url: str, api_key: str) -> list[dict]:
        """List the exportable documents of a source.

        Each entry carries key, revision, updatedOn, title, slug and language.
        """
        data = self._get(f"{base_url}/api/v1/exports", api_key, {})
        docs = data.get("docs", []) if isinstance(data, dict) else data
        logger.debug("%s offers %d exportable documents", base_url, len(docs))
        return docs

    def get_document_export(
        self,
        base_url: str,
        api_key: str,
        document_key: str,
        after_revision: Optional[str],
        to_revision: str,
    ) -> dict:
        """Fetch the revisions of one document newer than `after_revision`."""
        params = {"toRevision": to_revision}
        if after_revision:
            params["afterRevision"] = after_revision
        data = self._get(f"{base_url}/api/v1/exports/{document_key}", api_key, params)
        return {
            "revisions": data.get("revisions", []),
            "users": data.get("users", []),
            "cdnRootUrl": data.get("cdnRootUrl"),
        }
