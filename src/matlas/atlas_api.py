"""HTTP transport for the Atlas Admin API v2.

``AtlasAdminAPI`` is a thin, synchronous wrapper over a shared
``requests.Session`` authenticated with HTTP digest (programmatic API keys).
Every method returns the decoded JSON body or raises a typed error from
:mod:`matlas.errors`; it never retries. Retry and cancellation live in
:class:`matlas.client.AtlasClient`, which runs these calls in a worker thread.

Paths are relative to the base URL, e.g. ``/groups/{groupId}/clusters``.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests
from requests.auth import HTTPDigestAuth

from .config import DEFAULT_BASE_URL, DEFAULT_HTTP_TIMEOUT_SECONDS, Credentials
from .errors import TransientError, classify_api_error

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500
MAX_PAGES = 100


def path_segment(value: str) -> str:
    """Percent-encode one path segment (CIDR slashes included)."""
    return quote(value, safe="")


class AtlasAdminAPI:
    """Admin API transport.

    The session (and its connection pool) is safe to share between the
    worker threads the client dispatches calls on.

    Attributes:
        JSON_ACCEPT: Versioned JSON Accept header.
        base_url: API root, default ``https://cloud.mongodb.com/api/atlas/v2``.
    """

    JSON_ACCEPT = "application/vnd.atlas.2023-02-01+json"

    def __init__(
        self,
        credentials: Credentials,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self._session = session or requests.Session()
        self._session.auth = HTTPDigestAuth(credentials.public_key, credentials.private_key)
        self._session.headers.update({"User-Agent": "matlas"})
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds

    # -- HTTP methods -------------------------------------------------------

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request("GET", path, params=params)

    def post(self, path: str, body: Any) -> Any:
        return self._request("POST", path, body=body)

    def patch(self, path: str, body: Any) -> Any:
        return self._request("PATCH", path, body=body)

    def put(self, path: str, body: Any) -> Any:
        return self._request("PUT", path, body=body)

    def delete(self, path: str) -> Any:
        return self._request("DELETE", path)

    def list_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """GET every page of a paginated ``results`` listing."""
        results: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            query = dict(params or {})
            query.update({"pageNum": page, "itemsPerPage": DEFAULT_PAGE_SIZE})
            body = self.get(path, params=query) or {}
            batch = body.get("results", [])
            results.extend(batch)
            total = body.get("totalCount")
            if not batch or len(batch) < DEFAULT_PAGE_SIZE or (
                total is not None and len(results) >= total
            ):
                break
        return results

    def close(self) -> None:
        self._session.close()

    # -- internals ----------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        headers = {"Accept": self.JSON_ACCEPT}
        if body is not None:
            headers["Content-Type"] = self.JSON_ACCEPT

        url = f"{self.base_url}{path}"
        logger.debug("Admin API request", extra={"method": method, "path": path})

        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"{method} {path}: {e}", cause=e) from e

        if response.status_code >= 400:
            raise self._error_from(response, method, path)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error_from(response: requests.Response, method: str, path: str) -> Exception:
        error_code = ""
        detail = response.text[:500]
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            error_code = str(payload.get("errorCode") or "")
            detail = str(payload.get("detail") or payload.get("reason") or detail)

        logger.debug(
            "Admin API error",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "error_code": error_code,
            },
        )
        return classify_api_error(response.status_code, error_code, f"{method} {path}: {detail}")
