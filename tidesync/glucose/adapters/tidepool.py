"""Tidepool platform API adapter.

Environment variables (see ``tidesync.config.Settings``):
    TIDESYNC_TIDEPOOL_SERVER        — production | staging | development
    TIDESYNC_TIDEPOOL_USERNAME      — account e-mail, used by login()
    TIDESYNC_TIDEPOOL_PASSWORD      — account password, used by login()
    TIDESYNC_TIDEPOOL_SESSION_TOKEN — existing session token (skips login)
    TIDESYNC_TIDEPOOL_USER_ID       — user id belonging to that session

Endpoints used:
    POST   /auth/login                        — Basic auth → session token header
    GET    /data/{userId}                     — Records by type and date range
    GET    /v1/users/{userId}/data_sets       — Existing mobile upload dataset
    POST   /v1/users/{userId}/data_sets       — Create a continuous dataset
    POST   /v1/data_sets/{uploadId}/data      — Add records
    DELETE /v1/data_sets/{uploadId}/data      — Delete records by origin id

Every request carries the ``x-tidepool-session-token`` header.  HTTP
failures are translated into the ``RemoteError`` hierarchy; nothing is
retried here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from tidesync.config import Settings, get_settings
from tidesync.glucose.base import (
    Manifest,
    RemoteDataSource,
    UploadReceipt,
    UploadRecord,
    format_zulu,
)
from tidesync.glucose.errors import (
    RemoteAuthorizationError,
    RemoteError,
    RemoteRequestError,
    RemoteUnavailableError,
)

logger = logging.getLogger("tidesync.glucose.tidepool")

SESSION_TOKEN_HEADER = "x-tidepool-session-token"
_DEDUPLICATOR_NAME = "org.tidepool.deduplicator.dataset.delete.origin"


class TidepoolClient(RemoteDataSource):
    """Tidepool API client implementing RemoteDataSource.

    Args:
        base_url:      API host, e.g. 'https://api.tidepool.org'.
        session_token: Session token from a previous login, if any.
        user_id:       User id belonging to the session.
        client_name:   Dataset client name used to find the upload dataset.
        client_version: Version reported when creating a dataset.
        username:      Account e-mail for login().
        password:      Account password for login().
        timeout:       Request timeout in seconds.
        http_client:   Optional pre-configured httpx client (for testing).
    """

    DISPLAY_NAME = "Tidepool"

    def __init__(
        self,
        base_url: str,
        session_token: str | None = None,
        user_id: str | None = None,
        client_name: str = "org.tidepool.mobile",
        client_version: str = "",
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session_token = session_token or None
        self._user_id = user_id or None
        self._client_name = client_name
        self._client_version = client_version
        self._username = username
        self._password = password
        self._timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None
    ) -> "TidepoolClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.tidepool_api_url,
            session_token=settings.tidepool_session_token,
            user_id=settings.tidepool_user_id,
            client_name=settings.tidepool_client_name,
            client_version=settings.app_version,
            username=settings.tidepool_username,
            password=settings.tidepool_password,
            timeout=settings.request_timeout_seconds,
            http_client=http_client,
        )

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def session_token(self) -> str | None:
        return self._session_token

    def is_available(self) -> bool:
        return bool(self._session_token and self._user_id)

    def logout(self) -> None:
        """Forget the session; the client reports unavailable afterwards."""
        self._session_token = None
        self._user_id = None
        logger.info("Tidepool: session cleared")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, username: str | None = None, password: str | None = None) -> str:
        """Log in with Basic auth and keep the returned session.

        Args:
            username: Account e-mail (defaults to the configured one).
            password: Account password (defaults to the configured one).

        Returns:
            The Tidepool user id of the session.

        Raises:
            RemoteAuthorizationError: Wrong credentials or no token returned.
        """
        username = username or self._username
        password = password or self._password
        if not username or not password:
            raise RemoteAuthorizationError("Tidepool login requires a username and password")

        logger.info("Tidepool: logging in as %s", username)
        response = await self._send(
            "POST", "/auth/login", auth=httpx.BasicAuth(username, password), with_token=False
        )
        token = response.headers.get(SESSION_TOKEN_HEADER)
        data = _json(response)
        user_id = data.get("userid") if isinstance(data, dict) else None
        if not token or not user_id:
            raise RemoteAuthorizationError(
                "Tidepool login response carried no session token or user id",
                status_code=response.status_code,
            )
        self._session_token = token
        self._user_id = str(user_id)
        logger.info("Tidepool: logged in, user %s", self._user_id)
        return self._user_id

    # ------------------------------------------------------------------
    # RemoteDataSource interface
    # ------------------------------------------------------------------

    async def fetch_samples(
        self, from_time: datetime, to_time: datetime, types: list[str]
    ) -> list[dict]:
        """Fetch records of ``types`` between two instants.

        Returns:
            Raw Tidepool JSON records.
        """
        user_id = self._require_user()
        params = {
            "startDate": format_zulu(from_time),
            "endDate": format_zulu(to_time),
            "type": ",".join(types),
        }
        response = await self._send("GET", f"/data/{user_id}", params=params)
        data = _json(response) or []
        if not isinstance(data, list):
            raise RemoteRequestError(
                "Tidepool /data response is not a list", response_data=data
            )
        logger.debug(
            "Tidepool: %d record(s) for %s → %s", len(data), params["startDate"], params["endDate"]
        )
        return data

    async def create_or_fetch_upload_destination(self, user_id: str) -> str:
        """Return the user's mobile upload dataset id, creating it when absent.

        A failed lookup raises instead of creating, so a network hiccup
        never produces a second dataset.
        """
        upload_id = await self._fetch_dataset(user_id)
        if upload_id:
            logger.info("Tidepool: using existing dataset %s", upload_id)
            return upload_id
        upload_id = await self._create_dataset(user_id)
        logger.info("Tidepool: created dataset %s", upload_id)
        return upload_id

    async def submit_batch(
        self,
        destination_id: str,
        manifest: Manifest,
        records: list[UploadRecord],
    ) -> UploadReceipt:
        """Send one batch to a dataset.

        Added records are POSTed behind the manifest; deletions go out as a
        DELETE with origin-id selectors.

        Returns:
            UploadReceipt with the remote-reported duplicate count.
        """
        added = [r for r in records if not r.get("deleted")]
        deleted = [r for r in records if r.get("deleted")]
        path = f"/v1/data_sets/{destination_id}/data"
        duplicates = 0

        if added:
            response = await self._send("POST", path, json=[manifest.to_json(), *added])
            duplicates = _duplicate_count(response)
        if deleted:
            selectors = [{"origin": {"id": r["origin"]["id"]}} for r in deleted]
            await self._send("DELETE", path, json=selectors)

        logger.info(
            "Tidepool: batch to %s accepted (%d added, %d deleted, %d duplicate)",
            destination_id, len(added), len(deleted), duplicates,
        )
        return UploadReceipt(accepted=len(added), deleted=len(deleted), duplicates=duplicates)

    # ------------------------------------------------------------------
    # Dataset helpers
    # ------------------------------------------------------------------

    async def _fetch_dataset(self, user_id: str) -> str | None:
        response = await self._send(
            "GET",
            f"/v1/users/{user_id}/data_sets",
            params={"client.name": self._client_name, "size": 1},
        )
        data = _json(response)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0].get("uploadId") or None
        return None

    async def _create_dataset(self, user_id: str) -> str:
        body = {
            "client": {"name": self._client_name, "version": self._client_version},
            "dataSetType": "continuous",
            "deduplicator": {"name": _DEDUPLICATOR_NAME},
        }
        response = await self._send("POST", f"/v1/users/{user_id}/data_sets", json=body)
        data = _json(response)
        upload_id = (data.get("data") or {}).get("uploadId") if isinstance(data, dict) else None
        if not upload_id:
            raise RemoteRequestError(
                "Tidepool dataset create returned no uploadId", response_data=data
            )
        return str(upload_id)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _require_user(self) -> str:
        if not self.is_available():
            raise RemoteAuthorizationError("No Tidepool session; log in first")
        return self._user_id  # type: ignore[return-value]

    async def _send(
        self,
        method: str,
        path: str,
        with_token: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Perform one request and translate failures.

        Raises:
            RemoteUnavailableError:   Network failure or 5xx.
            RemoteAuthorizationError: 401/403, or no session token.
            RemoteRequestError:       Any other 4xx.
        """
        headers = kwargs.pop("headers", {})
        if with_token:
            if not self._session_token:
                raise RemoteAuthorizationError("No Tidepool session; log in first")
            headers[SESSION_TOKEN_HEADER] = self._session_token
        url = f"{self._base_url}{path}"

        try:
            if self._http_client:
                response = await self._http_client.request(
                    method, url, headers=headers, timeout=self._timeout, **kwargs
                )
                response.raise_for_status()
                return response
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            raise _translate_status(exc, method, path) from exc
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(f"Tidepool {method} {path} failed: {exc}") from exc


def _translate_status(exc: httpx.HTTPStatusError, method: str, path: str) -> RemoteError:
    status = exc.response.status_code
    try:
        body: Any = exc.response.json()
    except ValueError:
        body = exc.response.text
    message = f"Tidepool {method} {path} returned {status}"
    if status in (401, 403):
        return RemoteAuthorizationError(message, status_code=status, response_data=body)
    if status >= 500:
        return RemoteUnavailableError(message, status_code=status, response_data=body)
    return RemoteRequestError(message, status_code=status, response_data=body)


def _json(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteRequestError(
            f"Tidepool returned a non-JSON body ({response.status_code})",
            status_code=response.status_code,
            response_data=response.text,
        ) from exc


def _duplicate_count(response: httpx.Response) -> int:
    """Count duplicate indices in an upload response, when the remote sends them."""
    if not response.content:
        return 0
    try:
        data = response.json()
    except ValueError:
        return 0
    if isinstance(data, list):
        return sum(1 for item in data if isinstance(item, int))
    return 0
