"""Salesforce authentication and a thin async REST/Tooling API client."""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from ..config import SalesforceSection
from ..errors import NotAuthenticated, RemoteQueryError, TransientRemoteError
from ..retry import RetryExecutor

logger = structlog.get_logger(__name__)

# Status codes worth another attempt.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class Connection(Protocol):
    """What monitors need from an authenticated org session."""

    async def query(self, soql: str) -> list[dict[str, Any]]: ...

    async def tooling_query(self, soql: str) -> list[dict[str, Any]]: ...

    async def get_text(self, path: str) -> str: ...


class AuthProvider(Protocol):
    """Yields a usable connection or fails."""

    async def authenticate(self) -> Connection: ...

    def get_connection(self) -> Connection: ...

    @property
    def is_authenticated(self) -> bool: ...

    async def close(self) -> None: ...


def _raise_for_status(resp: httpx.Response, what: str) -> None:
    if resp.status_code < 400:
        return
    detail = resp.text[:300]
    message = f"{what} failed with HTTP {resp.status_code}: {detail}"
    if resp.status_code in TRANSIENT_STATUS_CODES:
        raise TransientRemoteError(message, status_code=resp.status_code)
    raise RemoteQueryError(message, status_code=resp.status_code)


class SalesforceConnection:
    """An authenticated session against one org instance."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        instance_url: str,
        access_token: str,
        api_version: str,
        organization_id: str | None = None,
    ):
        self.client = client
        self.instance_url = instance_url.rstrip("/")
        self.api_version = api_version
        self.organization_id = organization_id
        self._headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    @property
    def data_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    async def _get(self, url: str, what: str) -> httpx.Response:
        try:
            resp = await self.client.get(url, headers=self._headers)
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{what} failed: {type(e).__name__}: {e}") from e
        _raise_for_status(resp, what)
        return resp

    async def _query_all(self, endpoint: str, soql: str) -> list[dict[str, Any]]:
        url = f"{self.data_url}/{endpoint}?q={quote(' '.join(soql.split()))}"
        records: list[dict[str, Any]] = []
        while True:
            resp = await self._get(url, "Query")
            data = resp.json()
            if not isinstance(data, dict):
                raise RemoteQueryError("Unexpected query response (not a JSON object)")
            records.extend(data.get("records") or [])
            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                return records
            url = f"{self.instance_url}{next_url}"

    async def query(self, soql: str) -> list[dict[str, Any]]:
        """Run a SOQL query against the REST API and return every record."""
        return await self._query_all("query", soql)

    async def tooling_query(self, soql: str) -> list[dict[str, Any]]:
        """Run a SOQL query against the Tooling API and return every record."""
        return await self._query_all("tooling/query", soql)

    async def get_text(self, path: str) -> str:
        """GET a raw resource below the data URL, e.g. an ApexLog body."""
        resp = await self._get(f"{self.data_url}/{path.lstrip('/')}", "Fetch")
        return resp.text

    async def close(self) -> None:
        await self.client.aclose()


class SalesforceAuthProvider:
    """OAuth username-password login; owns the current connection."""

    def __init__(
        self,
        settings: SalesforceSection,
        retry_executor: RetryExecutor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.retry_executor = retry_executor or RetryExecutor(retry_on=(TransientRemoteError,))
        self.transport = transport
        self._conn: SalesforceConnection | None = None

    @property
    def is_authenticated(self) -> bool:
        return self._conn is not None

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.settings.timeout_seconds)

    async def _login(self, client: httpx.AsyncClient) -> dict[str, Any]:
        url = f"{self.settings.login_url.rstrip('/')}/services/oauth2/token"
        payload = {
            "grant_type": "password",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "username": self.settings.username,
            "password": self.settings.password + self.settings.security_token,
        }
        try:
            resp = await client.post(url, data=payload)
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Login failed: {type(e).__name__}: {e}") from e
        _raise_for_status(resp, "Login")
        data = resp.json()
        if not isinstance(data, dict) or not data.get("access_token") or not data.get("instance_url"):
            raise RemoteQueryError("Login response is missing access_token or instance_url")
        return data

    async def authenticate(self) -> SalesforceConnection:
        """Log in (with retry) and replace the current connection.

        The previous connection is closed first, so a failed login leaves
        the provider unauthenticated.
        """
        logger.info("Authenticating to Salesforce", login_url=self.settings.login_url)

        previous, self._conn = self._conn, None
        if previous is not None:
            await previous.close()

        client = self._new_client()
        try:
            data = await self.retry_executor.execute(lambda: self._login(client), description="salesforce_login")
        except Exception as e:
            await client.aclose()
            logger.error("Failed to authenticate to Salesforce", error=str(e))
            raise

        # The identity URL ends in /<org id>/<user id>.
        identity = str(data.get("id") or "").rstrip("/").split("/")
        organization_id = identity[-2] if len(identity) >= 2 else None

        conn = SalesforceConnection(
            client,
            instance_url=data["instance_url"],
            access_token=data["access_token"],
            api_version=self.settings.api_version,
            organization_id=organization_id,
        )

        self._conn = conn

        logger.info("Successfully authenticated to Salesforce",
                    instance_url=conn.instance_url,
                    organization_id=organization_id)
        return conn

    def get_connection(self) -> SalesforceConnection:
        if self._conn is None:
            raise NotAuthenticated()
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
