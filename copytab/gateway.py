"""Remote store gateway: the narrow CRUD contract the sync engine relies on."""

import logging
from typing import Any, Protocol

import httpx

from copytab.errors import GatewayRejected, GatewayUnreachable
from copytab.models import DOMAIN_TABLES
from copytab.utils import now_iso

logger = logging.getLogger(__name__)


class RemoteGateway(Protocol):
    """Authoritative remote store for domain records.

    Implementations raise ``GatewayUnreachable`` on transport failures and
    ``GatewayRejected`` when the server refuses an operation.
    """

    async def create_record(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Create a record and return it with its server-assigned ``id``."""
        ...

    async def update_record(
        self, table: str, record_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a record by id and return the server's copy."""
        ...

    async def delete_record(self, table: str, record_id: str) -> None:
        """Soft-delete a record by setting its ``deleted_at``."""
        ...

    async def list_user_records(self, table: str, user_id: str) -> list[dict[str, Any]]:
        """List a user's records, excluding soft-deleted ones."""
        ...


class HttpGateway:
    """``RemoteGateway`` over a PostgREST-style REST endpoint.

    Records live at ``{base_url}/rest/v1/{table}``; the API key is sent both
    as ``apikey`` and as a bearer token.
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            base_url: Root URL of the remote store.
            api_key: Key used for ``apikey`` and ``Authorization`` headers.
            timeout: Request timeout in seconds.
            client: Optional preconfigured client (the gateway then does not
                own it and will not close it).
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpGateway":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def _url(self, table: str) -> str:
        if table not in DOMAIN_TABLES:
            raise ValueError(f"Invalid table '{table}'. Must be one of: {', '.join(DOMAIN_TABLES)}")
        return f"{self.base_url}/rest/v1/{table}"

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and decode the JSON body.

        Raises:
            GatewayUnreachable: On connection, timeout or other transport errors.
            GatewayRejected: On an HTTP error status or a body that is not JSON.
        """
        url = self._url(table)
        logger.debug("%s %s params=%s", method, url, params)
        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=self._headers
            )
        except httpx.TransportError as e:
            raise GatewayUnreachable(f"Cannot reach remote store: {e}") from e

        if response.is_error:
            raise GatewayRejected(_error_message(response), status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise GatewayRejected(
                f"Remote store returned a non-JSON response (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _single(body: Any, action: str) -> dict[str, Any]:
        rows = body if isinstance(body, list) else [body] if body else []
        if not rows or not isinstance(rows[0], dict):
            raise GatewayRejected(f"Remote store returned no record on {action}")
        return rows[0]

    async def create_record(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        body = await self._request("POST", table, json=fields)
        record = self._single(body, "create")
        if not record.get("id"):
            raise GatewayRejected("Remote store did not assign an id")
        return record

    async def update_record(
        self, table: str, record_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        body = await self._request(
            "PATCH", table, params={"id": f"eq.{record_id}"}, json=fields
        )
        return self._single(body, "update")

    async def delete_record(self, table: str, record_id: str) -> None:
        await self._request(
            "PATCH",
            table,
            params={"id": f"eq.{record_id}"},
            json={"deleted_at": now_iso()},
        )

    async def list_user_records(self, table: str, user_id: str) -> list[dict[str, Any]]:
        body = await self._request(
            "GET",
            table,
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "deleted_at": "is.null",
                "order": "updated_at.desc",
            },
        )
        if body is None:
            return []
        if not isinstance(body, list) or not all(isinstance(row, dict) for row in body):
            raise GatewayRejected(f"Remote store returned an unexpected {table} listing")
        return body

    async def ping(self) -> bool:
        """Check whether the remote store is reachable.

        Any HTTP answer, even an error status, counts as reachable.
        """
        try:
            await self._client.get(f"{self.base_url}/rest/v1/", headers=self._headers)
        except httpx.TransportError:
            return False
        return True


def _error_message(response: httpx.Response) -> str:
    """Extract the server's error message verbatim."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "msg"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return response.text or f"HTTP {response.status_code}"
