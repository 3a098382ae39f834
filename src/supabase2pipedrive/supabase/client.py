"""Minimal Supabase (PostgREST) table client."""

from typing import Any

import httpx

from supabase2pipedrive.config import Settings
from supabase2pipedrive.exceptions import SupabaseError


def eq(value: Any) -> str:
    """PostgREST equality filter."""
    return f"eq.{value}"


class SupabaseClient:
    """Async client for the Supabase REST endpoint using the service key."""

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "SupabaseClient":
        return cls(
            settings.supabase_url,
            settings.supabase_service_key,
            timeout=settings.http_timeout,
            **kwargs,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        client = await self._get_client()

        try:
            response = await client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise SupabaseError(None, f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            raise SupabaseError(response.status_code, response.text)

        if not response.content:
            return []
        return response.json()

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Select rows from a table.

        Args:
            table: Table name
            columns: PostgREST select expression
            filters: Column -> filter expression, e.g. {"id": eq(5)}
            order: Ordering expression, e.g. "id.asc"
            limit: Maximum number of rows
            offset: Rows to skip
        """
        params: dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        return await self._request("GET", table, params=params)

    async def select_all(
        self, table: str, columns: str = "*", page_size: int = 1000
    ) -> list[dict[str, Any]]:
        """Select every row of a table, paging past the server's row cap."""
        rows: list[dict[str, Any]] = []
        while True:
            page = await self.select(
                table, columns, order="id.asc", limit=page_size, offset=len(rows)
            )
            rows.extend(page)
            if len(page) < page_size:
                return rows

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        rows = await self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        if not rows:
            raise SupabaseError(None, f"Insert into {table} returned no row")
        return rows[0]

    async def update(
        self, table: str, row_id: Any, values: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update one row by id and return it as stored (None if no row matched)."""
        rows = await self._request(
            "PATCH",
            table,
            params={"id": eq(row_id)},
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else None
