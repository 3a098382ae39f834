"""Pipedrive REST API client with rate-limit backoff."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, Field

from supabase2pipedrive.config import Settings
from supabase2pipedrive.exceptions import (
    ExhaustedRetries,
    PipedriveAPIError,
    RateLimitError,
    RemoteNotFound,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

PIPEDRIVE_API_BASE = "https://api.pipedrive.com/v1"


class RetryPolicy(BaseModel):
    """Exponential backoff applied to rate-limited and network-failed requests."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0, description="Seconds before the first retry")
    multiplier: float = Field(default=2.0, ge=1.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_backoff_ms / 1000,
            multiplier=settings.backoff_multiplier,
        )

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry number `retry` (0-based)."""
        return self.initial_delay * self.multiplier**retry


class PipedriveClient:
    """Async client for the Pipedrive v1 API.

    Every call goes through `execute`, which applies the retry policy, so
    backoff is uniform across reads and writes.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = PIPEDRIVE_API_BASE,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token
        self.base_url = base_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "PipedriveClient":
        return cls(
            settings.pipedrive_api_token,
            base_url=settings.pipedrive_api_url,
            retry_policy=RetryPolicy.from_settings(settings),
            timeout=settings.http_timeout,
            **kwargs,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict | None,
        json: dict | None,
    ) -> httpx.Response:
        client = await self._get_client()
        query = dict(params or {})
        query["api_token"] = self.api_token

        try:
            response = await client.request(method, endpoint, params=query, json=json)
        except httpx.TransportError as e:
            raise TransientRemoteError(None, f"{method} {endpoint} failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(int(retry_after) if retry_after and retry_after.isdigit() else None)

        return response

    async def execute(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make an API request and return the decoded response envelope.

        Rate-limited (429) and network-failed requests are retried with
        exponential backoff up to `retry_policy.max_attempts` attempts, then
        raise ExhaustedRetries. Any other failure is raised immediately.
        """
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._send(method, endpoint, params, json)
                break
            except TransientRemoteError as e:
                if attempt >= policy.max_attempts:
                    raise ExhaustedRetries(attempt, e) from e
                delay = policy.delay(attempt - 1)
                logger.warning(
                    f"{e.message}: retrying {method} {endpoint} in {delay:g}s "
                    f"(attempt {attempt + 1}/{policy.max_attempts})"
                )
                await self._sleep(delay)

        if response.status_code == 404:
            raise RemoteNotFound(f"{method} {endpoint}: {response.text}")
        if response.status_code >= 400:
            raise PipedriveAPIError(response.status_code, response.text)

        try:
            body = response.json()
        except ValueError as e:
            raise PipedriveAPIError(response.status_code, f"Invalid JSON response: {e}") from e

        if not body.get("success", False):
            raise PipedriveAPIError(response.status_code, body.get("error") or "Request unsuccessful")
        return body

    async def list_page(
        self, resource: str, start: int, limit: int
    ) -> tuple[list[dict[str, Any]], bool | None]:
        """Fetch one page of a collection.

        Returns (records, more_items_in_collection); the flag is None when the
        response carries no pagination block.
        """
        body = await self.execute("GET", f"/{resource}", params={"start": start, "limit": limit})
        pagination = (body.get("additional_data") or {}).get("pagination") or {}
        return body.get("data") or [], pagination.get("more_items_in_collection")

    # ==================== PERSONS ====================

    async def get_person(self, person_id: int) -> dict[str, Any]:
        body = await self.execute("GET", f"/persons/{person_id}")
        return body["data"]

    async def create_person(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self.execute("POST", "/persons", json=payload)
        return body["data"]

    async def update_person(self, person_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self.execute("PUT", f"/persons/{person_id}", json=payload)
        return body["data"]

    async def search_persons(
        self, term: str, fields: str = "email", exact_match: bool = True, limit: int = 1
    ) -> list[dict[str, Any]]:
        """Search persons by term. Returns the matched items (not full records)."""
        return await self._search("/persons/search", term, fields, exact_match, limit)

    # ==================== ORGANIZATIONS ====================

    async def get_organization(self, org_id: int) -> dict[str, Any]:
        body = await self.execute("GET", f"/organizations/{org_id}")
        return body["data"]

    async def create_organization(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self.execute("POST", "/organizations", json=payload)
        return body["data"]

    async def update_organization(self, org_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self.execute("PUT", f"/organizations/{org_id}", json=payload)
        return body["data"]

    async def search_organizations(
        self, term: str, fields: str = "name", exact_match: bool = True, limit: int = 1
    ) -> list[dict[str, Any]]:
        return await self._search("/organizations/search", term, fields, exact_match, limit)

    # ==================== PERSON FIELDS ====================

    async def get_person_field(self, field_id: int) -> dict[str, Any]:
        body = await self.execute("GET", f"/personFields/{field_id}")
        return body["data"]

    async def create_person_field(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = await self.execute("POST", "/personFields", json=payload)
        return body["data"]

    async def _search(
        self, endpoint: str, term: str, fields: str, exact_match: bool, limit: int
    ) -> list[dict[str, Any]]:
        body = await self.execute(
            "GET",
            endpoint,
            params={
                "term": term,
                "fields": fields,
                "exact_match": str(exact_match).lower(),
                "limit": limit,
            },
        )
        items = (body.get("data") or {}).get("items") or []
        return [entry["item"] for entry in items if entry.get("item")]
