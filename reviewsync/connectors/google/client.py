"""
Business Profile API client.

Walks the paged account, location and review listings. Rate limits and server
errors are retried by the shared policy; a 404 comes back as a `NotFound`
value so one vanished location never aborts a whole run.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import httpx
import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.connectors.google.models import (
    NotFound,
    ProviderAccount,
    ProviderLocation,
    ProviderReview,
    ReviewPage,
)
from reviewsync.connectors.http import request_with_retry
from reviewsync.kernel.errors import ProviderError, RateLimited
from reviewsync.kernel.retry import RetryPolicy

logger = structlog.get_logger()

LOCATION_READ_MASK = "name,title,latlng"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else f"HTTP {response.status_code}"
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


class ProviderClient(ABC):
    """Paginated provider listings used by the sync engine."""

    @abstractmethod
    async def list_reviews_page(
        self,
        access_token: str,
        parent: str,
        page_token: str | None = None,
    ) -> ReviewPage | NotFound:
        pass

    @abstractmethod
    async def list_accounts(self, access_token: str) -> list[ProviderAccount]:
        pass

    @abstractmethod
    async def list_locations(self, access_token: str, account_name: str) -> list[ProviderLocation] | NotFound:
        pass


class GoogleBusinessClient(ProviderClient):
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds)
        self._owns_client = http_client is None
        self._sleep = sleep
        self.policy = RetryPolicy(
            max_attempts=self.settings.provider_max_retries + 1,
            base_delay=self.settings.provider_retry_base_seconds,
            max_delay=self.settings.provider_retry_max_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(
        self,
        access_token: str,
        url: str,
        params: dict[str, Any],
        *,
        operation: str,
    ) -> dict[str, Any] | NotFound:
        try:
            response = await request_with_retry(
                self._client,
                "GET",
                url,
                policy=self.policy,
                operation=operation,
                sleep=self._sleep,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ProviderError(message=f"{operation} network error: {exc}") from exc

        if response.status_code == 404:
            return NotFound(resource=url)
        if response.status_code == 429:
            raise RateLimited(meta={"operation": operation})
        if not response.is_success:
            raise ProviderError(
                message=_error_message(response),
                upstream_status=response.status_code,
                meta={"operation": operation},
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        return data if isinstance(data, dict) else {}

    async def list_reviews_page(
        self,
        access_token: str,
        parent: str,
        page_token: str | None = None,
    ) -> ReviewPage | NotFound:
        params: dict[str, Any] = {"pageSize": self.settings.provider_page_size}
        if page_token:
            params["pageToken"] = page_token

        data = await self._get(
            access_token,
            f"{self.settings.google_reviews_api_base}/{parent}/reviews",
            params,
            operation="reviews.list",
        )
        if isinstance(data, NotFound):
            logger.info("Review listing not found upstream", parent=parent)
            return NotFound(resource=parent)

        items = [ProviderReview.model_validate(raw) for raw in data.get("reviews") or [] if isinstance(raw, dict)]
        next_token = data.get("nextPageToken")
        return ReviewPage(
            items=items,
            next_page_token=next_token if isinstance(next_token, str) and next_token else None,
        )

    async def _collect_pages(
        self,
        access_token: str,
        url: str,
        params: dict[str, Any],
        *,
        key: str,
        operation: str,
    ) -> list[dict[str, Any]] | NotFound:
        collected: list[dict[str, Any]] = []
        seen_tokens: set[str] = set()
        page_token: str | None = None
        for _ in range(max(1, self.settings.provider_max_list_pages)):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            data = await self._get(access_token, url, page_params, operation=operation)
            if isinstance(data, NotFound):
                return data
            collected.extend(item for item in data.get(key) or [] if isinstance(item, dict))
            next_token = data.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return collected
            if next_token in seen_tokens:
                logger.warning("Provider repeated a page token; stopping", operation=operation)
                return collected
            seen_tokens.add(next_token)
            page_token = next_token

        logger.warning(
            "Provider listing hit the page cap",
            operation=operation,
            max_pages=self.settings.provider_max_list_pages,
        )
        return collected

    async def list_accounts(self, access_token: str) -> list[ProviderAccount]:
        rows = await self._collect_pages(
            access_token,
            f"{self.settings.google_accounts_api_base}/accounts",
            {"pageSize": 20},
            key="accounts",
            operation="accounts.list",
        )
        if isinstance(rows, NotFound):
            return []
        return [ProviderAccount.model_validate(row) for row in rows if row.get("name")]

    async def list_locations(self, access_token: str, account_name: str) -> list[ProviderLocation] | NotFound:
        rows = await self._collect_pages(
            access_token,
            f"{self.settings.google_locations_api_base}/{account_name}/locations",
            {"pageSize": 100, "readMask": LOCATION_READ_MASK},
            key="locations",
            operation="locations.list",
        )
        if isinstance(rows, NotFound):
            return rows
        return [ProviderLocation.model_validate(row) for row in rows if row.get("name")]
