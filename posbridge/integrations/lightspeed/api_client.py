"""
Lightspeed Retail (R-Series) REST API client.
Every request gets a valid access token from the token manager, passes the
sliding-window rate limiter and is retried with exponential backoff on 429/5xx
and network failures. List responses are normalized to lists of typed models.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from posbridge.config import settings
from posbridge.integrations.lightspeed.errors import (
    LightspeedAPIError,
    NetworkError,
    RateLimited,
    RequestFailed,
    ServerError,
    Unauthenticated,
)
from posbridge.integrations.lightspeed.models import (
    Account,
    Category,
    Customer,
    Employee,
    Item,
    ItemShop,
    Register,
    Sale,
    Shop,
    SyncOptions,
    SyncResult,
    ensure_list,
)
from posbridge.integrations.lightspeed.rate_limiter import SlidingWindowRateLimiter
from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager
from posbridge.utils.retry import async_retrying

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _clean_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not params:
        return {}
    return {key: str(value) for key, value in params.items() if value is not None}


class LightspeedAPIClient:
    """Async client for one user's Lightspeed account."""

    def __init__(
        self,
        user_id: str,
        token_manager: LightspeedTokenManager,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the Lightspeed API client.

        Args:
            user_id: Owner of the Lightspeed connection.
            token_manager: Source of valid access tokens.
            rate_limiter: Admission control. One per client by default.
            http_client: Override HTTP client (tests). Created lazily if None.
            base_url: Override API base URL. If None, uses settings.lightspeed_api_base_url.
            sleep: Awaitable sleep used for retry backoff.
        """
        self.user_id = user_id
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            settings.lightspeed_rate_limit_per_second
        )
        self.base_url = (base_url or settings.lightspeed_api_base_url).rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self.account_id: Optional[str] = None
        self.account_name: Optional[str] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "LightspeedAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Core request primitive

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated API request with retry logic.

        Raises:
            Unauthenticated: No valid token; the user must reconnect. Never retried.
            RequestFailed: Non-retryable error response (body included).
            RateLimited / ServerError / NetworkError: After all attempts are exhausted.
        """
        access_token = await self.token_manager.get_valid_access_token(self.user_id)
        if not access_token:
            raise Unauthenticated(self.user_id)

        url = f"{self.base_url}{endpoint}"
        retrying = async_retrying(
            max_attempts=settings.max_retry_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            deadline=settings.request_deadline_seconds,
            sleep=self._sleep,
        )

        data: Dict[str, Any] = {}
        async for attempt in retrying:
            with attempt:
                data = await self._send(method, url, endpoint, access_token, params, json)
        return data

    async def _send(
        self,
        method: str,
        url: str,
        endpoint: str,
        access_token: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        await self.rate_limiter.wait_for_slot()
        client = await self._get_client()

        try:
            response = await client.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                params=_clean_params(params) or None,
                json=json,
            )
        except httpx.RequestError as e:
            logger.warning(
                "Lightspeed API request failed",
                endpoint=endpoint,
                user_id=self.user_id,
                error=str(e),
            )
            raise NetworkError(str(e)) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "Lightspeed rate limited",
                endpoint=endpoint,
                user_id=self.user_id,
                retry_after=retry_after,
            )
            raise RateLimited(
                f"{method} {endpoint} rate limited", body=response.text, retry_after=retry_after
            )

        if response.status_code >= 500:
            logger.warning(
                "Lightspeed server error",
                status_code=response.status_code,
                endpoint=endpoint,
                user_id=self.user_id,
            )
            raise ServerError(
                response.status_code,
                f"{method} {endpoint} failed: {response.status_code}",
                body=response.text,
            )

        if not response.is_success:
            logger.error(
                "Lightspeed API error",
                status_code=response.status_code,
                body=response.text[:500],
                endpoint=endpoint,
                user_id=self.user_id,
            )
            raise RequestFailed(
                response.status_code,
                f"{method} {endpoint} failed: {response.status_code} - {response.text}",
                body=response.text,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                "Lightspeed returned invalid JSON",
                status_code=response.status_code,
                endpoint=endpoint,
                user_id=self.user_id,
            )
            raise RequestFailed(
                response.status_code, "Invalid JSON response", body=response.text
            ) from e

    # Helpers

    def _parse_list(self, data: Dict[str, Any], key: str, model: Type[ModelT]) -> List[ModelT]:
        return [model.model_validate(entry) for entry in ensure_list(data.get(key))]

    async def _list(
        self,
        resource: str,
        model: Type[ModelT],
        params: Optional[Dict[str, Any]] = None,
    ) -> List[ModelT]:
        account_id = await self.get_account_id()
        data = await self.request(f"/Account/{account_id}/{resource}.json", params=params)
        return self._parse_list(data, resource, model)

    async def _get_one(self, resource: str, resource_id: str, model: Type[ModelT]) -> ModelT:
        account_id = await self.get_account_id()
        data = await self.request(f"/Account/{account_id}/{resource}/{resource_id}.json")
        entries = ensure_list(data.get(resource))
        if not entries:
            raise RequestFailed(404, f"{resource} {resource_id} not found")
        return model.model_validate(entries[0])

    # Account

    async def get_account(self) -> Account:
        """Get account information and cache the account id for this session."""
        data = await self.request("/Account.json")
        accounts = ensure_list(data.get("Account"))
        if not accounts:
            raise RequestFailed(404, "No Lightspeed account returned")
        account = Account.model_validate(accounts[0])
        self.account_id = account.account_id
        self.account_name = account.name
        return account

    async def get_account_id(self) -> str:
        """Get the account ID (fetches if not cached)."""
        if not self.account_id:
            await self.get_account()
        return self.account_id

    # Items

    async def get_items(self, params: Optional[Dict[str, Any]] = None) -> List[Item]:
        return await self._list("Item", Item, params)

    async def get_item(self, item_id: str) -> Item:
        return await self._get_one("Item", item_id, Item)

    async def get_all_items(self, params: Optional[Dict[str, Any]] = None) -> List[Item]:
        """Fetch every item page by page; a short page ends the loop."""
        all_items: List[Item] = []
        limit = settings.items_page_size
        offset = 0

        while True:
            items = await self.get_items({**(params or {}), "offset": offset, "limit": limit})
            all_items.extend(items)
            if len(items) < limit:
                break
            offset += limit

        logger.info("Fetched all Lightspeed items", user_id=self.user_id, count=len(all_items))
        return all_items

    # Categories

    async def get_categories(self, params: Optional[Dict[str, Any]] = None) -> List[Category]:
        return await self._list("Category", Category, params)

    # Sales

    async def get_sales(self, params: Optional[Dict[str, Any]] = None) -> List[Sale]:
        return await self._list("Sale", Sale, params)

    async def get_sale(self, sale_id: str) -> Sale:
        return await self._get_one("Sale", sale_id, Sale)

    async def get_completed_sales(
        self,
        start_date: date,
        end_date: Optional[date] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Sale]:
        """Completed sales with completeTime between two dates (inclusive)."""
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        if isinstance(end_date, datetime):
            end_date = end_date.date()
        end = end_date or datetime.now(timezone.utc).date()
        return await self.get_sales(
            {
                **(params or {}),
                "completed": "true",
                "completeTime": f"><,{start_date.isoformat()},{end.isoformat()}",
            }
        )

    # Customers

    async def get_customers(self, params: Optional[Dict[str, Any]] = None) -> List[Customer]:
        return await self._list("Customer", Customer, params)

    async def get_customer(self, customer_id: str) -> Customer:
        return await self._get_one("Customer", customer_id, Customer)

    # Inventory, shops, registers, employees

    async def get_item_shops(self, params: Optional[Dict[str, Any]] = None) -> List[ItemShop]:
        return await self._list("ItemShop", ItemShop, params)

    async def get_shops(self, params: Optional[Dict[str, Any]] = None) -> List[Shop]:
        return await self._list("Shop", Shop, params)

    async def get_registers(self, params: Optional[Dict[str, Any]] = None) -> List[Register]:
        return await self._list("Register", Register, params)

    async def get_employees(self, params: Optional[Dict[str, Any]] = None) -> List[Employee]:
        return await self._list("Employee", Employee, params)

    # Sync

    async def perform_sync(self, options: SyncOptions) -> SyncResult:
        """
        Fetch the selected resource families and stamp last_sync_at.
        Each family is attempted independently; failures are collected in
        SyncResult.errors. Unauthenticated aborts the whole sync.
        """
        result = SyncResult()
        steps: List[tuple[str, Callable[[], Awaitable[list]]]] = []

        if options.products or options.inventory:
            steps.append(("shops", lambda: self.get_shops({"archived": "false"})))
        if options.products:
            steps.append(("products", lambda: self.get_all_items({"archived": "false"})))
        if options.inventory:
            steps.append(("inventory", lambda: self.get_item_shops()))
        if options.orders:
            since = datetime.now(timezone.utc) - timedelta(days=settings.sync_sales_lookback_days)
            steps.append(("sales", lambda: self.get_completed_sales(since)))
        if options.customers:
            steps.append(
                ("customers", lambda: self.get_customers({"archived": "false", "limit": 100}))
            )

        for name, fetch in steps:
            try:
                setattr(result, name, await fetch())
            except (LightspeedAPIError, ValidationError) as e:
                logger.error(
                    "Lightspeed sync step failed",
                    user_id=self.user_id,
                    resource=name,
                    error=str(e),
                )
                result.errors[name] = str(e)

        if result.succeeded:
            self.token_manager.update_last_sync_time(self.user_id)

        logger.info(
            "Lightspeed sync finished",
            user_id=self.user_id,
            succeeded=result.succeeded,
            failed=list(result.errors),
        )
        return result

    async def test_connection(self) -> bool:
        """Check the connection by fetching account info."""
        try:
            await self.get_account()
            return True
        except (LightspeedAPIError, Unauthenticated, ValidationError):
            return False
