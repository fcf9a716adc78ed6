"""
Upstream Admin API Client

Async HTTP client for one shop: GraphQL, REST reads and streamed downloads
of bulk operation results. Transient failures (429, 5xx, GraphQL throttling,
transport errors) are retried here with exponential backoff; a 429's
Retry-After header takes precedence over the backoff.
"""

from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shopsync.config import get_settings
from shopsync.errors import (
    ConfigurationError,
    TerminalUpstreamError,
    TransientUpstreamError,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

RETRYABLE_GRAPHQL_CODES = {"THROTTLED", "INTERNAL_SERVER_ERROR"}
MAX_RETRY_AFTER_SECONDS = 60.0


class ShopifyClient:
    """
    Admin API client bound to a single shop.
    
    Example:
        async with ShopifyClient("shop.myshopify.com", token) as client:
            data = await client.graphql("{ shop { name } }")
    """
    
    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_multiplier: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop = shop
        self.api_version = api_version or settings.shopify.api_version
        self.max_retries = max_retries or settings.shopify.max_retries
        self._backoff = wait_exponential(multiplier=backoff_multiplier, min=backoff_multiplier, max=30)
        
        timeout = timeout or settings.shopify.request_timeout
        self._client = httpx.AsyncClient(
            base_url=f"https://{shop}/admin/api/{self.api_version}/",
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        # Result files live on signed storage URLs that must not see the token
        self._download_client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
    
    async def __aenter__(self) -> "ShopifyClient":
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
    
    async def close(self) -> None:
        """Close both HTTP clients"""
        await self._client.aclose()
        await self._download_client.aclose()
    
    # =========================================================================
    # RETRY HANDLING
    # =========================================================================
    
    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientUpstreamError) and exc.retry_after is not None:
            return min(exc.retry_after, MAX_RETRY_AFTER_SECONDS)
        return self._backoff(retry_state)
    
    def _log_retry(self, retry_state) -> None:
        logger.warning(
            "Retrying upstream call",
            shop=self.shop,
            attempt=retry_state.attempt_number,
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )
    
    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._wait,
            retry=retry_if_exception_type((TransientUpstreamError, httpx.TransportError)),
            before_sleep=self._log_retry,
            reraise=True,
        )
    
    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise TransientUpstreamError(
                "HTTP 429: rate limited",
                retry_after=float(retry_after) if retry_after else None,
            )
        if status >= 500:
            raise TransientUpstreamError(f"HTTP {status}")
        raise TerminalUpstreamError(f"HTTP {status}: {response.text[:200]}")
    
    @staticmethod
    def _check_graphql(body: Dict[str, Any]) -> Dict[str, Any]:
        errors = body.get("errors") or []
        if errors:
            codes = {(error.get("extensions") or {}).get("code") for error in errors}
            message = "; ".join(error.get("message", "unknown error") for error in errors)
            if codes & RETRYABLE_GRAPHQL_CODES:
                raise TransientUpstreamError(f"GraphQL {','.join(sorted(c for c in codes if c))}: {message}")
            raise TerminalUpstreamError(f"GraphQL error: {message}")
        return body.get("data") or {}
    
    # =========================================================================
    # REQUESTS
    # =========================================================================
    
    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query or mutation.
        
        Returns:
            The ``data`` member of the response
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.post("graphql.json", json=payload)
                self._raise_for_status(response)
                data = self._check_graphql(response.json())
        return data
    
    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a REST resource relative to the versioned admin root"""
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.get(path, params=params)
                self._raise_for_status(response)
                body = response.json()
        return body
    
    async def stream_lines(self, url: str) -> AsyncIterator[str]:
        """
        Stream a result file line by line.
        
        Opening the download is retried; once bytes are flowing the stream
        is consumed once.
        """
        response: Optional[httpx.Response] = None
        async for attempt in self._retrying():
            with attempt:
                request = self._download_client.build_request("GET", url)
                response = await self._download_client.send(request, stream=True)
                try:
                    self._raise_for_status(response)
                except Exception:
                    await response.aclose()
                    raise
        
        try:
            async for line in response.aiter_lines():
                if line.strip():
                    yield line
        finally:
            await response.aclose()


def create_shopify_client(shop: str, **kwargs) -> ShopifyClient:
    """
    Build a client for a configured shop.
    
    Raises:
        ConfigurationError: If no access token is configured for the shop
    """
    token = settings.shopify.token_for(shop)
    if not token:
        raise ConfigurationError(f"No access token configured for {shop}")
    return ShopifyClient(shop, token, **kwargs)
