import httpx
from typing import Dict, Optional, Any
import structlog
from .config import settings
from .error_handling import ExternalAPIError, retry_with_backoff
from .models import PoolRecommendation, TargetBin

logger = structlog.get_logger()

class BaseAPIClient:
    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
                transport=self.transport
            )

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Send one request. 5xx and network errors raise httpx errors; other 4xx raise ExternalAPIError."""
        if not self.client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        response = await self.client.request(method, endpoint, **kwargs)
        if response.status_code >= 500:
            response.raise_for_status()
        if response.status_code >= 400 and response.status_code != 404:
            logger.error(f"HTTP error {response.status_code} for {method} {endpoint}",
                         status_code=response.status_code)
            raise ExternalAPIError(f"API request failed: {response.status_code}")
        return response

class SignalServiceClient(BaseAPIClient):
    """Pool recommendation source backed by the signal service HTTP API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(
            base_url or settings.SIGNAL_SERVICE_URL,
            headers={"Accept": "application/json"},
            timeout=timeout if timeout is not None else settings.SIGNAL_SERVICE_TIMEOUT_SECONDS,
            transport=transport
        )
        self._send_with_retry = retry_with_backoff(
            max_attempts=max_retries if max_retries is not None else settings.SIGNAL_SERVICE_MAX_RETRIES,
            base_delay=retry_base_delay,
            exceptions=(httpx.RequestError, httpx.HTTPStatusError)
        )(self._send)

    async def get_recommendation(self, pool_address: str) -> Optional[PoolRecommendation]:
        """Latest recommendation for a pool, or None when the service has none"""
        endpoint = f"/api/pools/{pool_address}/recommendation"

        try:
            response = await self._send_with_retry("GET", endpoint)
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for GET {endpoint}",
                         error=str(e), status_code=e.response.status_code, pool_address=pool_address)
            raise ExternalAPIError(f"API request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error for GET {endpoint}", error=str(e), pool_address=pool_address)
            raise ExternalAPIError(f"Network error: {str(e)}") from e

        if response.status_code == 404:
            logger.debug("No recommendation available", pool_address=pool_address)
            return None

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalAPIError(f"Invalid JSON from signal service for pool {pool_address}") from e

        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]

        return self._parse_recommendation(pool_address, data)

    @staticmethod
    def _parse_recommendation(pool_address: str, data: Dict[str, Any]) -> PoolRecommendation:
        if not isinstance(data, dict):
            raise ExternalAPIError(f"Malformed recommendation for pool {pool_address}")

        # The service speaks camelCase; snake_case keys are accepted too
        def field(camel: str, snake: str, default=None):
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        try:
            target_bins = [
                TargetBin(
                    bin_id=b.get("binId", b.get("bin_id")),
                    percentage=b.get("percentage", 0.0)
                )
                for b in field("targetBins", "target_bins", []) or []
            ]
            return PoolRecommendation(
                pool_address=field("poolAddress", "pool_address") or pool_address,
                health_score=field("healthScore", "health_score"),
                action=field("action", "action") or "maintain",
                adjustment_percentage=field("adjustmentPercentage", "adjustment_percentage"),
                target_bins=target_bins,
                price_change_24h=field("priceChange24h", "price_change_24h"),
                volume_change=field("volumeChange", "volume_change"),
                liquidity_change=field("liquidityChange", "liquidity_change"),
            )
        except ValueError as e:
            raise ExternalAPIError(f"Malformed recommendation for pool {pool_address}: {e}") from e

    async def health_check(self) -> str:
        try:
            response = await self._send("GET", "/health")
            return "healthy" if response.status_code < 400 else "unhealthy"
        except (httpx.HTTPError, ExternalAPIError) as e:
            logger.warning("Signal service health check failed", error=str(e))
            return "unhealthy"
