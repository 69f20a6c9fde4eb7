"""
Node API Fetchers - Thin async wrappers over the Aptos-style REST API.

Each fetch either returns a parsed payload or raises:
- RateLimitError: HTTP 429 (carries Retry-After seconds)
- FetchError: any other non-2xx, transport failure, bad JSON or timeout

No retries of a single URL happen here. Retry and backoff policy lives in
the polling engine. Multiple base URLs per network are tried in order.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

from chain_stream.config import NetworkEndpoints, StreamConfig
from chain_stream.exceptions import FetchError, RateLimitError
from chain_stream.models import GasEstimate, LedgerInfo, Network


logger = logging.getLogger(__name__)


class AptosFetcher:
    """
    Fetches ledger info, blocks, the validator set and gas estimates.

    Usage:
        async with AptosFetcher() as fetcher:
            ledger = await fetcher.fetch_ledger_info(Network.MAINNET)
            block = await fetcher.fetch_block(Network.MAINNET, ledger.block_height)
    """

    LEDGER_PATH = "/"
    BLOCK_PATH = "/blocks/by_height/{height}"
    VALIDATOR_SET_PATH = "/accounts/0x1/resource/0x1::stake::ValidatorSet"
    GAS_ESTIMATE_PATH = "/estimate_gas_price"

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        endpoints: Optional[dict[Network, NetworkEndpoints]] = None,
    ) -> None:
        self._config = config or StreamConfig()
        self._timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._endpoints: dict[Network, NetworkEndpoints] = dict(endpoints or {})
        self._last_latency_ms: Optional[float] = None

    # ─────────────────────────────────────────────────────────────
    # Fetch operations
    # ─────────────────────────────────────────────────────────────

    async def fetch_ledger_info(self, network: Network) -> LedgerInfo:
        """Fetch the current ledger head."""
        data = await self._request(network, self.LEDGER_PATH)
        try:
            return LedgerInfo.from_api(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FetchError(
                message="Malformed ledger info",
                network=network.value,
                response_body=str(data)[:500],
                original_error=e,
            )

    async def fetch_block(self, network: Network, height: int) -> dict[str, Any]:
        """Fetch one block by height, with its transactions embedded."""
        return await self._request(
            network,
            self.BLOCK_PATH.format(height=height),
            params={"with_transactions": "true"},
        )

    async def fetch_validator_set(self, network: Network) -> dict[str, Any]:
        """Fetch the `0x1::stake::ValidatorSet` resource."""
        return await self._request(network, self.VALIDATOR_SET_PATH)

    async def fetch_gas_estimate(self, network: Network) -> GasEstimate:
        """Fetch current gas unit price estimates."""
        data = await self._request(network, self.GAS_ESTIMATE_PATH)
        try:
            return GasEstimate.from_api(data)
        except (AttributeError, TypeError, ValueError) as e:
            raise FetchError(
                message="Malformed gas estimate",
                network=network.value,
                response_body=str(data)[:500],
                original_error=e,
            )

    @property
    def last_latency_ms(self) -> Optional[float]:
        """Latency of the last completed HTTP exchange."""
        return self._last_latency_ms

    # ─────────────────────────────────────────────────────────────
    # HTTP Helpers
    # ─────────────────────────────────────────────────────────────

    def endpoints_for(self, network: Network) -> NetworkEndpoints:
        """Resolve (and memoize) endpoints for a network."""
        if network not in self._endpoints:
            self._endpoints[network] = self._config.endpoints(network)
        return self._endpoints[network]

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    def _get_headers(self, endpoints: NetworkEndpoints) -> dict[str, str]:
        """Default headers. Caching is disabled so every poll sees fresh data."""
        headers = {
            "Accept": "application/json",
            "User-Agent": "chain-stream/1.0",
            "Cache-Control": "no-cache, no-store",
            "Pragma": "no-cache",
        }
        if endpoints.api_key:
            headers["x-api-key"] = endpoints.api_key
        return headers

    def _parse_retry_after(self, value: Optional[str]) -> int:
        """Parse Retry-After seconds, falling back to the configured default."""
        default = self._config.default_retry_after_seconds
        if not value:
            return default
        try:
            seconds = int(value.strip())
        except ValueError:
            return default
        return seconds if seconds >= 0 else default

    async def _request(
        self,
        network: Network,
        path: str,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        """GET `path` from each endpoint in turn until one succeeds."""
        endpoints = self.endpoints_for(network)
        session = await self._get_session()
        headers = self._get_headers(endpoints)

        last_error: Optional[FetchError] = None
        retry_after: Optional[int] = None

        for base in endpoints.urls:
            url = f"{base}{path}"
            start_time = time.time()
            try:
                async with session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self._timeout,
                ) as response:
                    self._last_latency_ms = (time.time() - start_time) * 1000

                    if response.status == 429:
                        retry_after = self._parse_retry_after(response.headers.get("Retry-After"))
                        logger.warning(
                            f"[{network.value}] Rate limited by {base} "
                            f"(retry after {retry_after}s)"
                        )
                        continue

                    if not 200 <= response.status < 300:
                        body = await response.text()
                        last_error = FetchError(
                            message=f"HTTP {response.status}",
                            network=network.value,
                            status_code=response.status,
                            response_body=body[:500],
                            request_url=url,
                        )
                        logger.debug(f"[{network.value}] {url} -> HTTP {response.status}")
                        continue

                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        last_error = FetchError(
                            message="Invalid JSON response",
                            network=network.value,
                            status_code=response.status,
                            request_url=url,
                            original_error=e,
                        )

            except asyncio.TimeoutError as e:
                last_error = FetchError(
                    message=f"Timeout after {self._config.request_timeout_seconds}s",
                    network=network.value,
                    request_url=url,
                    original_error=e,
                )
            except aiohttp.ClientError as e:
                last_error = FetchError(
                    message=f"Connection error: {e}",
                    network=network.value,
                    request_url=url,
                    original_error=e,
                )

        if retry_after is not None:
            raise RateLimitError(
                message="Rate limit exceeded",
                network=network.value,
                retry_after_seconds=retry_after,
            )

        raise last_error or FetchError(
            message="Upstream unavailable",
            network=network.value,
        )

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "AptosFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(networks={[n.value for n in self._endpoints]})>"
