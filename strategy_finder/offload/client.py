"""HTTP client for the remote accelerated backtest engine.

The engine exposes a small JSON API:

- ``GET  /api/health``: ``{"status": "healthy", "version": ...}``
- ``POST /api/data/cache``: upload bars once, returns ``{"cacheId", "barCount"}``
- ``POST /api/backtest/batch``: run a batch with bars attached
- ``POST /api/backtest/batch/cached``: run a batch against a cached dataset

Batch responses are ``{"results": [{"id", "result"}], "processingTimeMs"}``.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from strategy_finder.config import DEFAULT_ENGINE_URL
from strategy_finder.metrics import BacktestResult

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from types import TracebackType

    from strategy_finder.config import CapitalSettings, RemoteCapableSettings
    from strategy_finder.types import Bar, Signal

logger = logging.getLogger(__name__)

# Environment variable overriding the engine base URL
ENV_ENGINE_URL = "STRATEGY_FINDER_ENGINE_URL"

HEALTH_CHECK_INTERVAL_SECONDS = 30.0
HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


class OffloadError(Exception):
    """Remote engine request failed (transport, HTTP status or payload)."""

    pass


@dataclass(frozen=True, slots=True)
class BatchItem:
    """One backtest in a remote batch.

    Attributes:
        id: Caller-chosen identifier echoed back in the response.
        signals: Precomputed signals.
        settings: Per-item settings (risk overrides applied).
    """

    id: str
    signals: Sequence[Signal]
    settings: RemoteCapableSettings

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "signals": [s.to_dict() for s in self.signals],
            "settings": self.settings.to_wire(),
        }


@dataclass(frozen=True, slots=True)
class BatchEntry:
    """One result of a remote batch."""

    id: str
    result: BacktestResult


@dataclass(frozen=True, slots=True)
class BatchResponse:
    """Parsed remote batch response."""

    results: list[BatchEntry]
    processing_time_ms: float = 0.0


def data_fingerprint(bars: Sequence[Bar]) -> str:
    """Cheap identity of a bar series: first time, last time, length."""
    if not bars:
        return "empty"
    return f"{bars[0].time}-{bars[-1].time}-{len(bars)}"


def _parse_batch_response(payload: Any) -> BatchResponse:
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise OffloadError("Malformed batch response: missing 'results' list")
    entries: list[BatchEntry] = []
    for raw in payload["results"]:
        if not isinstance(raw, dict) or "id" not in raw or not isinstance(raw.get("result"), dict):
            raise OffloadError(f"Malformed batch entry: {raw!r:.200}")
        try:
            result = BacktestResult.from_dict(raw["result"])
        except (AttributeError, TypeError, ValueError, OverflowError) as e:
            raise OffloadError(f"Malformed result for batch entry {raw['id']!r}: {e}") from e
        entries.append(BatchEntry(id=str(raw["id"]), result=result))
    processing = payload.get("processingTimeMs", 0.0)
    return BatchResponse(
        results=entries,
        processing_time_ms=float(processing) if isinstance(processing, int | float) else 0.0,
    )


class RemoteEngineClient:
    """Async client for the remote backtest engine.

    Health is cached for HEALTH_CHECK_INTERVAL_SECONDS after a healthy
    response; an unhealthy result is re-checked on the next call. The last
    uploaded dataset is remembered by fingerprint so repeated cache calls
    for the same bars skip the upload.

    Args:
        base_url: Engine base URL.
        timeout: Timeout in seconds for batch and upload requests.
        client: Optional preconfigured httpx.AsyncClient (tests).
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ENGINE_URL,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._clock = clock
        self._healthy = False
        self._last_health_check: float | None = None
        self._cached_data_id: str | None = None
        self._cached_data_hash: str | None = None

    @classmethod
    def from_env(cls, default_url: str = DEFAULT_ENGINE_URL, timeout: float = 60.0) -> RemoteEngineClient:
        """Create a client, honouring the STRATEGY_FINDER_ENGINE_URL override."""
        return cls(base_url=os.getenv(ENV_ENGINE_URL) or default_url, timeout=timeout)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def available(self) -> bool:
        """Result of the most recent health check."""
        return self._healthy

    async def check_health(self) -> bool:
        """Return True if the engine reports itself healthy.

        Never raises; connection problems count as unhealthy.
        """
        now = self._clock()
        if (
            self._healthy
            and self._last_health_check is not None
            and now - self._last_health_check < HEALTH_CHECK_INTERVAL_SECONDS
        ):
            return True

        try:
            client = await self._get_client()
            response = await client.get(
                f"{self.base_url}/api/health", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            if self._healthy:
                logger.warning("Remote engine became unavailable: %s", e)
            else:
                logger.info("Remote engine not available at %s: %s", self.base_url, e)
            self._healthy = False
            return False

        self._healthy = isinstance(data, dict) and data.get("status") == "healthy"
        self._last_health_check = now
        if self._healthy:
            logger.info("Remote engine connected: v%s", data.get("version", "?"))
        return self._healthy

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        """POST JSON and decode the response.

        Raises:
            OffloadError: On transport errors, non-2xx status or invalid JSON.
        """
        try:
            client = await self._get_client()
            response = await client.post(f"{self.base_url}{path}", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise OffloadError(
                f"{path} failed: HTTP {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise OffloadError(f"{path} failed: {e}") from e
        except ValueError as e:
            raise OffloadError(f"{path} returned invalid JSON: {e}") from e

    async def cache_data(self, bars: Sequence[Bar]) -> str | None:
        """Upload bars for reuse by cached batches.

        Returns:
            Cache id, or None if the engine is unavailable or the upload
            failed.
        """
        if not await self.check_health():
            return None

        fingerprint = data_fingerprint(bars)
        if self._cached_data_hash == fingerprint and self._cached_data_id:
            logger.debug("Reusing remote cache id %s", self._cached_data_id)
            return self._cached_data_id

        started = time.perf_counter()
        try:
            payload = await self._post("/api/data/cache", {"data": [b.to_dict() for b in bars]})
        except OffloadError as e:
            logger.warning("Caching %d bars on remote engine failed: %s", len(bars), e)
            return None

        cache_id = payload.get("cacheId") if isinstance(payload, dict) else None
        if not cache_id:
            logger.warning("Remote engine cache response missing cacheId")
            return None

        self._cached_data_id = str(cache_id)
        self._cached_data_hash = fingerprint
        logger.info(
            "Cached %s bars on remote engine in %.0fms, id=%s",
            payload.get("barCount", len(bars)),
            (time.perf_counter() - started) * 1000,
            cache_id,
        )
        return self._cached_data_id

    def clear_local_cache(self) -> None:
        """Forget the remembered cache id."""
        self._cached_data_id = None
        self._cached_data_hash = None

    def _batch_body(
        self,
        items: Sequence[BatchItem],
        capital: CapitalSettings,
        base_settings: RemoteCapableSettings,
        compact: bool,
    ) -> dict[str, Any]:
        return {
            "items": [item.to_wire() for item in items],
            "initialCapital": capital.initial_capital,
            "positionSizePercent": capital.position_size_percent,
            "commissionPercent": capital.commission_percent,
            "baseSettings": base_settings.to_wire(),
            "sizing": capital.sizing_payload(),
            "compact": compact,
        }

    async def run_batch_backtest(
        self,
        bars: Sequence[Bar],
        items: Sequence[BatchItem],
        capital: CapitalSettings,
        base_settings: RemoteCapableSettings,
        compact: bool = True,
    ) -> BatchResponse:
        """Run a batch, sending the bars with the request.

        Raises:
            OffloadError: If the engine is unavailable or the request fails.
        """
        if not await self.check_health():
            raise OffloadError("Remote engine unavailable")
        body = self._batch_body(items, capital, base_settings, compact)
        body["data"] = [b.to_dict() for b in bars]
        started = time.perf_counter()
        response = _parse_batch_response(await self._post("/api/backtest/batch", body))
        logger.debug(
            "Remote batch: %d runs in %.1fms (engine %.1fms)",
            len(items),
            (time.perf_counter() - started) * 1000,
            response.processing_time_ms,
        )
        return response

    async def run_cached_batch_backtest(
        self,
        cache_id: str,
        items: Sequence[BatchItem],
        capital: CapitalSettings,
        base_settings: RemoteCapableSettings,
        compact: bool = True,
    ) -> BatchResponse:
        """Run a batch against bars previously uploaded with cache_data.

        Raises:
            OffloadError: If the engine is unavailable or the request fails.
        """
        if not await self.check_health():
            raise OffloadError("Remote engine unavailable")
        body = self._batch_body(items, capital, base_settings, compact)
        body["cacheId"] = cache_id
        started = time.perf_counter()
        response = _parse_batch_response(await self._post("/api/backtest/batch/cached", body))
        logger.debug(
            "Remote cached batch: %d runs in %.1fms (engine %.1fms)",
            len(items),
            (time.perf_counter() - started) * 1000,
            response.processing_time_ms,
        )
        return response

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> RemoteEngineClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


__all__ = [
    "ENV_ENGINE_URL",
    "BatchEntry",
    "BatchItem",
    "BatchResponse",
    "OffloadError",
    "RemoteEngineClient",
    "data_fingerprint",
]
