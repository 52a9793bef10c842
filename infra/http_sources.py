"""
HTTP adapters for the engine's external collaborators.

- HttpPriceOracle: JSON price endpoint (price, optional liquidity/supply)
- BirdeyeCandleSource: Birdeye OHLCV with a global min-interval throttle and
  a short TTL cache per (asset, timeframe, limit)
- RpcConcentrationSource: Solana JSON-RPC getTokenLargestAccounts +
  getTokenSupply, reported as the largest holder's percentage of supply
- HttpSellBroker: POST to a broker service; never retried within a tick

The blocking requests calls run in worker threads via asyncio.to_thread so
the event loop (and the other guard loops) keep running.
"""

import asyncio
import logging
import math
import os
import random
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from core.exceptions import ExternalDataUnavailable
from core.interfaces import CandleSource, ConcentrationSource, PriceOracle, SellBroker
from core.models import Candle, PriceQuote, SellResult

logger = logging.getLogger(__name__)

BIRDEYE_BASE = "https://public-api.birdeye.so"
_BIRDEYE_TIMEFRAMES = {"1m": "1m", "5m": "5m", "15m": "15m", "1h": "1H", "4h": "4H", "1d": "1D"}


def resolve_secret(cfg: Dict[str, Any], key: str, default_env: Optional[str] = None) -> Optional[str]:
    """Value from `key` (with ${ENV} expansion) or from the env var named by `<key>_env`."""
    value = cfg.get(key)
    if isinstance(value, str) and "${" in value:
        value = os.path.expandvars(value)
    if value:
        return str(value)
    env_name = cfg.get(f"{key}_env") or default_env
    return os.getenv(env_name) if env_name else None


def _require_url(cfg: Dict[str, Any]) -> str:
    url = resolve_secret(cfg, "url")
    if not url:
        raise ValueError(f"endpoint url not configured (url_env={cfg.get('url_env')!r} is unset)")
    return url


def _as_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class JsonHttpClient:
    """requests.Session wrapper with retry on 429, 5xx and network errors."""

    def __init__(self, name: str, timeout: float = 10.0, max_retries: int = 3,
                 headers: Optional[Dict[str, str]] = None):
        self.name = name
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if headers:
            self.session.headers.update(headers)

    def _req(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
             body: Optional[Any] = None, max_retries: Optional[int] = None) -> Any:
        """
        Make a JSON HTTP request with exponential backoff.

        Retries on:
        - 429 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on:
        - 4xx (except 429)
        """
        attempts = self.max_retries if max_retries is None else max(1, int(max_retries))
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = self.session.request(method, url, params=params, json=body, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0

                # Don't retry on client errors (except 429)
                if 400 <= status_code < 500 and status_code != 429:
                    logger.debug(f"{self.name} client error {status_code} for {method} {url}")
                    raise ExternalDataUnavailable(self.name, e) from e

                if status_code == 429:
                    logger.warning(f"{self.name} rate limited (429), attempt {attempt + 1}/{attempts}")
                else:
                    logger.warning(f"{self.name} server error ({status_code}), attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"{self.name} network error: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.RequestException, ValueError) as e:
                # Malformed request or non-JSON body
                raise ExternalDataUnavailable(self.name, e) from e

            # Exponential backoff with jitter if not last attempt
            if attempt < attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)  # 1-2s, 2-3s, 4-5s
                logger.debug(f"{self.name} retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        raise ExternalDataUnavailable(self.name, last_exception)

    def close(self) -> None:
        self.session.close()


class HttpPriceOracle(PriceOracle):
    """
    GET `<url>?<asset_param>=<asset_id>` returning a JSON object with a
    price field and optional liquidity/supply fields.
    """

    def __init__(self, url: str, asset_param: str = "asset_id", price_field: str = "price",
                 liquidity_field: str = "liquidity", supply_field: str = "supply",
                 timeout: float = 10.0, max_retries: int = 3, api_key: Optional[str] = None):
        headers = {"X-API-KEY": api_key} if api_key else None
        self.client = JsonHttpClient("price_oracle", timeout=timeout, max_retries=max_retries, headers=headers)
        self.url = url
        self.asset_param = asset_param
        self.price_field = price_field
        self.liquidity_field = liquidity_field
        self.supply_field = supply_field

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "HttpPriceOracle":
        return cls(
            url=_require_url(cfg),
            asset_param=cfg.get("asset_param", "asset_id"),
            price_field=cfg.get("price_field", "price"),
            liquidity_field=cfg.get("liquidity_field", "liquidity"),
            supply_field=cfg.get("supply_field", "supply"),
            timeout=float(cfg.get("timeout_seconds", 10.0)),
            max_retries=int(cfg.get("max_retries", 3)),
            api_key=resolve_secret(cfg, "api_key"),
        )

    def _fetch(self, asset_id: str) -> PriceQuote:
        payload = self.client._req("GET", self.url, params={self.asset_param: asset_id})
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise ExternalDataUnavailable("price_oracle", ValueError("unexpected payload"))

        price = _as_number(payload.get(self.price_field))
        if price is None or price <= 0:
            raise ExternalDataUnavailable("price_oracle", ValueError(f"no usable price for {asset_id}"))
        return PriceQuote(
            price=price,
            source=str(payload.get("source") or "http"),
            liquidity=_as_number(payload.get(self.liquidity_field)),
            supply=_as_number(payload.get(self.supply_field)),
        )

    async def get_price(self, asset_id: str) -> PriceQuote:
        return await asyncio.to_thread(self._fetch, asset_id)


class BirdeyeCandleSource(CandleSource):

    def __init__(self, api_key: Optional[str], chain: str = "solana", base_url: str = BIRDEYE_BASE,
                 min_interval_seconds: float = 0.8, cache_ttl_seconds: float = 10.0,
                 timeout: float = 10.0, max_retries: int = 2):
        self.api_key = api_key
        self.chain = chain
        self.base_url = base_url.rstrip("/")
        self.min_interval_seconds = float(min_interval_seconds)
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        headers = {"X-API-KEY": api_key, "x-chain": chain} if api_key else None
        self.client = JsonHttpClient("birdeye", timeout=timeout, max_retries=max_retries, headers=headers)

        self._throttle_lock = threading.Lock()
        self._last_request = 0.0
        self._cache: Dict[Tuple[str, str, int], Tuple[float, List[Candle]]] = {}

        if not api_key:
            logger.warning("Birdeye API key missing; candle source will return no data")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BirdeyeCandleSource":
        return cls(
            api_key=resolve_secret(cfg, "api_key", default_env="BIRDEYE_API_KEY"),
            chain=cfg.get("chain", "solana"),
            base_url=cfg.get("base_url", BIRDEYE_BASE),
            min_interval_seconds=float(cfg.get("min_interval_seconds", 0.8)),
            cache_ttl_seconds=float(cfg.get("cache_ttl_seconds", 10.0)),
            timeout=float(cfg.get("timeout_seconds", 10.0)),
            max_retries=int(cfg.get("max_retries", 2)),
        )

    def _throttle(self) -> None:
        with self._throttle_lock:
            wait = self.min_interval_seconds - (time.monotonic() - self._last_request)
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    @staticmethod
    def parse_items(items: Any) -> List[Candle]:
        """Normalize Birdeye OHLCV items, dropping any bar with a non-numeric field."""
        candles: List[Candle] = []
        if not isinstance(items, list):
            return candles
        for item in items:
            if not isinstance(item, dict):
                continue
            unix = _as_number(item.get("unixTime"))
            fields = [_as_number(item.get(k)) for k in ("o", "h", "l", "c")]
            volume = _as_number(item.get("v", item.get("volume", item.get("vol"))))
            if unix is None or volume is None or any(f is None for f in fields):
                continue
            o, h, l, c = fields
            candles.append(Candle(t=int(unix * 1000), open=o, high=h, low=l, close=c, volume=volume))
        candles.sort(key=lambda candle: candle.t)
        return candles

    def _fetch(self, asset_id: str, timeframe: str, limit: int) -> Optional[List[Candle]]:
        if not self.api_key or not asset_id:
            return None

        tf = _BIRDEYE_TIMEFRAMES.get(str(timeframe).lower(), "5m")
        key = (asset_id, tf, int(limit))
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        self._throttle()
        now = int(time.time())
        seconds_per_bar = {"1m": 60, "5m": 300, "15m": 900, "1H": 3600, "4H": 14400, "1D": 86400}[tf]
        payload = self.client._req(
            "GET",
            f"{self.base_url}/defi/ohlcv",
            params={
                "address": asset_id,
                "type": tf,
                "time_from": now - seconds_per_bar * int(limit),
                "time_to": now,
            },
        )
        items = ((payload or {}).get("data") or {}).get("items") if isinstance(payload, dict) else None
        candles = self.parse_items(items)[-int(limit):]
        if not candles:
            return None

        self._cache[key] = (time.monotonic(), candles)
        return candles

    async def get_candles(self, asset_id: str, timeframe: str, limit: int) -> Optional[List[Candle]]:
        return await asyncio.to_thread(self._fetch, asset_id, timeframe, limit)


class RpcConcentrationSource(ConcentrationSource):
    """Largest token account's share of total supply via Solana JSON-RPC."""

    def __init__(self, rpc_url: str, timeout: float = 10.0, max_retries: int = 3):
        self.rpc_url = rpc_url
        self.client = JsonHttpClient("rpc", timeout=timeout, max_retries=max_retries)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "RpcConcentrationSource":
        if not cfg.get("url_env"):
            cfg = {**cfg, "url_env": "RPC_URL"}
        return cls(_require_url(cfg), timeout=float(cfg.get("timeout_seconds", 10.0)), max_retries=int(cfg.get("max_retries", 3)))

    def _call(self, method: str, params: List[Any]) -> Any:
        payload = self.client._req(
            "POST",
            self.rpc_url,
            body={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
        )
        if not isinstance(payload, dict):
            raise ExternalDataUnavailable("rpc", ValueError(f"{method}: unexpected payload"))
        if payload.get("error"):
            message = payload["error"].get("message") if isinstance(payload["error"], dict) else payload["error"]
            raise ExternalDataUnavailable("rpc", RuntimeError(f"{method}: {message}"))
        return payload.get("result")

    def _fetch(self, asset_id: str) -> float:
        supply = ((self._call("getTokenSupply", [asset_id]) or {}).get("value") or {}).get("amount")
        largest = (self._call("getTokenLargestAccounts", [asset_id]) or {}).get("value") or []

        try:
            total = int(supply)
            top = max(int(account.get("amount") or 0) for account in largest)
        except (TypeError, ValueError) as e:
            raise ExternalDataUnavailable("rpc", e) from e
        if total <= 0:
            raise ExternalDataUnavailable("rpc", ValueError(f"zero supply for {asset_id}"))
        return top / total * 100.0

    async def get_top_holder_pct(self, asset_id: str) -> float:
        return await asyncio.to_thread(self._fetch, asset_id)


class HttpSellBroker(SellBroker):
    """POST {"asset_id", "amount"} to the broker service; the body maps onto SellResult."""

    def __init__(self, url: str, timeout: float = 60.0, api_key: Optional[str] = None):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self.url = url
        self.client = JsonHttpClient("broker", timeout=timeout, max_retries=1, headers=headers)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "HttpSellBroker":
        return cls(
            url=_require_url(cfg),
            timeout=float(cfg.get("timeout_seconds", 60.0)),
            api_key=resolve_secret(cfg, "api_key"),
        )

    def _sell(self, asset_id: str, amount_spec: str) -> SellResult:
        payload = self.client._req("POST", self.url, body={"asset_id": asset_id, "amount": amount_spec}, max_retries=1)
        return SellResult.from_response(payload)

    async def sell(self, asset_id: str, amount_spec: str) -> SellResult:
        return await asyncio.to_thread(self._sell, asset_id, amount_spec)
