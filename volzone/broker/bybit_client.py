"""Bybit v5 REST API async client.

Handles all communication with Bybit: kline fetching, order-book and trade
sampling, and setting position take-profit / stop-loss.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import httpx

from volzone.broker.models import (
    BookLevel,
    Candle,
    InstrumentInfo,
    OrderBookSample,
    ProtectiveLevels,
    TradePrint,
)
from volzone.config import Config
from volzone.errors import DataUnavailable, LevelsNotModified

logger = logging.getLogger("volzone")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# Bybit retCode for "TP/SL not modified" (levels already hold the values)
_RET_CODE_NOT_MODIFIED = 34040

_SAMPLE_POLL_MS = 1000
_BOOK_DEPTH = 50
_TRADE_LIMIT = 100


class BybitError(DataUnavailable):
    """Bybit answered with a non-zero ``retCode``."""

    def __init__(self, ret_code: int, ret_msg: str) -> None:
        super().__init__(f"Bybit API error {ret_code}: {ret_msg}")
        self.ret_code = ret_code
        self.ret_msg = ret_msg


def _ms_to_datetime(ms) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _timestamp_ms() -> str:
    return str(int(time.time() * 1000))


def _decimals(value: str) -> int:
    """Number of decimals in a price string (``"0.10"`` -> 1, ``"5"`` -> 0)."""
    stripped = value.rstrip("0") if "." in value else value
    return len(stripped.split(".")[1]) if "." in stripped else 0


class BybitClient:
    """Async client wrapping the Bybit v5 REST API."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.bybit_base_url
        self._category = config.category
        self._api_key = config.bybit_api_key
        self._api_secret = config.bybit_api_secret
        self._recv_window = str(config.recv_window_ms)
        self._instrument_info: dict[str, InstrumentInfo] = {}

    # ── Signing ──────────────────────────────────────────────────────────

    def _signed_headers(self, payload: str) -> dict[str, str]:
        """Headers for a private endpoint; *payload* is the query string or JSON body."""
        timestamp = _timestamp_ms()
        prehash = timestamp + self._api_key + self._recv_window + payload
        signature = hmac.new(
            self._api_secret.encode("utf-8"),
            prehash.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return {
            "X-BAPI-API-KEY": self._api_key,
            "X-BAPI-SIGN": signature,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": self._recv_window,
            "Content-Type": "application/json",
        }

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        signed_payload: Optional[str] = None,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.  When
        *signed_payload* is given every attempt is signed afresh, so a retry
        carries a timestamp inside the receive window.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            if signed_payload is not None:
                headers = self._signed_headers(signed_payload)
            else:
                headers = {"Content-Type": "application/json"}
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=headers,
                        timeout=10.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Bybit %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Bybit %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        # All retries exhausted, raise the last error
        raise last_exc  # type: ignore[misc]

    @staticmethod
    def _result(resp: httpx.Response) -> dict:
        """Unwrap a v5 envelope, mapping non-zero ``retCode`` to exceptions."""
        data = resp.json()
        ret_code = int(data.get("retCode", 0))
        if ret_code == _RET_CODE_NOT_MODIFIED:
            raise LevelsNotModified(data.get("retMsg", "not modified"))
        if ret_code != 0:
            raise BybitError(ret_code, data.get("retMsg", ""))
        return data.get("result", {})

    async def _get_public(self, path: str, params: dict) -> dict:
        resp = await self._request_with_retry("get", f"{self._base_url}{path}", params=params)
        return self._result(resp)

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        instrument: str,
        interval: str,
        count: int = 200,
    ) -> list[Candle]:
        """Fetch klines from Bybit.

        Args:
            instrument: e.g. ``"BTCUSDT"``
            interval: Bybit interval — ``"1"``, ``"5"``, ``"60"``, ``"D"`` …
            count: number of candles to request (max 1000)

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        result = await self._get_public(
            "/v5/market/kline",
            {
                "category": self._category,
                "symbol": instrument,
                "interval": interval,
                "limit": min(count, 1000),
            },
        )
        candles = [
            Candle(
                timestamp=_ms_to_datetime(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in result.get("list", [])
        ]
        # Bybit returns newest first
        candles.sort(key=lambda c: c.timestamp)
        return candles

    # ── Order book / trades ──────────────────────────────────────────────

    async def fetch_order_book(self, instrument: str, depth: int = _BOOK_DEPTH) -> tuple[tuple[BookLevel, ...], tuple[BookLevel, ...]]:
        """Return ``(bids, asks)``, each best price first."""
        result = await self._get_public(
            "/v5/market/orderbook",
            {"category": self._category, "symbol": instrument, "limit": depth},
        )
        bids = tuple(BookLevel(price=float(p), size=float(s)) for p, s in result.get("b", []))
        asks = tuple(BookLevel(price=float(p), size=float(s)) for p, s in result.get("a", []))
        return bids, asks

    async def fetch_recent_trades(self, instrument: str, limit: int = _TRADE_LIMIT) -> list[TradePrint]:
        result = await self._get_public(
            "/v5/market/recent-trade",
            {"category": self._category, "symbol": instrument, "limit": limit},
        )
        return [
            TradePrint(
                timestamp=_ms_to_datetime(t["time"]),
                price=float(t["price"]),
                size=float(t["size"]),
                side=t["side"].lower(),
                trade_id=t.get("execId", ""),
            )
            for t in result.get("list", [])
        ]

    async def sample(self, instrument: str, window_ms: int) -> OrderBookSample:
        """Poll trades for *window_ms*, then take a final book snapshot.

        Only trades printed at or after the start of the window are kept;
        trades seen on several polls are counted once.
        """
        started_at = datetime.now(timezone.utc)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window_ms / 1000
        seen: dict[str, TradePrint] = {}

        while True:
            for trade in await self.fetch_recent_trades(instrument):
                if trade.timestamp >= started_at:
                    key = trade.trade_id or f"{trade.timestamp.isoformat()}:{trade.price}:{trade.size}"
                    seen.setdefault(key, trade)
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(remaining, _SAMPLE_POLL_MS / 1000))

        bids, asks = await self.fetch_order_book(instrument)
        return OrderBookSample(
            instrument=instrument,
            started_at=started_at,
            window_ms=window_ms,
            bids=bids,
            asks=asks,
            trades=tuple(sorted(seen.values(), key=lambda t: t.timestamp)),
        )

    # ── Instrument rules ─────────────────────────────────────────────────

    async def fetch_instrument_info(self, symbol: str) -> InstrumentInfo:
        """Tick size for *symbol*, fetched once and cached per symbol."""
        cached = self._instrument_info.get(symbol)
        if cached is not None:
            return cached

        result = await self._get_public(
            "/v5/market/instruments-info",
            {"category": self._category, "symbol": symbol},
        )
        rows = result.get("list", [])
        if not rows:
            raise DataUnavailable(f"No instrument info for {symbol}")
        tick = rows[0]["priceFilter"]["tickSize"]
        info = InstrumentInfo(symbol=symbol, tick_size=float(tick), price_precision=_decimals(tick))
        self._instrument_info[symbol] = info
        return info

    # ── Position management ──────────────────────────────────────────────

    async def set_protective_levels(
        self,
        trade_id: str,
        symbol: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> ProtectiveLevels:
        """Set full-position TP/SL via ``/v5/position/trading-stop``.

        Both levels are rounded to the symbol's tick size first.

        Raises:
            LevelsNotModified: Bybit reports the levels are already set.
            BybitError: any other non-zero ``retCode``.
        """
        info = await self.fetch_instrument_info(symbol)
        if take_profit is not None:
            take_profit = info.round_price(take_profit)
        if stop_loss is not None:
            stop_loss = info.round_price(stop_loss)

        body: dict = {
            "category": self._category,
            "symbol": symbol,
            "tpslMode": "Full",
            "positionIdx": 0,
        }
        if take_profit is not None:
            body["takeProfit"] = info.format_price(take_profit)
        if stop_loss is not None:
            body["stopLoss"] = info.format_price(stop_loss)

        payload = json.dumps(body, separators=(",", ":"))
        resp = await self._request_with_retry(
            "post",
            f"{self._base_url}/v5/position/trading-stop",
            signed_payload=payload,
            content=payload,
        )
        self._result(resp)
        logger.info("Bybit trading-stop %s (%s): TP=%s SL=%s", symbol, trade_id, take_profit, stop_loss)
        return ProtectiveLevels(
            trade_id=trade_id,
            symbol=symbol,
            take_profit=take_profit,
            stop_loss=stop_loss,
        )
