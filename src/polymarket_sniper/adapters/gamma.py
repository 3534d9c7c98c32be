from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import Optional

import httpx

from polymarket_sniper.config import MarketConfig
from polymarket_sniper.models import MarketWindow


class DiscoveryError(Exception):
    """A window lookup returned something unusable."""


def _parse_ts(s) -> Optional[float]:
    if not s:
        return None
    try:
        return datetime.fromisoformat(str(s).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_list(v) -> list:
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except json.JSONDecodeError:
            return []
    return v if isinstance(v, list) else []


class GammaAdapter:
    """Window discovery and price-to-beat lookups.

    Every failure (transport error, non-200, malformed payload) comes back as
    ``None`` so callers only deal with "found" or "not found".
    """

    def __init__(self, cfg: MarketConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = cfg
        self.base_url = cfg.gamma_base.rstrip("/")
        self.call_count = 0
        self._transport = transport
        self.last_error: Optional[str] = None

    def reset_call_count(self):
        self.call_count = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.cfg.http_timeout_seconds, transport=self._transport)

    async def _counted_get(self, client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
        self.call_count += 1
        return await client.get(url, **kwargs)

    def window_start(self, now: float) -> int:
        size = int(self.cfg.window_seconds)
        return int(now // size) * size

    def slug_for(self, open_ts: float) -> str:
        return f"{self.cfg.slug_prefix}{int(open_ts)}"

    def _to_window(self, event: dict, slug: str, open_ts: float) -> MarketWindow:
        if event.get("closed"):
            raise DiscoveryError("closed")
        markets = event.get("markets") or []
        m = markets[0] if markets and isinstance(markets[0], dict) else event
        token_ids = _json_list(m.get("clobTokenIds"))
        if len(token_ids) < 2:
            raise DiscoveryError("token_ids_missing")
        prices = _json_list(m.get("outcomePrices"))
        try:
            up_hint = float(prices[0]) if len(prices) > 0 else None
            down_hint = float(prices[1]) if len(prices) > 1 else None
        except (TypeError, ValueError):
            up_hint = down_hint = None

        close_ts = _parse_ts(event.get("endDate") or m.get("endDate"))
        if close_ts is None:
            close_ts = open_ts + self.cfg.window_seconds
        start_ts = _parse_ts(m.get("eventStartTime") or event.get("startTime")) or open_ts

        return MarketWindow(
            market_id=str(m.get("id") or event.get("id") or slug),
            slug=slug,
            title=str(event.get("title") or m.get("question") or slug),
            open_ts=start_ts,
            close_ts=close_ts,
            up_token=str(token_ids[0]),
            down_token=str(token_ids[1]),
            initial_up=up_hint,
            initial_down=down_hint,
        )

    async def fetch_window(self, slug: str, open_ts: float) -> Optional[MarketWindow]:
        self.last_error = None
        try:
            async with self._client() as client:
                r = await self._counted_get(client, f"{self.base_url}/events", params={"slug": slug})
            if r.status_code != 200:
                self.last_error = f"http_{r.status_code}"
                return None
            arr = r.json()
            if not isinstance(arr, list) or not arr:
                self.last_error = "not_found"
                return None
            return self._to_window(arr[0], slug, open_ts)
        except DiscoveryError as e:
            self.last_error = str(e)
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.last_error = f"{type(e).__name__}: {e}"
            return None

    async def fetch_current_window(self, now: float) -> Optional[MarketWindow]:
        open_ts = self.window_start(now)
        return await self.fetch_window(self.slug_for(open_ts), open_ts)

    async def fetch_price_to_beat(self, window: MarketWindow) -> Optional[float]:
        params = {
            "symbol": self.cfg.symbol,
            "eventStartTime": _iso(window.open_ts),
            "variant": self.cfg.price_variant,
            "endDate": _iso(window.close_ts),
        }
        try:
            async with self._client() as client:
                r = await self._counted_get(client, self.cfg.crypto_price_url, params=params)
            if r.status_code != 200:
                self.last_error = f"http_{r.status_code}"
                return None
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            self.last_error = f"{type(e).__name__}: {e}"
            return None
        try:
            px = float((data or {}).get("openPrice"))
        except (TypeError, ValueError, AttributeError):
            return None
        return px if px > 0 else None
