from __future__ import annotations

import asyncio
import math
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from polymarket_sniper.config import EngineConfig

FILLED_STATUSES = ("matched", "filled")


@dataclass
class LiveOrderResult:
    ok: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[dict] = None
    filled: bool = False
    price: Optional[float] = None
    size: Optional[float] = None
    logs: List[str] = field(default_factory=list)


def floor_size(size: float, decimals: int = 2) -> float:
    q = 10 ** decimals
    return math.floor(float(size) * q) / q


@dataclass
class ClobCredentials:
    private_key: str = ""
    funder: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    @classmethod
    def from_env(cls) -> "ClobCredentials":
        def env(name: str) -> str:
            return os.getenv(name, "").strip()

        return cls(
            private_key=env("POLYMARKET_PRIVATE_KEY"),
            funder=env("POLYMARKET_FUNDER"),
            api_key=env("POLYMARKET_API_KEY"),
            api_secret=env("POLYMARKET_API_SECRET"),
            api_passphrase=env("POLYMARKET_API_PASSPHRASE"),
        )

    @property
    def has_api_creds(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)


class LiveExecutor:
    """Polymarket CLOB executor.

    Uses py-clob-client for live trading. It is imported lazily so dry-run mode
    works without wallet/signing dependencies installed. In dry-run every order
    is reported as filled at the requested price.
    """

    def __init__(self, cfg: EngineConfig):
        self.cfg = cfg
        live = cfg.live
        self.enabled = bool(live.enabled)
        self.dry_run = bool(live.dry_run)
        self.host = live.clob_host
        self.chain_id = int(live.chain_id)
        self.signature_type = int(live.signature_type)
        self.entry_order_type = str(live.entry_order_type).upper()
        self.resting_order_type = str(live.resting_order_type).upper()

        self._client = None
        self._import_error = None

    def _ensure_client(self) -> Tuple[bool, Optional[str]]:
        if self._client is not None or self.dry_run:
            return True, None

        try:
            from py_clob_client.client import ClobClient
        except ImportError as e:
            self._import_error = f"py_clob_client_missing: {e}"
            return False, self._import_error

        creds = ClobCredentials.from_env()
        if not creds.private_key:
            return False, "POLYMARKET_PRIVATE_KEY is missing"

        try:
            client = ClobClient(
                self.host,
                key=creds.private_key,
                chain_id=self.chain_id,
                signature_type=self.signature_type,
                funder=creds.funder or None,
            )
            if creds.has_api_creds:
                from py_clob_client.clob_types import ApiCreds

                client.set_api_creds(ApiCreds(api_key=creds.api_key, api_secret=creds.api_secret, api_passphrase=creds.api_passphrase))
            else:
                # L2 creds derived from the wallet key on first use
                client.set_api_creds(client.create_or_derive_api_creds())
        except Exception as e:
            return False, f"clob_init_failed: {e}"
        self._client = client
        return True, None

    def place(self, token_id: str, side: str, price: float, size: float, order_type: Optional[str] = None) -> LiveOrderResult:
        if not self.enabled:
            return LiveOrderResult(ok=False, error="live_disabled")

        if not token_id:
            return LiveOrderResult(ok=False, error="token_id_missing")
        if price <= 0 or size <= 0:
            return LiveOrderResult(ok=False, error="invalid_price_or_size")

        otype = (order_type or self.entry_order_type).upper()
        if self.dry_run:
            return LiveOrderResult(
                ok=True,
                order_id="dry_run",
                filled=otype != self.resting_order_type,
                price=float(price),
                size=float(size),
                raw={"token_id": token_id, "side": side, "price": price, "size": size, "order_type": otype},
                logs=[f"dry_run {side} {size:.2f} @ {price:.2f} ({otype})"],
            )

        ok, err = self._ensure_client()
        if not ok:
            return LiveOrderResult(ok=False, error=err)

        try:
            from py_clob_client.clob_types import OrderArgs, OrderType

            order_type = getattr(OrderType, otype, getattr(OrderType, "GTC"))
            args = OrderArgs(
                token_id=token_id,
                price=float(price),
                size=float(size),
                side=side.upper(),
            )
            signed = self._client.create_order(args)
            resp = self._client.post_order(signed, order_type)
        except Exception as e:
            return LiveOrderResult(ok=False, error=f"post_order_failed: {e}")

        raw = resp if isinstance(resp, dict) else {"resp": str(resp)}
        oid = raw.get("orderID") or raw.get("id")
        status = str(raw.get("status") or "").lower()
        logs = [f"post_order status={status or '?'} success={raw.get('success')} order={oid}"]
        if raw.get("errorMsg"):
            logs.append(f"errorMsg={raw.get('errorMsg')}")
        if raw.get("success") is False:
            return LiveOrderResult(ok=False, order_id=oid, error=str(raw.get("errorMsg") or "order_rejected"), raw=raw, logs=logs)
        filled = status in FILLED_STATUSES or (not status and otype != self.resting_order_type)
        return LiveOrderResult(ok=True, order_id=oid, filled=filled, price=float(price), size=float(size), raw=raw, logs=logs)

    def cancel(self, order_id: str) -> LiveOrderResult:
        if self.dry_run or order_id == "dry_run":
            return LiveOrderResult(ok=True, order_id=order_id)
        ok, err = self._ensure_client()
        if not ok:
            return LiveOrderResult(ok=False, order_id=order_id, error=err)
        try:
            resp = self._client.cancel(order_id=order_id)
        except Exception as e:
            return LiveOrderResult(ok=False, order_id=order_id, error=f"cancel_failed: {e}")
        return LiveOrderResult(ok=True, order_id=order_id, raw=resp if isinstance(resp, dict) else {"resp": str(resp)})

    def get_order(self, order_id: str) -> Optional[dict]:
        if self.dry_run:
            return None
        ok, _ = self._ensure_client()
        if not ok:
            return None
        try:
            resp = self._client.get_order(order_id)
        except Exception:
            return None
        return resp if isinstance(resp, dict) else None

    async def submit_buy(self, token_id: str, stake_usd: float, price: float, order_type: Optional[str] = None) -> LiveOrderResult:
        size = floor_size(float(stake_usd) / float(price)) if price > 0 else 0.0
        return await asyncio.to_thread(self.place, token_id, "BUY", price, size, order_type)

    async def submit_sell(self, token_id: str, size: float, price: float) -> LiveOrderResult:
        return await asyncio.to_thread(self.place, token_id, "SELL", price, floor_size(size))

    async def cancel_async(self, order_id: str) -> LiveOrderResult:
        return await asyncio.to_thread(self.cancel, order_id)

    async def order_status_async(self, order_id: str) -> Optional[dict]:
        return await asyncio.to_thread(self.get_order, order_id)
