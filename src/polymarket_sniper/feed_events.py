from dataclasses import dataclass
from typing import Optional


@dataclass
class PriceTick:
    source: str
    price: float
    ts: float


@dataclass
class BookTick:
    asset_id: str
    bid: Optional[float]
    ask: Optional[float]
    ts: float


@dataclass
class TradeTick:
    asset_id: str
    price: float
    ts: float


@dataclass
class FeedStatus:
    feed: str  # reference / odds
    status: str  # connected / disconnected / reconnecting
    detail: str = ""
