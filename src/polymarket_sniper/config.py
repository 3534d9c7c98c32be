import os
from pathlib import Path
from typing import List

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class ConfigError(Exception):
    """Unrecoverable configuration problem detected at startup."""


def load_config(path: str) -> dict:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(p.read_text()) or {}


class AppConfig(BaseModel):
    tick_seconds: float = 1.0
    history_sample_seconds: float = 2.0
    history_capacity: int = 30
    snapshot_seconds: float = 2.0
    console_status: bool = True
    log_buffer: int = 80


class FeedsConfig(BaseModel):
    reference_source: str = "chainlink"  # chainlink / binance
    rtds_url: str = "wss://ws-live-data.polymarket.com"
    rtds_topic: str = "crypto_prices_chainlink"
    rtds_symbol: str = "btc/usd"
    binance_url: str = "wss://stream.binance.com:9443/ws/btcusdt@bookTicker"
    clob_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    reference_reconnect_seconds: float = 3.0
    binance_reconnect_seconds: float = 2.0
    odds_reconnect_seconds: float = 1.0
    odds_reconnect_min_secs_left: int = 5

    @field_validator("reference_source")
    @classmethod
    def _known_source(cls, v: str) -> str:
        v = (v or "").lower()
        if v not in ("chainlink", "binance"):
            raise ValueError(f"unknown reference_source: {v}")
        return v


class MarketConfig(BaseModel):
    gamma_base: str = "https://gamma-api.polymarket.com"
    crypto_price_url: str = "https://polymarket.com/api/crypto/crypto-price"
    symbol: str = "BTC"
    slug_prefix: str = "btc-updown-5m-"
    window_seconds: int = 300
    price_variant: str = "fiveminute"
    http_timeout_seconds: float = 6.0
    not_found_retry_seconds: float = 10.0
    too_late_seconds: int = 5
    too_late_grace_seconds: float = 2.0
    rollover_grace_seconds: float = 5.0
    price_to_beat_attempts: int = 3
    price_to_beat_retry_seconds: float = 2.0
    background_retry_seconds: float = 5.0


class EarlyEntryConfig(BaseModel):
    enabled: bool = True
    max_secs_left: int = 240
    min_secs_left: int = 30
    min_confidence: float = 0.94
    sustain_samples: int = 3


class CheckpointLevel(BaseModel):
    at: int
    min_confidence: float


class CheckpointsConfig(BaseModel):
    enabled: bool = True
    ladder: List[CheckpointLevel] = Field(default_factory=lambda: [
        CheckpointLevel(at=30, min_confidence=0.90),
        CheckpointLevel(at=20, min_confidence=0.87),
        CheckpointLevel(at=10, min_confidence=0.85),
    ])
    min_secs_left: int = 3
    require_reference_move: bool = False
    min_reference_move_usd: float = 10.0

    @field_validator("ladder")
    @classmethod
    def _non_increasing(cls, v: List[CheckpointLevel]) -> List[CheckpointLevel]:
        for prev, cur in zip(v, v[1:]):
            if cur.at > prev.at:
                raise ValueError(f"checkpoint ladder must be non-increasing in time (T-{prev.at} then T-{cur.at})")
        return v


class LastResortConfig(BaseModel):
    enabled: bool = True
    max_secs_left: int = 3
    min_secs_left: int = 1
    min_reference_move_usd: float = 15.0
    surge_delta: float = 0.15
    surge_samples: int = 3


class DivergenceArbConfig(BaseModel):
    enabled: bool = False
    k_base: float = 2.0
    horizon_seconds: float = 300.0
    min_model_seconds: float = 10.0
    divergence_threshold: float = 0.05
    cooldown_seconds: float = 3.0
    max_concurrent_positions: int = 2
    max_trades_per_window: int = 4
    min_secs_left: int = 15
    max_secs_left: int = 280
    stake_usd: float = 2.0
    slippage: float = 0.02
    exit_slippage_steps: List[float] = Field(default_factory=lambda: [0.02])
    profit_capture: float = 0.5
    stop_loss_cents: float = 0.10
    time_exit_secs_left: int = 8
    convergence_divergence: float = 0.02


class PassiveRestingConfig(BaseModel):
    enabled: bool = False
    limit_price: float = 0.35
    poll_seconds: float = 2.0
    cancel_secs_left: int = 5
    fill_ratio: float = 0.9


class StrategiesConfig(BaseModel):
    early_entry: EarlyEntryConfig = Field(default_factory=EarlyEntryConfig)
    checkpoints: CheckpointsConfig = Field(default_factory=CheckpointsConfig)
    last_resort: LastResortConfig = Field(default_factory=LastResortConfig)
    divergence_arb: DivergenceArbConfig = Field(default_factory=DivergenceArbConfig)
    passive_resting: PassiveRestingConfig = Field(default_factory=PassiveRestingConfig)

    @model_validator(mode="after")
    def _exclusive_modes(self):
        sniper = self.early_entry.enabled or self.checkpoints.enabled or self.last_resort.enabled
        arb = self.divergence_arb.enabled
        passive = self.passive_resting.enabled
        if arb and (sniper or passive):
            raise ValueError("divergence_arb runs alone; disable the other strategies")
        if passive and sniper:
            raise ValueError("passive_resting runs alone; disable the other strategies")
        if not (sniper or arb or passive):
            raise ValueError("no strategy enabled")
        return self

    @property
    def mode(self) -> str:
        if self.divergence_arb.enabled:
            return "arb"
        if self.passive_resting.enabled:
            return "passive"
        return "sniper"


class ExecutionConfig(BaseModel):
    stake_usd: float = 2.0
    entry_slippage_steps: List[float] = Field(default_factory=lambda: [0.03, 0.06, 0.10, 0.14, 0.14])
    entry_retry_delay_seconds: float = 1.5
    cutoff_buffer_seconds: int = 17
    cutoff_floor_seconds: int = 3
    last_resort_cutoff_floor_seconds: int = 1
    min_price: float = 0.01
    max_price: float = 0.99
    tick_size: float = 0.01


class RiskConfig(BaseModel):
    stop_loss_enabled: bool = True
    stop_loss_cents: float = 0.30
    reference_cross_enabled: bool = True
    stop_loss_slippage_steps: List[float] = Field(default_factory=lambda: [0.02, 0.05, 0.10, 0.15])
    stop_loss_retry_delay_seconds: float = 0.5
    exit_cutoff_seconds: int = 1
    halt_after_loss: bool = False


class LiveConfig(BaseModel):
    enabled: bool = True
    dry_run: bool = True
    clob_host: str = "https://clob.polymarket.com"
    chain_id: int = 137
    signature_type: int = 1
    entry_order_type: str = "FAK"
    resting_order_type: str = "GTC"


class StorageConfig(BaseModel):
    events_path: str = "data/events.jsonl"
    snapshot_path: str = "data/snapshot.json"
    session_path: str = "data/session.json"


class EngineConfig(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    feeds: FeedsConfig = Field(default_factory=FeedsConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)
    strategies: StrategiesConfig = Field(default_factory=StrategiesConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def build_config(raw: dict) -> EngineConfig:
    try:
        return EngineConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def check_credentials(cfg: EngineConfig) -> None:
    if cfg.live.enabled and not cfg.live.dry_run and not os.getenv("POLYMARKET_PRIVATE_KEY", "").strip():
        raise ConfigError("POLYMARKET_PRIVATE_KEY is missing (required when live.dry_run is false)")
