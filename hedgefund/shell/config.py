"""Configuration loading — merges settings.toml and .env over dataclass defaults."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from hedgefund.errors import ConfigError
from hedgefund.shell.contract import (
    MAX_EXPOSURE_PER_ASSET_BOUNDS,
    POSITION_SIZE_FACTOR_BOUNDS,
    RiskProfile,
    RiskProfileKind,
)


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

AI_PROVIDERS = ("heuristic", "anthropic")
MARKET_SOURCES = ("simulated", "kraken")


@dataclass
class AIConfig:
    provider: str = "heuristic"          # "heuristic" (offline rules) or "anthropic"
    anthropic_api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"
    daily_token_limit: int = 500_000
    max_tokens: int = 2048
    request_timeout_s: float = 60.0


@dataclass
class MarketConfig:
    source: str = "simulated"
    symbols: list[str] = field(default_factory=lambda: [
        "BTC/USD", "ETH/USD", "SOL/USD", "LINK/USD", "AVAX/USD",
    ])
    rest_url: str = "https://api.kraken.com"
    venues: list[str] = field(default_factory=lambda: ["SoneSwap", "UnoSwap", "SoneDefi", "CentralDEX"])
    seed: int | None = None


@dataclass
class WalletConfig:
    address: str = "paper-wallet"
    paper_balance_usd: float = 10_000.0
    fee_pct: float = 0.30                # percent per fill


@dataclass
class RiskProfileConfig:
    kind: str = "balanced"
    max_drawdown: float = 0.15
    leverage: float = 1.0
    position_size_factor: float = 1.0
    max_exposure_per_asset: float = 0.20
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 15.0

    def to_profile(self) -> RiskProfile:
        return RiskProfile(
            kind=RiskProfileKind(self.kind),
            max_drawdown=self.max_drawdown,
            leverage=self.leverage,
            position_size_factor=self.position_size_factor,
            max_exposure_per_asset=self.max_exposure_per_asset,
            stop_loss_pct=self.stop_loss_pct,
            take_profit_pct=self.take_profit_pct,
        )


@dataclass
class OrchestratorConfig:
    base_interval_ms: int = 60_000
    max_consecutive_failures: int = 5
    call_timeout_s: float = 30.0        # per collaborator call
    decision_log_capacity: int = 100
    parallel_scoring: bool = False


@dataclass
class StrategyConfig:
    enabled: list[str] = field(default_factory=lambda: ["momentum", "arbitrage"])


@dataclass
class MonitoringConfig:
    heartbeat_minutes: int = 15
    prometheus_enabled: bool = True
    metrics_port: int = 0                # 0 = keep metrics in-process, >0 = serve /metrics


@dataclass
class Config:
    agent_id: str = "agent-1"
    timezone: str = "UTC"
    log_level: str = "INFO"
    ai: AIConfig = field(default_factory=AIConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    risk: RiskProfileConfig = field(default_factory=RiskProfileConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    strategies: StrategyConfig = field(default_factory=StrategyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


def _overlay(section: object, values: dict) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key in vars(section):
        if key in values:
            setattr(section, key, values[key])


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()

    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.agent_id = general.get("agent_id", config.agent_id)
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)

        _overlay(config.ai, settings.get("ai", {}))
        _overlay(config.market, settings.get("market", {}))
        _overlay(config.wallet, settings.get("wallet", {}))
        _overlay(config.risk, settings.get("risk_profile", {}))
        _overlay(config.orchestrator, settings.get("orchestrator", {}))
        _overlay(config.strategies, settings.get("strategies", {}))
        _overlay(config.monitoring, settings.get("monitoring", {}))

    # Environment variables (secrets + a couple of operational overrides)
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", config.ai.anthropic_api_key)
    config.log_level = os.getenv("LOG_LEVEL", config.log_level)

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    from hedgefund.strategies.registry import STRATEGY_FACTORIES

    errors = []

    # Risk profile
    valid_kinds = [k.value for k in RiskProfileKind]
    if config.risk.kind not in valid_kinds:
        errors.append(f"risk_profile.kind must be one of {valid_kinds}, got '{config.risk.kind}'")
    lo, hi = POSITION_SIZE_FACTOR_BOUNDS
    if not (lo <= config.risk.position_size_factor <= hi):
        errors.append(f"position_size_factor must be {lo}-{hi}, got {config.risk.position_size_factor}")
    lo, hi = MAX_EXPOSURE_PER_ASSET_BOUNDS
    if not (lo <= config.risk.max_exposure_per_asset <= hi):
        errors.append(f"max_exposure_per_asset must be {lo}-{hi}, got {config.risk.max_exposure_per_asset}")
    if not (0 < config.risk.max_drawdown <= 1):
        errors.append(f"max_drawdown must be 0-1, got {config.risk.max_drawdown}")
    if config.risk.leverage <= 0:
        errors.append(f"leverage must be > 0, got {config.risk.leverage}")

    # Orchestrator
    if config.orchestrator.base_interval_ms <= 0:
        errors.append(f"base_interval_ms must be > 0, got {config.orchestrator.base_interval_ms}")
    if config.orchestrator.max_consecutive_failures < 1:
        errors.append(f"max_consecutive_failures must be >= 1, got {config.orchestrator.max_consecutive_failures}")
    if config.orchestrator.call_timeout_s <= 0:
        errors.append(f"call_timeout_s must be > 0, got {config.orchestrator.call_timeout_s}")
    if config.orchestrator.decision_log_capacity < 1:
        errors.append(f"decision_log_capacity must be >= 1, got {config.orchestrator.decision_log_capacity}")

    # Collaborators
    if config.ai.provider not in AI_PROVIDERS:
        errors.append(f"ai.provider must be one of {AI_PROVIDERS}, got '{config.ai.provider}'")
    if config.ai.provider == "anthropic" and not config.ai.anthropic_api_key:
        errors.append("ai.provider 'anthropic' requires ANTHROPIC_API_KEY in .env")
    if config.market.source not in MARKET_SOURCES:
        errors.append(f"market.source must be one of {MARKET_SOURCES}, got '{config.market.source}'")
    if not config.market.symbols:
        errors.append("At least one market symbol must be configured")
    if config.wallet.paper_balance_usd <= 0:
        errors.append(f"paper_balance_usd must be > 0, got {config.wallet.paper_balance_usd}")
    if not (0 <= config.wallet.fee_pct < 100):
        errors.append(f"fee_pct must be 0-100, got {config.wallet.fee_pct}")

    for name in config.strategies.enabled:
        if name not in STRATEGY_FACTORIES:
            errors.append(f"Unknown strategy '{name}' (known: {sorted(STRATEGY_FACTORIES)})")

    if config.monitoring.heartbeat_minutes < 1:
        errors.append(f"heartbeat_minutes must be >= 1, got {config.monitoring.heartbeat_minutes}")
    if not (0 <= config.monitoring.metrics_port < 65536):
        errors.append(f"metrics_port must be 0-65535, got {config.monitoring.metrics_port}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, Exception):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ConfigError("Config validation failed:\n  " + "\n  ".join(errors))
