from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


def _optional_int(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").split("#")[0].strip()
    return int(raw) if raw else None


def _address_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(slots=True)
class TradingEnvironmentConfig:
    position_db_path: str
    portfolio_db_path: str
    proposal_db_url: str
    rules_path: str
    event_bus_dsn: str
    chain_gateway_url: str = ""
    default_key_fleet: list[str] = field(default_factory=list)
    max_bits_per_gamer: Optional[int] = None
    claim_timeout_seconds: float = 300.0
    queue_timeout_seconds: float = 10.0
    gateway_timeout_seconds: float = 15.0
    handshake_timeout_seconds: float = 600.0
    copy_trader_invoker: str = "copyTrader"
    indexer_invoker: str = "tradeIndexer"
    slack_webhook_url: str = ""


def load_trading_environment(env_file: str = ".env") -> TradingEnvironmentConfig:
    load_dotenv(env_file, override=False)

    return TradingEnvironmentConfig(
        position_db_path=os.getenv("POSITION_DB_PATH", "data/positions.db"),
        portfolio_db_path=os.getenv("PORTFOLIO_DB_PATH", "data/portfolios.db"),
        proposal_db_url=os.getenv("PROPOSAL_DB_URL", "sqlite:///data/proposals.db"),
        rules_path=os.getenv("RULES_PATH", "config/rules.yaml"),
        event_bus_dsn=os.getenv("EVENT_BUS_DSN", ""),
        chain_gateway_url=os.getenv("CHAIN_GATEWAY_URL", ""),
        default_key_fleet=_address_list("DEFAULT_KEY_FLEET"),
        max_bits_per_gamer=_optional_int("MAX_BITS_PER_GAMER"),
        claim_timeout_seconds=float(os.getenv("CLAIM_TIMEOUT_SECONDS", "300")),
        queue_timeout_seconds=float(os.getenv("QUEUE_TIMEOUT_SECONDS", "10")),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15")),
        handshake_timeout_seconds=float(os.getenv("HANDSHAKE_TIMEOUT_SECONDS", "600")),
        copy_trader_invoker=os.getenv("COPY_TRADER_INVOKER", "copyTrader"),
        indexer_invoker=os.getenv("INDEXER_INVOKER", "tradeIndexer"),
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL", ""),
    )
