from functools import lru_cache
import json
from decimal import Decimal
from typing import Optional

from pydantic import PostgresDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    app_name: str = "Arena Economy"
    environment: str = "development"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: PostgresDsn
    db_pool_size: int = 5
    db_max_overflow: int = 5
    db_pool_timeout: int = 15
    db_pool_recycle: int = 1200
    db_pool_pre_ping: bool = True
    # Every ledger statement must finish or fail; a blocked row lock surfaces as a retryable 503.
    db_statement_timeout_ms: int = 5000
    db_lock_timeout_ms: int = 3000

    # Deposit token / indexer webhook
    token_decimals: int = 6
    deposit_token_mint: str = ""
    wallet_webhook_secret: Optional[str] = None

    # Withdrawal payment service
    payment_base_url: str = ""
    payment_timeout_seconds: int = 10
    payment_retry_count: int = 0

    # Game server channel
    internal_api_key: str = ""

    # Defaults for an auto-created VIP room config
    vip_entry_fee: Decimal = Decimal("1")
    vip_reward_rate_player: Decimal = Decimal("0.9")
    vip_reward_rate_treasury: Decimal = Decimal("0.1")
    vip_respawn_cost: Decimal = Decimal("0")
    vip_max_clients: int = 20
    vip_tick_rate: int = 60
    vip_ticket_ttl_minutes: int = 30
    treasury_wallet_address: Optional[str] = None

    # Referral commission
    referral_kill_commission_rate: Decimal = Decimal("0.02")
    referral_death_commission_rate: Decimal = Decimal("0.01")
    referral_death_commission_enabled: bool = False
    referral_commission_cap_per_user: Decimal = Decimal("100")
    referral_code_length: int = 8

    frontend_base_url: str = "http://localhost:5173"
    rate_limit_enabled: bool = True

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    auto_create_tables: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
