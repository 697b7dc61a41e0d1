"""Configuration loader for Vybe Watcher."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import find_dotenv, load_dotenv


@dataclass
class TelegramConfig:
    bot_token: str = ""
    group_chat_id: int | None = None


@dataclass
class VybeConfig:
    api_base: str = "https://api.vybenetwork.xyz"
    websocket_url: str = "wss://api.vybenetwork.xyz/live"
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    api_key: str = ""
    request_timeout_seconds: float = 30.0


@dataclass
class WalletTrackingConfig:
    # "poll", "push" or "both"
    mode: str = "poll"
    poll_interval_seconds: int = 60
    transfer_fetch_limit: int = 20
    signature_probe: bool = True
    wallet_delay_seconds: float = 1.0
    max_wallets_per_user: int = 5
    max_transfers_shown: int = 5
    spam_addresses: list[str] = field(default_factory=list)
    kol_wallets: dict[str, str] = field(default_factory=dict)


@dataclass
class PriceAlertConfig:
    tracked_tokens: list[str] = field(default_factory=list)
    poll_interval_seconds: int = 60
    max_backoff_seconds: int = 600
    max_consecutive_failures: int = 5
    general_alert_threshold_percent: float = 2.5
    significant_move_percent: float = 10.0
    max_alerts_per_user: int = 5
    too_close_threshold_percent: float = 0.2
    too_far_threshold_percent: float = 10.0
    history_points: int = 60


@dataclass
class KolRankingConfig:
    enabled: bool = True
    check_interval_seconds: int = 3600
    label: str = "KOL"
    top_n: int = 10
    entrant_window: int = 5


@dataclass
class NotificationConfig:
    batch_size: int = 10
    tick_seconds: float = 1.0
    send_delay_seconds: float = 0.05
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    alert_cooldown_seconds: int = 1800


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = "logs/wallet_activity.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


@dataclass
class DatabaseConfig:
    path: str = "data/vybe_bot.db"


@dataclass
class Config:
    telegram: TelegramConfig
    vybe: VybeConfig
    wallet_tracking: WalletTrackingConfig
    price_alerts: PriceAlertConfig
    kol_ranking: KolRankingConfig
    notifications: NotificationConfig
    logging: LoggingConfig
    database: DatabaseConfig


def _apply_env_overrides(config: Config):
    """Secrets live in the environment (or .env), never in config.yaml."""
    token = os.getenv("VYBE_TELEGRAM_BOT_TOKEN")
    if token:
        config.telegram.bot_token = token

    group_id = os.getenv("TELEGRAM_GROUP_ID")
    if group_id:
        config.telegram.group_chat_id = int(group_id)

    api_key = os.getenv("VYBE_KEY")
    if api_key:
        config.vybe.api_key = api_key

    db_path = os.getenv("DATABASE_PATH")
    if db_path:
        config.database.path = db_path


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load configuration from YAML file, then overlay environment secrets."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    load_dotenv(find_dotenv(usecwd=True))

    config = Config(
        telegram=TelegramConfig(**raw.get("telegram", {})),
        vybe=VybeConfig(**raw.get("vybe", {})),
        wallet_tracking=WalletTrackingConfig(**raw.get("wallet_tracking", {})),
        price_alerts=PriceAlertConfig(**raw.get("price_alerts", {})),
        kol_ranking=KolRankingConfig(**raw.get("kol_ranking", {})),
        notifications=NotificationConfig(**raw.get("notifications", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        database=DatabaseConfig(**raw.get("database", {})),
    )
    _apply_env_overrides(config)

    if config.wallet_tracking.mode not in ("poll", "push", "both"):
        raise ValueError(
            f"wallet_tracking.mode must be poll, push or both, got {config.wallet_tracking.mode!r}"
        )

    return config
