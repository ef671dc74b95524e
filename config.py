"""
Centralized configuration for the bot hosting storefront
All settings come from environment variables (optionally loaded from .env)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


@dataclass
class PaymentConfig:
    """Atlantic H2H QRIS gateway settings"""
    base_url: str = 'https://atlantic-payment.h2h.dev'
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    expiry_minutes: int = 15
    fallback_policy: str = 'placeholder'
    # Atlantic reports naive wall-clock times in WIB
    gateway_utc_offset_hours: float = 7.0

    @classmethod
    def from_env(cls) -> 'PaymentConfig':
        api_key = os.getenv('ATLANTIC_API_KEY') or None
        return cls(
            base_url=os.getenv('ATLANTIC_BASE_URL', cls.base_url).rstrip('/'),
            api_key=api_key,
            # Gateway signs callbacks with the account key unless a dedicated secret is issued
            webhook_secret=os.getenv('ATLANTIC_WEBHOOK_SECRET') or api_key,
            expiry_minutes=_env_int('PAYMENT_EXPIRY_MINUTES', cls.expiry_minutes),
            fallback_policy=os.getenv('PAYMENT_FALLBACK', cls.fallback_policy).lower(),
            gateway_utc_offset_hours=_env_float('ATLANTIC_UTC_OFFSET_HOURS', cls.gateway_utc_offset_hours),
        )


@dataclass
class PanelConfig:
    """Pterodactyl panel settings"""
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    location_id: int = 1
    egg_id: int = 15
    docker_image: str = 'nodejs_20'

    @classmethod
    def from_env(cls) -> 'PanelConfig':
        base_url = os.getenv('PTERODACTYL_URL') or None
        return cls(
            base_url=base_url.rstrip('/') if base_url else None,
            api_key=os.getenv('PTERODACTYL_API_KEY') or None,
            location_id=_env_int('PTERODACTYL_LOCATION_ID', cls.location_id),
            egg_id=_env_int('PTERODACTYL_EGG_ID', cls.egg_id),
            docker_image=os.getenv('PTERODACTYL_DOCKER_IMAGE', cls.docker_image),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)


@dataclass
class StorageConfig:
    data_dir: str = 'data'

    @classmethod
    def from_env(cls) -> 'StorageConfig':
        return cls(data_dir=os.getenv('DATA_DIR', cls.data_dir))


@dataclass
class ServerConfig:
    port: int = 3000
    app_name: str = 'WEB SYAFA STORE'
    http_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> 'ServerConfig':
        return cls(
            port=_env_int('PORT', cls.port),
            app_name=os.getenv('APP_NAME', cls.app_name),
            http_timeout=_env_float('HTTP_TIMEOUT_SECONDS', cls.http_timeout),
        )


@dataclass
class AppConfig:
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    panel: PanelConfig = field(default_factory=PanelConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        return cls(
            payment=PaymentConfig.from_env(),
            panel=PanelConfig.from_env(),
            storage=StorageConfig.from_env(),
            server=ServerConfig.from_env(),
        )


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get global configuration instance (read once from the environment)"""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
        logger.info(
            f"🔧 Config loaded: gateway={_config.payment.base_url} "
            f"(api key {'✅ SET' if _config.payment.api_key else '❌ MISSING'}), "
            f"panel={'✅ configured' if _config.panel.is_configured() else '❌ not configured'}, "
            f"data_dir={_config.storage.data_dir}"
        )
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment"""
    global _config
    _config = None
