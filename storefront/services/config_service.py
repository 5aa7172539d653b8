"""
Runtime configuration provider.

Settings live in the `setting` table and override the defaults from the
Flask config. Lookups go through a per-process snapshot, then the shared
Redis cache, then the database. The clock is injectable so staleness can
be driven deterministically.
"""

import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from flask import current_app

from storefront.exceptions import ValidationError
from storefront.models import Setting
from storefront.services.pricing_service import to_decimal

logger = logging.getLogger(__name__)

CACHE_MODULE = 'settings'
CACHE_KEY = 'all'

# setting key -> Flask config key
CONFIG_DEFAULT_KEYS = {
    'tax_rate': 'TAX_RATE',
    'free_shipping_threshold': 'FREE_SHIPPING_THRESHOLD',
    'points_per_euro': 'POINTS_PER_EURO',
    'extras_pricing_policy': 'EXTRAS_PRICING_POLICY',
    'quote_valid_days': 'QUOTE_VALID_DAYS',
    'stripe_currency': 'STRIPE_CURRENCY',
    'admin_email': 'ADMIN_EMAIL',
}


class ConfigProvider:
    """Cached key/value settings with database overrides."""

    def __init__(self, session_factory: Callable[[], Any], cache=None, ttl: int = 300,
                 clock: Callable[[], float] = time.monotonic,
                 defaults: Optional[Mapping[str, Any]] = None):
        self._session_factory = session_factory
        self._cache = cache
        self._ttl = ttl
        self._clock = clock
        self._defaults = dict(defaults or {})
        self._snapshot: Optional[Dict[str, str]] = None
        self._loaded_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        if self._snapshot is None or self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self._ttl

    def _load_from_db(self) -> Dict[str, str]:
        session = self._session_factory()
        rows = session.query(Setting.key, Setting.value).all()
        return {key: value for key, value in rows if value is not None}

    def snapshot(self) -> Dict[str, str]:
        """Current settings table contents (not including defaults)."""
        if self._is_fresh():
            return self._snapshot

        values = None
        if self._cache is not None:
            values = self._cache.get(CACHE_MODULE, CACHE_KEY)

        if values is None:
            values = self._load_from_db()
            if self._cache is not None:
                self._cache.set(CACHE_MODULE, CACHE_KEY, values, self._ttl)
            logger.debug(f"[CONFIG] Loaded {len(values)} setting(s) from database")

        self._snapshot = values
        self._loaded_at = self._clock()
        return values

    def invalidate(self) -> None:
        """Drop the local snapshot and the shared cache entry."""
        self._snapshot = None
        self._loaded_at = None
        if self._cache is not None:
            self._cache.delete(CACHE_MODULE, CACHE_KEY)

    def get(self, key: str, default: Any = None) -> Any:
        values = self.snapshot()
        if key in values:
            return values[key]
        if key in self._defaults and self._defaults[key] is not None:
            return self._defaults[key]
        return default

    def get_decimal(self, key: str, default: Any = None) -> Decimal:
        value = self.get(key, default)
        try:
            return to_decimal(value)
        except ValidationError:
            logger.warning(f"[CONFIG] Setting '{key}' is not numeric ({value!r}); using default {default}")
            return to_decimal(default)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"[CONFIG] Setting '{key}' is not an integer ({value!r}); using default {default}")
            return default

    def set(self, key: str, value: Any, category: str = 'general') -> Setting:
        """Create or update a setting and invalidate cached copies."""
        session = self._session_factory()
        try:
            setting = session.query(Setting).filter(Setting.key == key).first()
            if setting is None:
                setting = Setting(key=key, category=category)
                session.add(setting)
            setting.value = None if value is None else str(value)
            session.commit()
        except Exception:
            session.rollback()
            raise
        self.invalidate()
        logger.info(f"[CONFIG] Setting '{key}' updated")
        return setting

    # Typed accessors used by the pricing flows

    def tax_rate(self) -> Decimal:
        return self.get_decimal('tax_rate', '0.21')

    def free_shipping_threshold(self) -> Decimal:
        return self.get_decimal('free_shipping_threshold', '100')

    def points_per_euro(self) -> Decimal:
        return self.get_decimal('points_per_euro', '1')

    def extras_policy_name(self) -> str:
        return str(self.get('extras_pricing_policy', 'meter_table'))

    def quote_valid_days(self) -> int:
        return self.get_int('quote_valid_days', 15)


def defaults_from_app_config(config: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: config.get(config_key) for key, config_key in CONFIG_DEFAULT_KEYS.items()}


def init_config_provider(app, session_factory, cache=None) -> ConfigProvider:
    provider = ConfigProvider(
        session_factory,
        cache=cache,
        ttl=int(app.config.get('CONFIG_CACHE_TTL', 300)),
        defaults=defaults_from_app_config(app.config),
    )
    app.extensions['config_provider'] = provider
    return provider


def get_config_provider() -> ConfigProvider:
    """Provider registered on the current app."""
    provider = current_app.extensions.get('config_provider')
    if provider is None:
        raise RuntimeError("Config provider not initialized.")
    return provider
