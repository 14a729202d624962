"""
Runtime configuration backed by the settings table.

Lookup order per key: settings table, then environment variable. Values are
cached for CONFIG_CACHE_TTL seconds (default 300); every settings write must
call ConfigService.invalidate().
"""

from __future__ import annotations
import hashlib
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import structlog

from app.models.setting import get_setting
from app.utils.money import to_cents

log = structlog.get_logger(__name__)

PROVIDERS = ("stripe", "square", "none")
CREDENTIAL_KEYS = {"stripe": "STRIPE_SECRET_KEY", "square": "SQUARE_ACCESS_TOKEN"}


@dataclass(frozen=True)
class ProviderConfig:
    active: str
    currency: str = "usd"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    square_access_token: Optional[str] = None
    square_location_id: Optional[str] = None
    square_application_id: Optional[str] = None
    square_webhook_signature_key: Optional[str] = None
    square_webhook_url: Optional[str] = None
    square_environment: str = "sandbox"
    rejected: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RandomizationConfig:
    min_cents: int
    max_cents: int
    target_cents: int


class ConfigService:
    def __init__(
        self,
        *,
        loader: Callable[[str], Optional[str]] = get_setting,
        env: Optional[Mapping[str, str]] = None,
        ttl_seconds: Optional[float] = None,
    ):
        self._loader = loader
        self._env = os.environ if env is None else env
        self._ttl = (
            float(os.getenv("CONFIG_CACHE_TTL", "300"))
            if ttl_seconds is None
            else ttl_seconds
        )
        self._cache: Dict[str, Tuple[Optional[str], float]] = {}
        # provider name -> fingerprint of the credential the provider refused
        self._rejected: Dict[str, str] = {}
        self._lock = threading.Lock()

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
            self._rejected.clear()
        log.info("config.cache_invalidated")

    def _credential_fingerprint(self, provider: str) -> Optional[str]:
        key = CREDENTIAL_KEYS.get(provider)
        value = self.get(key) if key else None
        if not value:
            return None
        return hashlib.sha256(value.strip().encode("utf-8")).hexdigest()

    def reject_provider_credentials(self, provider: str) -> None:
        """
        Record that the provider refused its current credential. Until the
        credential changes or settings are written, the provider config
        reports it as rejected and purchases resolve to simulation.
        """
        fingerprint = self._credential_fingerprint(provider)
        if fingerprint is None:
            return
        with self._lock:
            self._rejected[provider] = fingerprint
        log.warning("config.provider_credentials_rejected", provider=provider)

    def rejected_providers(self) -> FrozenSet[str]:
        with self._lock:
            rejected = dict(self._rejected)
        return frozenset(
            name
            for name, fingerprint in rejected.items()
            if self._credential_fingerprint(name) == fingerprint
        )

    def get(self, key: str) -> Optional[str]:
        now = time.monotonic()
        with self._lock:
            hit = self._cache.get(key)
            if hit and hit[1] > now:
                return hit[0]

        value: Optional[str] = None
        try:
            value = self._loader(key)
        except Exception:
            log.warning("config.settings_lookup_failed", key=key, exc_info=True)
        if value is None or value == "":
            value = self._env.get(key) or None

        with self._lock:
            self._cache[key] = (value, now + self._ttl)
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        v = self.get(key)
        if v is None:
            return default
        return v.strip().lower() in ("1", "true", "yes", "on")

    def get_active_payment_provider_config(self) -> ProviderConfig:
        active = (self.get("PAYMENT_PROVIDER_ACTIVE") or "").strip().lower()
        if active not in PROVIDERS:
            if self.get_bool("STRIPE_ENABLED"):
                active = "stripe"
            elif self.get_bool("SQUARE_ENABLED"):
                active = "square"
            else:
                active = "none"

        environment = (self.get("SQUARE_ENVIRONMENT") or "sandbox").lower()
        return ProviderConfig(
            active=active,
            currency=(self.get("CURRENCY") or "usd").lower(),
            stripe_secret_key=self.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=self.get("STRIPE_WEBHOOK_SECRET"),
            stripe_publishable_key=self.get("STRIPE_PUBLISHABLE_KEY"),
            square_access_token=self.get("SQUARE_ACCESS_TOKEN"),
            square_location_id=self.get("SQUARE_LOCATION_ID"),
            square_application_id=self.get("SQUARE_APPLICATION_ID"),
            square_webhook_signature_key=self.get("SQUARE_WEBHOOK_SIGNATURE_KEY"),
            square_webhook_url=self.get("SQUARE_WEBHOOK_URL"),
            square_environment=(
                "production" if environment == "production" else "sandbox"
            ),
            rejected=self.rejected_providers(),
        )

    def get_square_randomization_config(self) -> RandomizationConfig:
        return RandomizationConfig(
            min_cents=to_cents(self.get("SQUARE_MIN_VALUE") or "1"),
            max_cents=to_cents(self.get("SQUARE_MAX_VALUE") or "10"),
            target_cents=to_cents(self.get("SQUARE_TARGET_TOTAL") or "500"),
        )
