# services/payments/registry.py
from __future__ import annotations
import logging
import os
from typing import Dict, List, Optional

from flask import current_app, has_app_context

from services.payments.base import DEFAULT_TIMEOUT, PaymentProvider
from services.payments.errors import ProviderNotFound
from services.payments.types import PaymentProviderType, ProviderConfig

logger = logging.getLogger(__name__)


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _flag(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("0", "false", "no", "off")


class ProviderRegistry:
    """Name -> initialized adapter. Registration replaces any previous entry."""

    def __init__(self) -> None:
        self._providers: Dict[PaymentProviderType, PaymentProvider] = {}
        self._configs: Dict[PaymentProviderType, ProviderConfig] = {}

    def register(self, name, provider: PaymentProvider, config: ProviderConfig) -> None:
        name = PaymentProviderType(str(getattr(name, "value", name)).lower())
        provider.initialize(config)
        self._providers[name] = provider
        self._configs[name] = config
        logger.info("Payment provider registered: %s (sandbox=%s)",
                    name.value, config.sandbox_mode)

    def get(self, name) -> PaymentProvider:
        key = self._key(name)
        provider = self._providers.get(key) if key else None
        if provider is None:
            raise ProviderNotFound(f"Provider not found: {getattr(name, 'value', name)}",
                                   provider=str(getattr(name, "value", name)))
        return provider

    def get_config(self, name) -> Optional[ProviderConfig]:
        key = self._key(name)
        return self._configs.get(key) if key else None

    def has(self, name) -> bool:
        key = self._key(name)
        return key is not None and key in self._providers

    def registered_providers(self) -> List[PaymentProviderType]:
        return list(self._providers.keys())

    def unregister(self, name) -> None:
        key = self._key(name)
        if key is None:
            return
        self._providers.pop(key, None)
        self._configs.pop(key, None)

    @staticmethod
    def _key(name) -> Optional[PaymentProviderType]:
        try:
            return PaymentProviderType(str(getattr(name, "value", name)).lower())
        except ValueError:
            return None


# ----- environment wiring ----------------------------------------------------

def http_timeout() -> float:
    raw = _cfg("PAYMENTS_HTTP_TIMEOUT")
    try:
        return float(raw) if raw else float(DEFAULT_TIMEOUT)
    except ValueError:
        logger.warning("Invalid PAYMENTS_HTTP_TIMEOUT %r; using %s", raw, DEFAULT_TIMEOUT)
        return float(DEFAULT_TIMEOUT)


def nowpayments_config_from_env() -> Optional[ProviderConfig]:
    api_key = _cfg("NOWPAYMENTS_API_KEY")
    if not api_key:
        return None
    return ProviderConfig(
        api_key=api_key,
        webhook_secret=_cfg("NOWPAYMENTS_IPN_SECRET") or None,
        # anything but an explicit "false" keeps the sandbox on
        sandbox_mode=str(_cfg("NOWPAYMENTS_SANDBOX_MODE", "true")).lower() != "false",
        enabled=_flag(_cfg("NOWPAYMENTS_ENABLED"), True),
    )


def paypal_config_from_env() -> Optional[ProviderConfig]:
    client_id = _cfg("PAYPAL_CLIENT_ID")
    client_secret = _cfg("PAYPAL_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return ProviderConfig(
        api_key=client_id,
        api_secret=client_secret,
        webhook_secret=_cfg("PAYPAL_WEBHOOK_ID") or None,
        sandbox_mode=str(_cfg("PAYPAL_SANDBOX_MODE", "true")).lower() != "false",
        enabled=_flag(_cfg("PAYPAL_ENABLED"), True),
    )
