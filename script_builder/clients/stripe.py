"""Checkout-session payment verification against the Stripe REST API."""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

import requests
from requests import Response

from script_builder.cache import TTLCache
from script_builder.config import Settings
from script_builder.errors import ConfigurationError, PaymentRequired, UpstreamError

LOGGER = logging.getLogger(__name__)


class PaymentVerifier:
    """Confirms that a checkout session has been paid.

    Paid sessions are cached; unpaid ones are always re-checked so a buyer
    who completes payment late is not locked out.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._session = requests.Session()
        self._cache = TTLCache(settings.payment_cache_ttl_seconds)

    def is_paid(self, session_id: str) -> bool:
        secret = self._settings.stripe_secret_key
        if not secret:
            raise ConfigurationError("Missing STRIPE_SECRET_KEY env var.")

        if self._cache.get(session_id):
            return True

        url = f"{self._settings.stripe_api_base.rstrip('/')}/checkout/sessions/{quote(session_id, safe='')}"
        try:
            response = self._session.get(
                url,
                headers={"Authorization": f"Bearer {secret}"},
                timeout=self._settings.upstream_timeout_seconds,
            )
        except requests.RequestException as exc:
            LOGGER.error("payment lookup failed")
            raise UpstreamError("Payment API unreachable.", status_code=502) from exc

        if response.status_code == 404:
            return False
        self._raise_for_status(response)

        paid = response.json().get("payment_status") == "paid"
        if paid:
            self._cache.set(session_id, True)
        return paid

    def require_paid(self, session_id: Optional[str]) -> None:
        """Raise ``PaymentRequired`` unless ``session_id`` is a paid session."""

        if not session_id or not self.is_paid(session_id):
            raise PaymentRequired("Payment not verified.")

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        status = response.status_code
        try:
            message = (response.json().get("error") or {}).get("message") or "Payment API error."
        except (ValueError, AttributeError):
            message = "Payment API error."
        LOGGER.error("payment api error", extra={"status": status})
        raise UpstreamError(message, status_code=status)
