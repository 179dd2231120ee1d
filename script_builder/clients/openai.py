"""Chat-completions API client."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests
from requests import Response

from script_builder.config import Settings
from script_builder.errors import ConfigurationError, UpstreamError

LOGGER = logging.getLogger(__name__)


class CompletionClient:
    """Small HTTP client that forwards chat messages to the completion API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    def complete(self, messages: List[Dict[str, str]], *, max_tokens: int) -> str:
        """Return the text of the first completion choice."""

        api_key = self._settings.openai_api_key
        if not api_key:
            raise ConfigurationError("Missing OPENAI_API_KEY env var.")

        payload = {
            "model": self._settings.openai_model,
            "temperature": self._settings.openai_temperature,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        try:
            response = self._session.post(
                self._settings.completions_url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self._settings.upstream_timeout_seconds,
            )
        except requests.RequestException as exc:
            LOGGER.error("completion request failed", extra={"model": self._settings.openai_model})
            raise UpstreamError("Upstream API unreachable.", status_code=502) from exc

        self._raise_for_status(response)
        data: Dict[str, Any] = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        return ((choices[0] or {}).get("message") or {}).get("content") or ""

    def _raise_for_status(self, response: Response) -> None:
        """Raise descriptive errors for completion API responses."""

        if response.ok:
            return
        status = response.status_code
        message = "Upstream API error."
        raw = response.text
        if raw:
            try:
                message = (response.json().get("error") or {}).get("message") or raw
            except (ValueError, AttributeError):
                message = raw
        LOGGER.error("completion api error", extra={"status": status})
        raise UpstreamError(message, status_code=status)
