"""Utility helpers."""
from .network import client_identifier, get_header  # noqa: F401
from .time import now_ms  # noqa: F401
