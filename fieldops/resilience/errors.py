"""Failure taxonomy for the resilience core.

Each exception carries the HTTP status the API boundary answers with.
"""
from __future__ import annotations


class ResilienceError(Exception):
    status = 500


class ValidationError(ResilienceError):
    """Malformed request payload."""

    status = 400


class NotFound(ResilienceError):
    status = 404


class NotConfigured(ResilienceError):
    """SMS/USSD fallback used before it was configured for the device."""

    status = 412


class CreditsExhausted(ResilienceError):
    status = 402


class NetworkUnavailable(ResilienceError):
    """Sync requested without force while the device is offline."""

    status = 503
