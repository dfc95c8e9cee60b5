"""
Provider failure taxonomy. None of these are retried by the adapters.
"""
from __future__ import annotations


class ProviderError(Exception):
    """Base class for failures surfaced by a model adapter."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class TransportError(ProviderError):
    """Connection refused, DNS failure, timeout."""


class BackendError(ProviderError):
    """Non-success HTTP status with a body."""

    def __init__(self, provider: str, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(provider, f"API request failed with status {status_code}: {body[:500]}")


class DecodeError(ProviderError):
    """Response body or a field of it could not be decoded."""

    def __init__(self, provider: str, part: str, detail: str = ""):
        self.part = part
        message = f"failed to decode {part}"
        if detail:
            message += f": {detail}"
        super().__init__(provider, message)
