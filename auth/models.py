from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable


class TokenSource(str, Enum):
    LOGIN = "login"
    REFRESH = "refresh"


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class AccessToken:
    value: str
    issued_via: TokenSource = TokenSource.LOGIN

    @property
    def authorization(self) -> str:
        return f"Bearer {self.value}"

    def to_payload(self) -> dict[str, str]:
        return {"value": self.value, "issued_via": self.issued_via.value}

    @classmethod
    def from_payload(cls, payload: object) -> "AccessToken":
        if isinstance(payload, str) and payload:
            return cls(value=payload)
        if not isinstance(payload, dict):
            raise RuntimeError("Stored token must be a string or JSON object.")
        value = payload.get("value")
        if not isinstance(value, str) or not value:
            raise RuntimeError("Stored token is missing value.")
        try:
            issued_via = TokenSource(payload.get("issued_via", TokenSource.LOGIN.value))
        except ValueError as error:
            raise RuntimeError("Stored token has an unknown issued_via.") from error
        return cls(value=value, issued_via=issued_via)


@dataclass
class PendingRequest:
    """A caller parked behind an in-flight renewal.

    ``replay`` is None for callers that only wait for the new token.
    """

    future: asyncio.Future
    descriptor: Any = None
    replay: Callable[[Any], Awaitable[Any]] | None = None

    @property
    def completed(self) -> bool:
        return self.future.done()
