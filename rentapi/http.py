from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum

import httpx

from .constants import BASE_DELAY_MS, LOGGER, MAX_RETRIES, READ_ONLY_METHODS, RETRYABLE_EXTENSION
from .errors import ClientError, HttpStatusError, ServerError, Unauthorized


class FailureKind(str, Enum):
    NETWORK_ERROR = "network_error"
    UNAUTHORIZED = "unauthorized"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"


def classify_failure(outcome: httpx.Response | BaseException) -> FailureKind | None:
    """Map a transport outcome to a failure kind, or None for 2xx/3xx responses."""
    if isinstance(outcome, httpx.TransportError):
        return FailureKind.NETWORK_ERROR
    if not isinstance(outcome, httpx.Response):
        raise TypeError(f"Cannot classify outcome of type {type(outcome).__name__}.")

    status = outcome.status_code
    if status < 400:
        return None
    if status == 401:
        return FailureKind.UNAUTHORIZED
    if status >= 500:
        return FailureKind.SERVER_ERROR
    return FailureKind.CLIENT_ERROR


def _friendly_error_message(status_code: int) -> str:
    if status_code == 401:
        return "Authentication failed. The access token may have expired."
    if status_code == 403:
        return "You don't have permission to perform this action."
    if status_code == 404:
        return "The requested resource was not found."
    if status_code == 429:
        return "Rate limit exceeded. Please try again later."
    if status_code >= 500:
        return "The API is experiencing issues. Please try again later."
    return f"API request failed with status {status_code}."


_ERROR_TYPES: dict[FailureKind, type[HttpStatusError]] = {
    FailureKind.UNAUTHORIZED: Unauthorized,
    FailureKind.SERVER_ERROR: ServerError,
    FailureKind.CLIENT_ERROR: ClientError,
}


def error_for_response(kind: FailureKind, response: httpx.Response) -> HttpStatusError:
    error_type = _ERROR_TYPES[kind]
    message = (
        f"{_friendly_error_message(response.status_code)} "
        f"({response.request.method} {response.request.url})"
    )
    return error_type(message, response=response)


@dataclass(frozen=True)
class RequestAttempt:
    index: int = 0
    max_retries: int = MAX_RETRIES
    base_delay: float = BASE_DELAY_MS / 1000

    @property
    def delay(self) -> float:
        # Linear growth: BASE_DELAY * (attemptIndex + 1).
        return self.base_delay * (self.index + 1)

    def next(self) -> "RequestAttempt":
        return replace(self, index=self.index + 1)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = MAX_RETRIES
    base_delay: float = BASE_DELAY_MS / 1000
    read_only_methods: frozenset[str] = READ_ONLY_METHODS

    def first_attempt(self) -> RequestAttempt:
        return RequestAttempt(index=0, max_retries=self.max_retries, base_delay=self.base_delay)

    def is_retryable(self, request: httpx.Request) -> bool:
        explicit = request.extensions.get(RETRYABLE_EXTENSION)
        if explicit is not None:
            return bool(explicit)
        return request.method.upper() not in self.read_only_methods

    def should_retry(self, request: httpx.Request, attempt: RequestAttempt) -> bool:
        return attempt.index < attempt.max_retries and self.is_retryable(request)


class RetryTransport(httpx.AsyncBaseTransport):
    """Re-issues requests that failed before any response was received."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        policy: RetryPolicy | None = None,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._logger = logger or LOGGER

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        attempt = self._policy.first_attempt()

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            try:
                return await self._transport.handle_async_request(next_request)
            except httpx.TransportError as error:
                if not self._policy.should_retry(request, attempt):
                    raise
                delay = attempt.delay
                self._logger.warning(
                    "Retrying request (%s/%s) after %ss (%s %s): %s",
                    attempt.index + 1,
                    attempt.max_retries,
                    delay,
                    request.method,
                    request.url,
                    error,
                )
                await self._sleep(delay)
                attempt = attempt.next()

    async def aclose(self) -> None:
        await self._transport.aclose()


async def log_request(request: httpx.Request) -> None:
    LOGGER.info("API request %s %s", request.method, request.url)


async def log_response(response: httpx.Response) -> None:
    LOGGER.info(
        "API response %s %s -> %s",
        response.request.method,
        response.request.url,
        response.status_code,
    )
    if response.status_code >= 400:
        body = await response.aread()
        text = body.decode("utf-8", errors="replace")
        if len(text) > 1000:
            text = text[:1000] + "...<truncated>"
        LOGGER.warning("API error body: %s", text)
