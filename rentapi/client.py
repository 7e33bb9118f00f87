from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx

from auth import renewal
from auth.models import AccessToken, TokenSource
from auth.refresh import RefreshCoordinator
from auth.session import SessionExpiredNotifier
from auth.token_store import CredentialStore, FileStorage, KeyValueStorage

from .constants import (
    DEFAULT_HEADERS,
    HTTP_METHODS,
    LOGGER,
    PROFILE_PATH,
    RETRYABLE_EXTENSION,
    TOKEN_STORAGE_KEY,
)
from .env import ClientConfig
from .errors import (
    ApiError,
    AuthenticationError,
    HttpStatusError,
    NetworkError,
    RefreshFailed,
    Unauthorized,
)
from .http import RetryPolicy, RetryTransport, classify_failure, error_for_response, log_request, log_response


@dataclass
class RequestDescriptor:
    method: str
    url: str
    params: dict | None = None
    json: object = None
    content: bytes | str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout_ms: int | None = None
    # None defers to the retry policy's read-only method table.
    read_only: bool | None = None
    retried_for_auth: bool = False

    def __post_init__(self) -> None:
        if self.method.lower() not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {self.method}")
        self.method = self.method.upper()


def _error_message(error: HttpStatusError, default: str) -> str:
    payload = error.payload
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
    return default


def _profile_user(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError as error:
        raise ApiError("Profile response is not valid JSON.", response=response) from error
    user = body.get("user") if isinstance(body, dict) else None
    if not isinstance(user, dict):
        raise ApiError("Profile response missing user.", response=response)
    return user


class ApiClient:
    """Authenticated front door to the REST backend.

    Every call carries the stored bearer token. A 401 parks the call behind
    the RefreshCoordinator and replays it once with the renewed token.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        credentials: CredentialStore,
        *,
        coordinator: RefreshCoordinator | None = None,
        notifier: SessionExpiredNotifier | None = None,
    ) -> None:
        self._http = http_client
        self.credentials = credentials
        self.coordinator = coordinator or RefreshCoordinator(
            credentials,
            renew_fn=self._renew,
            notifier=notifier,
        )

    @property
    def notifier(self) -> SessionExpiredNotifier:
        return self.coordinator.notifier

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        await self._http.aclose()

    # -- dispatch --------------------------------------------------------------

    async def issue(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            return await self._send(descriptor)
        except Unauthorized:
            if descriptor.retried_for_auth:
                raise
            descriptor.retried_for_auth = True

        LOGGER.info(
            "Unauthorized %s %s; waiting for session renewal",
            descriptor.method,
            descriptor.url,
        )
        return await self.coordinator.enqueue(descriptor, self._send)

    async def _send(self, descriptor: RequestDescriptor) -> httpx.Response:
        request = self._build_request(descriptor)
        try:
            response = await self._http.send(request)
        except httpx.TransportError as error:
            raise NetworkError(
                f"No response for {descriptor.method} {descriptor.url}: {error}",
                request=request,
            ) from error

        kind = classify_failure(response)
        if kind is not None:
            raise error_for_response(kind, response)
        return response

    def _build_request(self, descriptor: RequestDescriptor) -> httpx.Request:
        headers = dict(descriptor.headers)
        token = self.credentials.get()
        if token is not None:
            headers["Authorization"] = token.authorization

        extensions = {}
        if descriptor.read_only is not None:
            extensions[RETRYABLE_EXTENSION] = not descriptor.read_only

        timeout = httpx.USE_CLIENT_DEFAULT
        if descriptor.timeout_ms is not None:
            timeout = descriptor.timeout_ms / 1000

        return self._http.build_request(
            descriptor.method,
            descriptor.url,
            params=descriptor.params,
            json=descriptor.json,
            content=descriptor.content,
            headers=headers,
            timeout=timeout,
            extensions=extensions,
        )

    async def _renew(self, token: str) -> str:
        result = await renewal.refresh_access_token(self._http, token)
        return result.token

    # -- verbs -----------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: object = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        read_only: bool | None = None,
    ) -> httpx.Response:
        descriptor = RequestDescriptor(
            method=method,
            url=url,
            params=params,
            json=json,
            content=content,
            headers=dict(headers or {}),
            timeout_ms=timeout_ms,
            read_only=read_only,
        )
        return await self.issue(descriptor)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # -- session ---------------------------------------------------------------

    async def login(self, email: str, password: str, *, role: str | None = None) -> dict:
        try:
            result = await renewal.login(self._http, email, password)
        except NetworkError:
            raise
        except HttpStatusError as error:
            raise AuthenticationError(
                _error_message(error, "Login failed"),
                status_code=error.status_code,
                response=error.response,
            ) from error
        except RuntimeError as error:
            raise AuthenticationError(f"Login failed: {error}") from error

        user = result.user or {}
        if role is not None and user.get("role") != role:
            raise AuthenticationError(
                f"This account is registered as a {user.get('role')}, not a {role}. "
                "Please select the correct role or contact support."
            )

        self.credentials.set(AccessToken(value=result.token, issued_via=TokenSource.LOGIN))
        LOGGER.info("Logged in as %s", user.get("email", email))
        return user

    async def register(self, payload: dict) -> dict:
        try:
            result = await renewal.register(self._http, payload)
        except NetworkError:
            raise
        except HttpStatusError as error:
            raise AuthenticationError(
                _error_message(error, "Registration failed"),
                status_code=error.status_code,
                response=error.response,
            ) from error
        except RuntimeError as error:
            raise AuthenticationError(f"Registration failed: {error}") from error

        self.credentials.set(AccessToken(value=result.token, issued_via=TokenSource.LOGIN))
        return result.user or {}

    def logout(self) -> None:
        LOGGER.info("Logging out")
        self.credentials.clear()

    async def refresh(self) -> bool:
        if self.credentials.get() is None:
            return False
        try:
            await self.coordinator.refresh()
        except RefreshFailed:
            return False
        return True

    async def fetch_profile(self) -> dict:
        response = await self.get(PROFILE_PATH)
        return _profile_user(response)

    async def update_profile(self, payload: dict) -> dict:
        try:
            response = await self.put(PROFILE_PATH, json=payload)
        except HttpStatusError as error:
            raise ApiError(
                _error_message(error, "Profile update failed"),
                status_code=error.status_code,
                response=error.response,
            ) from error
        return _profile_user(response)

    async def validate_token(self) -> bool:
        if self.credentials.get() is None:
            return False
        try:
            await self.fetch_profile()
        except ApiError as error:
            LOGGER.info("Token validation failed: %s", error)
            return False
        return True


def create_client(
    config: ClientConfig,
    *,
    storage: KeyValueStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    notifier: SessionExpiredNotifier | None = None,
    sleep=asyncio.sleep,
) -> ApiClient:
    policy = RetryPolicy(
        max_retries=config.max_retries,
        base_delay=config.base_delay_seconds,
        read_only_methods=config.read_only_methods,
    )
    retry_transport = RetryTransport(
        transport or httpx.AsyncHTTPTransport(),
        policy=policy,
        sleep=sleep,
        logger=LOGGER,
    )

    event_hooks: dict[str, list] = {"request": [], "response": []}
    if config.debug:
        event_hooks = {"request": [log_request], "response": [log_response]}

    http_client = httpx.AsyncClient(
        base_url=config.base_url,
        headers=DEFAULT_HEADERS,
        timeout=config.timeout_seconds,
        transport=retry_transport,
        event_hooks=event_hooks,
    )
    credentials = CredentialStore(
        storage or FileStorage(config.token_store_path),
        key=TOKEN_STORAGE_KEY,
    )
    return ApiClient(http_client, credentials, notifier=notifier)
