from __future__ import annotations

import httpx


class ApiError(RuntimeError):
    """Base class for every failure surfaced by the API client."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response: httpx.Response | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class NetworkError(ApiError):
    """No response was received (connection refused, timeout, DNS failure)."""

    def __init__(self, message: str, *, request: httpx.Request | None = None) -> None:
        super().__init__(message)
        self.request = request


class HttpStatusError(ApiError):
    def __init__(self, message: str, *, response: httpx.Response) -> None:
        super().__init__(message, status_code=response.status_code, response=response)

    @property
    def payload(self) -> object:
        # The backend's error body, unmodified.
        try:
            return self.response.json()
        except ValueError:
            return self.response.text


class Unauthorized(HttpStatusError):
    pass


class ServerError(HttpStatusError):
    pass


class ClientError(HttpStatusError):
    pass


class RefreshFailed(ApiError):
    def __init__(self, message: str = "Session renewal failed.") -> None:
        super().__init__(message, status_code=401)


class AuthenticationError(ApiError):
    pass
