from __future__ import annotations

from dataclasses import dataclass

import httpx

from rentapi.constants import LOGIN_PATH, REFRESH_PATH, REGISTER_PATH, RETRYABLE_EXTENSION
from rentapi.errors import NetworkError
from rentapi.http import classify_failure, error_for_response


@dataclass
class TokenResponse:
    token: str
    user: dict | None = None

    @classmethod
    def from_payload(cls, payload: object) -> "TokenResponse":
        if not isinstance(payload, dict):
            raise RuntimeError("Token response must be a JSON object.")

        token = payload.get("token")
        user = payload.get("user")

        if not isinstance(token, str) or not token:
            raise RuntimeError("Token response missing token.")
        if user is not None and not isinstance(user, dict):
            raise RuntimeError("Token response user must be a JSON object.")

        return cls(token=token, user=user)


async def _token_request(
    client: httpx.AsyncClient,
    path: str,
    *,
    payload: dict | None = None,
    bearer: str | None = None,
    retryable: bool | None = None,
) -> TokenResponse:
    headers = {}
    if bearer:
        headers["Authorization"] = f"Bearer {bearer}"
    extensions = {}
    if retryable is not None:
        extensions[RETRYABLE_EXTENSION] = retryable

    try:
        response = await client.post(path, json=payload, headers=headers, extensions=extensions)
    except httpx.TransportError as error:
        raise NetworkError(f"Token request to {path} failed: {error}") from error

    kind = classify_failure(response)
    if kind is not None:
        raise error_for_response(kind, response)

    try:
        body = response.json()
    except ValueError as error:
        raise RuntimeError(f"Token response from {path} is not valid JSON.") from error
    return TokenResponse.from_payload(body)


async def refresh_access_token(client: httpx.AsyncClient, token: str) -> TokenResponse:
    # The renewal call is a single attempt: a network failure is a renewal failure.
    return await _token_request(client, REFRESH_PATH, bearer=token, retryable=False)


async def login(client: httpx.AsyncClient, email: str, password: str) -> TokenResponse:
    return await _token_request(
        client,
        LOGIN_PATH,
        payload={"email": email, "password": password},
    )


async def register(client: httpx.AsyncClient, payload: dict) -> TokenResponse:
    return await _token_request(client, REGISTER_PATH, payload=payload)
