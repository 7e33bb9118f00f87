from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from .constants import (
    BASE_DELAY_MS,
    DEFAULT_BASE_URL,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOKEN_STORE_PATH,
    LOGGER,
    MAX_RETRIES,
    READ_ONLY_METHODS,
)


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = MAX_RETRIES
    base_delay_ms: int = BASE_DELAY_MS
    read_only_methods: frozenset[str] = READ_ONLY_METHODS
    token_store_path: str = DEFAULT_TOKEN_STORE_PATH
    debug: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def base_delay_seconds(self) -> float:
        return self.base_delay_ms / 1000


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _get_env_int(key: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")
    if value < minimum:
        raise RuntimeError(f"{key} must be at least {minimum}.")
    return value


def validate_base_url(raw: str) -> str:
    try:
        url = TypeAdapter(AnyHttpUrl).validate_python(raw.strip())
    except ValidationError as error:
        raise RuntimeError(
            "RENTAPI_BASE_URL must be a valid http(s) URL (for example: "
            "http://localhost:5000/api)."
        ) from error
    return str(url).rstrip("/")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def load_config() -> ClientConfig:
    read_only_methods = {method.upper() for method in parse_csv_env("RENTAPI_READ_ONLY_METHODS")}
    return ClientConfig(
        base_url=validate_base_url(os.getenv("RENTAPI_BASE_URL", DEFAULT_BASE_URL)),
        timeout_ms=_get_env_int("RENTAPI_TIMEOUT_MS", DEFAULT_TIMEOUT_MS, minimum=1),
        max_retries=_get_env_int("RENTAPI_MAX_RETRIES", MAX_RETRIES),
        base_delay_ms=_get_env_int("RENTAPI_RETRY_BASE_DELAY_MS", BASE_DELAY_MS),
        read_only_methods=frozenset(read_only_methods or READ_ONLY_METHODS),
        token_store_path=os.getenv("RENTAPI_TOKEN_STORE_PATH", DEFAULT_TOKEN_STORE_PATH),
        debug=is_truthy(os.getenv("RENTAPI_DEBUG", "1")),
    )


def setup_logging(config: ClientConfig) -> bool:
    if config.debug:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return config.debug
