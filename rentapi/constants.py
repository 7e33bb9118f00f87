from __future__ import annotations

import logging

HTTP_METHODS = {
    "get",
    "post",
    "put",
    "patch",
    "delete",
    "options",
    "head",
}

LOGGER = logging.getLogger("rentapi.http")
APP_VERSION = "0.1.0"

DEFAULT_BASE_URL = "http://localhost:5000/api"
DEFAULT_TIMEOUT_MS = 10000
MAX_RETRIES = 3
BASE_DELAY_MS = 1000
READ_ONLY_METHODS = frozenset({"GET"})

TOKEN_STORAGE_KEY = "token"
DEFAULT_TOKEN_STORE_PATH = ".token.json"

REFRESH_PATH = "/auth/refresh"
LOGIN_PATH = "/auth/login"
REGISTER_PATH = "/auth/register"
PROFILE_PATH = "/auth/profile"

# Request extension read by RetryTransport; absent means "use the method table".
RETRYABLE_EXTENSION = "rentapi.retryable"

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}
