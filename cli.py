from __future__ import annotations

import argparse
import asyncio
import json
import sys

from rentapi.client import ApiClient, create_client
from rentapi.constants import APP_VERSION, HTTP_METHODS, LOGGER
from rentapi.env import load_config, load_env, setup_logging
from rentapi.errors import ApiError, HttpStatusError


def create_api_client() -> ApiClient:
    load_env()
    config = load_config()
    setup_logging(config)
    LOGGER.info("API client %s -> %s", APP_VERSION, config.base_url)

    client = create_client(config)
    client.notifier.subscribe(
        lambda reason: print("Session expired; please log in again.", file=sys.stderr)
    )
    return client


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rentapi",
        description="Issue one authenticated request against the rental API.",
    )
    parser.add_argument("method", choices=sorted(method.upper() for method in HTTP_METHODS))
    parser.add_argument("path", help="Path relative to RENTAPI_BASE_URL, e.g. /auth/profile")
    parser.add_argument("--json", dest="body", help="JSON request body")
    return parser


async def run(method: str, path: str, body: object = None) -> int:
    async with create_api_client() as client:
        try:
            response = await client.request(method, path, json=body)
        except HttpStatusError as error:
            print(json.dumps(error.payload, indent=2), file=sys.stderr)
            return 1
        except ApiError as error:
            print(str(error), file=sys.stderr)
            return 1

    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    body = json.loads(args.body) if args.body else None
    return asyncio.run(run(args.method, args.path, body))


if __name__ == "__main__":
    sys.exit(main())
