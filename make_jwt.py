"""Utility script to generate an App Store Connect JWT."""

from __future__ import annotations

import argparse
import sys

from dotenv import load_dotenv

from apple_store import AppleStoreConfig, AppleStoreConfigError, AppStoreTokenProvider


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a JWT for the App Store Connect API using environment configuration."
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file to load before reading the configuration.",
    )
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)

    try:
        config = AppleStoreConfig.from_env()
        token = AppStoreTokenProvider(config).generate()
    except AppleStoreConfigError as exc:
        print(f"Invalid environment configuration: {exc}", file=sys.stderr)
        return 1

    print(token)
    return 0


if __name__ == "__main__":  # pragma: no mutate - CLI entry point
    raise SystemExit(main())
