from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

import yaml

from copilot_override.config import load_service_config, split_bind_address
from copilot_override.logging_config import build_log_config
from copilot_override.settings import get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="copilot-override",
        description=(
            "Proxy that accepts Copilot completion requests, rewrites them for "
            "another model provider and streams the response back."
        ),
    )
    parser.add_argument(
        "-c",
        "--config",
        default="./config.json",
        help="Configuration file path (JSON or YAML).",
    )
    parser.add_argument(
        "-r",
        "--release",
        action="store_true",
        help="Set release mode.",
    )
    parser.add_argument(
        "-p",
        "--plain",
        action="store_true",
        help="Plain text logs instead of JSON lines (only meaningful in release mode).",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Log every request and response body (ignored in release mode).",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_service_config(args.config)
        host, port = split_bind_address(config.bind)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        print(f"Failed to load config: {exc}", file=sys.stderr)
        return 1

    release = args.release or os.getenv("RELEASE_MODE", "").lower() in {"1", "true"}
    os.environ["SERVICE_CONFIG_PATH"] = str(args.config)
    os.environ["RELEASE_MODE"] = str(release).lower()
    os.environ["PLAIN_LOG"] = str(args.plain).lower()
    os.environ["LOG_BODIES"] = str(args.debug).lower()
    get_settings.cache_clear()

    import uvicorn

    uvicorn.run(
        "copilot_override.main:app",
        host=host,
        port=port,
        log_config=build_log_config(release=release, plain=args.plain),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
