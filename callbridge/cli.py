"""CallBridge CLI entry point.

Usage:
    callbridge run [--config callbridge.yaml] [--env-file .env]
    callbridge init [--output callbridge.yaml]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger


def cmd_run(args: argparse.Namespace) -> None:
    """Run the CallBridge server."""
    if args.env_file and Path(args.env_file).exists():
        load_dotenv(args.env_file)
        logger.debug(f"Loaded environment from {args.env_file}")

    from callbridge.config import load_config

    config_path = args.config
    if config_path and not Path(config_path).exists():
        logger.error(f"Config file not found: {config_path}")
        sys.exit(1)

    config = load_config(config_path)

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level.upper())

    logger.info(f"CallBridge starting with config: {config_path or 'environment'}")
    logger.info(f"Phone number ID: {config.provider.phone_number_id or '(not set)'}")
    logger.info(f"Listening on: {args.host or config.server.host}:{args.port or config.server.port}")
    logger.info(f"ICE servers: {[s.urls for s in config.ice.servers]}")

    from callbridge.server import run_server

    run_server(config, host=args.host, port=args.port)


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from callbridge.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: callbridge run --config {output}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="callbridge",
        description="CallBridge - browser to WhatsApp voice call bridge",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `callbridge run`
    run_parser = subparsers.add_parser("run", help="Run the CallBridge server")
    run_parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file (default: read the environment)",
    )
    run_parser.add_argument(
        "--env-file", "-e",
        default=".env",
        help="dotenv file loaded before reading the environment (default: .env)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", "-p", type=int, default=None, help="Override the listen port")

    # `callbridge init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="callbridge.yaml",
        help="Output file path (default: callbridge.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "init":
        cmd_init(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
