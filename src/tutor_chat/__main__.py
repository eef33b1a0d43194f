"""CLI entry point for tutor-chat."""

from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn

from tutor_chat.app import create_app
from tutor_chat.config import AppConfig, is_configured_secret, load_config
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.log import setup_logging
from tutor_chat.storage.object_store import ObjectStoreClient


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tutor-chat",
        description="LLM chat assistant backend with cloud-drive conversation storage",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("start", "Start the HTTP server"),
        ("config-check", "Validate configuration"),
        ("model-info", "Show configured models and which are active"),
        ("drive-check", "Open a session against the configured cloud drive"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    match args.command:
        case "config-check":
            _check_config(args.config, args.env)
        case "model-info":
            _model_info(args.config, args.env)
        case "drive-check":
            _drive_check(args.config, args.env)
        case "start":
            _run(args.config, args.env)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    registry = ModelRegistry.from_config(config)
    storage = config.storage
    drive_ready = is_configured_secret(storage.account) and is_configured_secret(storage.secret)
    print(f"Configuration valid: {config_path}")
    print(f"  Server: {config.server.host}:{config.server.port}")
    print(f"  Drive: {storage.api_url} ({'credentials set' if drive_ready else 'NOT configured, cache-only mode'})")
    print(f"  Models configured: {len(config.models)} ({len(registry.available())} active)")
    default = registry.default()
    print(f"  Default model: {default.id if default else '(none)'}")
    print(f"  History window: {config.chat.history_window} messages")


def _model_info(config_path: str, env_path: str) -> None:
    """Show every configured model and whether it can serve requests."""
    config = _load(config_path, env_path)
    registry = ModelRegistry.from_config(config)
    default = registry.default()

    print("LLM Model Configuration")
    print("=" * 50)
    for model_id in registry.ids():
        model = registry.get(model_id)
        status = "active" if registry.is_active(model) else ("disabled" if not model.enabled else "no API key")
        marker = " (default)" if default and default.id == model.id else ""
        print(f"\n  Model: {model.id}{marker}")
        print(f"    Name     : {model.display_name}")
        print(f"    Provider : {model.provider}")
        print(f"    Model ID : {model.model_id}")
        print(f"    Tokens   : {model.max_tokens}")
        print(f"    Temp     : {model.temperature}")
        print(f"    Status   : {status}")
    print()


def _drive_check(config_path: str, env_path: str) -> None:
    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.log_format)
    store = ObjectStoreClient(config.storage)
    if not store.configured:
        print("Drive credentials are not configured", file=sys.stderr)
        sys.exit(1)
    if asyncio.run(store.health_check()):
        print(f"Drive reachable: {config.storage.api_url}")
    else:
        print(f"Drive NOT reachable: {config.storage.api_url}", file=sys.stderr)
        sys.exit(1)


def _run(config_path: str, env_path: str) -> None:
    """Load config and serve the application."""
    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.log_format)
    app = create_app(config)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
