"""
Command-line interface for the status poller.

This module provides the main CLI entry point with commands for:
- run: Poll SmartThings and write gateway events to stdout as JSON lines
- config: Configuration management (show, init, validate)
- auth-url / exchange-code: Non-interactive OAuth authorization helpers
- self-test: Validate configuration, credentials and API reachability

Configuration is read from a JSON file using the display layer's option
names. A ``.env`` file and the ST_TOKEN, ST_CLIENT_ID, ST_CLIENT_SECRET and
ST_STATE_DIR environment variables override file values.
"""

import argparse
import asyncio
import json
import os
import secrets
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from . import __version__
from .audit_logger import AuditLogger
from .config import DEFAULT_POLL_INTERVAL_MS, ModuleConfig
from .credential_vault import CredentialVault
from .exceptions import ConfigurationError, StStatusError
from .i18n import get_message
from .models import to_iso
from .notifications import NotificationGateway, StreamChannel
from .poller import PollingSession
from .self_test import SelfTest, run_self_test
from .token_manager import DEFAULT_REDIRECT_URI, TokenManager, build_authorize_url, extract_code


DEFAULT_CONFIG_PATH = Path.home() / ".st_status" / "config.json"

# Environment variable -> config option
ENV_OVERRIDES = {
    "ST_TOKEN": "token",
    "ST_CLIENT_ID": "clientId",
    "ST_CLIENT_SECRET": "clientSecret",
    "ST_STATE_DIR": "stateDir",
}


def create_default_config(language: str = "en") -> dict[str, Any]:
    """
    Create example configuration options.

    Returns:
        Option dict in the display layer's naming
    """
    return {
        "clientId": "",
        "clientSecret": "",
        "devices": [],
        "rooms": ["Living Room"],
        "pollInterval": DEFAULT_POLL_INTERVAL_MS,
        "temperatureUnit": "F",
        "defaultSort": "name",
        "debug": False,
        "testMode": False,
        "language": language,
    }


def load_config_data(config_path: Path) -> Optional[dict[str, Any]]:
    """
    Load raw configuration options from a JSON file.

    Returns:
        The option dict, None if the file does not exist

    Raises:
        ConfigurationError: If the file is not valid JSON
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            code="invalid_json",
            message=f"Could not parse {config_path}: {e}",
            details={"path": str(config_path)},
        ) from e


def apply_env_overrides(
    data: dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """Return a copy of data with non-empty environment overrides applied."""
    environ = os.environ if environ is None else environ
    merged = dict(data)
    for variable, option in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            merged[option] = value
    return merged


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ModuleConfig:
    """
    Build the module configuration from file and environment.

    Args:
        config_path: Explicit config file; the default path is optional
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: If an explicit file is missing or any value is invalid
    """
    path = config_path or DEFAULT_CONFIG_PATH
    data = load_config_data(path)
    if data is None:
        if config_path is not None:
            raise ConfigurationError(
                code="config_not_found",
                message=f"Could not load config from {config_path}",
                details={"path": str(config_path)},
            )
        data = {}
    return ModuleConfig.from_dict(apply_env_overrides(data, environ))


def save_config_to_file(data: dict[str, Any], config_path: Path) -> bool:
    """
    Save configuration options to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def create_logger(config: ModuleConfig) -> AuditLogger:
    return AuditLogger.from_level_name(
        config.logging.level,
        output_format=config.logging.output_format,
    )


async def run_session(
    config: ModuleConfig,
    once: bool = False,
    stream=None,
    logger: Optional[AuditLogger] = None,
) -> int:
    """
    Run a polling session until interrupted.

    Args:
        config: Module configuration
        once: Stop after the first cycle
        stream: Where gateway events are written (stdout by default)
        logger: Optional AuditLogger

    Returns:
        Exit code
    """
    logger = logger or create_logger(config)
    gateway = NotificationGateway(logger=logger)
    gateway.register_channel(StreamChannel(stream))

    session = PollingSession(config, gateway=gateway, logger=logger)
    try:
        started = await session.start()
        if not started:
            return 1
        if once:
            return 0
        # Timers run on the loop until the task is cancelled
        await asyncio.Event().wait()
        return 0
    finally:
        await session.stop()


def _resolve_language(args: argparse.Namespace, config: Optional[ModuleConfig] = None) -> str:
    if getattr(args, "language", None):
        return args.language
    return config.language if config else "en"


def _load_or_report(args: argparse.Namespace) -> Optional[ModuleConfig]:
    config_path = Path(args.config) if getattr(args, "config", None) else None
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        print(get_message("config.invalid", _resolve_language(args), error=e.message),
              file=sys.stderr)
        return None


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    config = _load_or_report(args)
    if config is None:
        return 1
    language = _resolve_language(args, config)

    if config.test_mode:
        print(get_message("cli.test_mode", language), file=sys.stderr)
    print(get_message("cli.starting", language,
                      interval_s=config.effective_poll_interval_ms // 1000), file=sys.stderr)

    try:
        return asyncio.run(run_session(config, once=args.once))
    except KeyboardInterrupt:
        print(get_message("cli.stopped", language), file=sys.stderr)
        return 0
    except StStatusError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH
    language = _resolve_language(args)

    if args.action == "init":
        if config_path.exists() and not args.force:
            print(get_message("config.exists", language, path=config_path))
            print("Use --force to overwrite.")
            return 1
        if save_config_to_file(create_default_config(language), config_path):
            print(get_message("config.created", language, path=config_path))
            return 0
        return 1

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print(get_message("config.invalid", language, error=e.message), file=sys.stderr)
        return 1

    if args.action == "show":
        print(get_message("config.loaded", language, path=config_path))
        masked = AuditLogger().mask_sensitive_data(config.to_dict())
        print(json.dumps(masked, indent=2, ensure_ascii=False))
        return 0

    elif args.action == "validate":
        result = SelfTest(config).validate_config()
        for error in result.errors:
            print(f"  ✗ {error}")
        for warning in result.warnings:
            print(f"  ! {warning}")
        if not result.valid:
            return 1
        print(get_message("config.valid", language))
        return 0

    return 1


def cmd_auth_url(args: argparse.Namespace) -> int:
    """Handle the 'auth-url' command."""
    config = _load_or_report(args)
    if config is None:
        return 1
    language = _resolve_language(args, config)

    if config.oauth is None:
        print(get_message("auth.no_client_credentials", language), file=sys.stderr)
        return 1

    url = build_authorize_url(
        config.oauth.client_id,
        secrets.token_hex(16),
        redirect_uri=args.redirect_uri,
    )
    print(get_message("auth.open_url", language))
    print(url)
    return 0


async def exchange_authorization_code(
    config: ModuleConfig,
    code: str,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    logger: Optional[AuditLogger] = None,
    http_client=None,
):
    """Exchange a code and persist the resulting credentials."""
    tokens = TokenManager(
        config,
        CredentialVault(config.persistence, logger=logger),
        http_client=http_client,
        logger=logger,
    )
    try:
        return await tokens.exchange_code(code, redirect_uri)
    finally:
        await tokens.aclose()


def cmd_exchange_code(args: argparse.Namespace) -> int:
    """Handle the 'exchange-code' command."""
    config = _load_or_report(args)
    if config is None:
        return 1
    language = _resolve_language(args, config)

    if config.oauth is None:
        print(get_message("auth.no_client_credentials", language), file=sys.stderr)
        return 1

    code = extract_code(args.code)
    if not code:
        print(get_message("auth.no_code", language), file=sys.stderr)
        return 1

    try:
        record = asyncio.run(exchange_authorization_code(
            config, code, redirect_uri=args.redirect_uri, logger=create_logger(config),
        ))
    except StStatusError as e:
        print(get_message("auth.exchange_failed", language, error=e.message), file=sys.stderr)
        return 1

    expires_at = to_iso(record.expires_at) if record.expires_at else "?"
    print(get_message("auth.exchange_success", language, expires_at=expires_at))
    return 0


def cmd_self_test(args: argparse.Namespace) -> int:
    """Handle the 'self-test' command."""
    config = _load_or_report(args)
    if config is None:
        return 1
    if args.language:
        config.language = args.language

    result = asyncio.run(run_self_test(
        config=config,
        print_output=True,
        logger=create_logger(config),
    ))

    return 0 if result.success else 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="st-status",
        description="SmartThings device status poller",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'run' command
    run_parser = subparsers.add_parser(
        "run",
        help="Poll device status and print gateway events as JSON lines",
    )
    run_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    run_parser.add_argument(
        "--language", "-l",
        choices=["en", "de"],
        help="Output language (default: from configuration)",
    )
    run_parser.set_defaults(func=cmd_run)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.add_argument(
        "--language", "-l",
        choices=["en", "de"],
        help="Output language and default language for new configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    # 'auth-url' command
    auth_parser = subparsers.add_parser(
        "auth-url",
        help="Print the OAuth authorization URL",
    )
    auth_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    auth_parser.add_argument(
        "--redirect-uri",
        default=DEFAULT_REDIRECT_URI,
        help=f"Registered redirect URI (default: {DEFAULT_REDIRECT_URI})",
    )
    auth_parser.add_argument(
        "--language", "-l",
        choices=["en", "de"],
        help="Output language (default: from configuration)",
    )
    auth_parser.set_defaults(func=cmd_auth_url)

    # 'exchange-code' command
    exchange_parser = subparsers.add_parser(
        "exchange-code",
        help="Exchange an authorization code (or the redirect URL) for tokens",
    )
    exchange_parser.add_argument(
        "code",
        help="Authorization code or the full redirect URL",
    )
    exchange_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    exchange_parser.add_argument(
        "--redirect-uri",
        default=DEFAULT_REDIRECT_URI,
        help=f"Registered redirect URI (default: {DEFAULT_REDIRECT_URI})",
    )
    exchange_parser.add_argument(
        "--language", "-l",
        choices=["en", "de"],
        help="Output language (default: from configuration)",
    )
    exchange_parser.set_defaults(func=cmd_exchange_code)

    # 'self-test' command
    self_test_parser = subparsers.add_parser(
        "self-test",
        help="Validate configuration, credentials and API reachability",
    )
    self_test_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    self_test_parser.add_argument(
        "--language", "-l",
        choices=["en", "de"],
        help="Output language (default: from configuration)",
    )
    self_test_parser.set_defaults(func=cmd_self_test)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
