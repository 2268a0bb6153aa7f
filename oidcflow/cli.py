"""Command-line interface for oidcflow."""

from __future__ import annotations

import argparse
import json
import sys

from pathlib import Path
from typing import Any

from .utils.async_helpers import run_async


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="oidcflow",
        description="oidcflow configuration and OAuth2 / OpenID Connect tools",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize an oidcflow.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="oidcflow.toml",
        help="Path for configuration file (default: oidcflow.toml)",
    )

    # login-url command
    url_parser = subparsers.add_parser(
        "login-url",
        help="Print an authorization URL for the configured client",
    )
    url_parser.add_argument("--redirect-uri", type=str, help="Redirect URI")
    url_parser.add_argument("--prompt", type=str, help="prompt parameter (none, login, ...)")
    url_parser.add_argument("--scope", type=str, help="Additional scopes")
    url_parser.add_argument("--login-hint", type=str, help="Pre-filled username")
    url_parser.add_argument("--idp-hint", type=str, help="Identity provider hint")
    url_parser.add_argument(
        "--register",
        action="store_true",
        help="Target the registration endpoint",
    )

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Sign in through the system browser and print the token claims",
    )
    login_parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=0,
        help="Port for the redirect capture server (default: auto-assign)",
    )
    login_parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Seconds to wait for the redirect (default: 120)",
    )

    # decode-token command
    decode_parser = subparsers.add_parser(
        "decode-token",
        help="Print the claims of an encoded token (signature is not verified)",
    )
    decode_parser.add_argument("token", type=str, help="Encoded token, or - to read stdin")

    args = parser.parse_args(argv)

    from .config import get_settings
    from .log import configure, enable_debug

    configure(get_settings().log)
    if args.debug:
        enable_debug()

    if args.command == "config":
        return handle_config(args)
    if args.command == "init":
        return handle_init(args)
    if args.command == "login-url":
        return handle_login_url(args)
    if args.command == "login":
        return handle_login(args)
    if args.command == "decode-token":
        return handle_decode_token(args)
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import OIDCFlowSettings

    if args.sources:
        return show_config_sources()

    settings = OIDCFlowSettings()

    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def handle_init(args: argparse.Namespace) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import OIDCFlowSettings

    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    settings = OIDCFlowSettings()
    toml_content = settings.to_toml()

    header = """# oidcflow Configuration File
#
# Environment variables can override any setting:
#   OIDCFLOW_CLIENT__URL="https://sso.example.com"
#   OIDCFLOW_CLIENT__REALM="myrealm"
#   OIDCFLOW_CLIENT__CLIENT_ID="my-app"
#   OIDCFLOW_INIT__RESPONSE_MODE="query"
#   OIDCFLOW_STORAGE__BACKEND="redis"
#
# Use nested keys with __ (double underscore) delimiter.

"""
    path.write_text(header + toml_content, encoding="utf-8")
    print(f"Created {path}")

    return 0


def handle_login_url(args: argparse.Namespace) -> int:
    """Handle the login-url command."""
    from .exceptions import OIDCFlowException

    try:
        url = _build_login_url(args)
    except OIDCFlowException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(url)
    return 0


@run_async
async def _build_login_url(args: argparse.Namespace) -> str:
    from .auth import AuthFlowManager
    from .state.types import LoginOptions

    engine = AuthFlowManager()
    try:
        await engine.init(_init_options(redirect_uri=args.redirect_uri))
        options = LoginOptions(
            redirect_uri=args.redirect_uri,
            prompt=args.prompt,
            scope=args.scope,
            login_hint=args.login_hint,
            idp_hint=args.idp_hint,
        )
        if args.register:
            return await engine.create_register_url(options)
        return await engine.create_login_url(options)
    finally:
        await engine.close()


def handle_login(args: argparse.Namespace) -> int:
    """Handle the login command."""
    from .exceptions import OIDCFlowException

    try:
        claims = _login(args)
    except OIDCFlowException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nLogin cancelled.")
        return 1
    print(json.dumps(claims, indent=2, sort_keys=True))
    return 0


@run_async
async def _login(args: argparse.Namespace) -> dict[str, Any]:
    from .auth import AuthFlowManager, LoopbackAdapter

    engine = AuthFlowManager()
    try:
        await engine.init(_init_options(response_mode="query"))
        adapter = LoopbackAdapter(engine, port=args.port, timeout=args.timeout)
        await adapter.login()
        return engine.token_parsed or {}
    finally:
        await engine.close()


def _init_options(**overrides: Any) -> Any:
    """Configured init options with on-load actions and monitoring disabled."""
    from .config import get_settings

    updates = {k: v for k, v in overrides.items() if v is not None}
    updates.update(on_load=None, check_login_iframe=False)
    return get_settings().init.model_copy(update=updates)


def handle_decode_token(args: argparse.Namespace) -> int:
    """Handle the decode-token command."""
    from .auth.tokens import decode_token
    from .exceptions import DecodingError

    token = sys.stdin.read().strip() if args.token == "-" else args.token
    try:
        claims = decode_token(token)
    except DecodingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(claims, indent=2, sort_keys=True))
    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    import os

    sources = [
        ("Built-in defaults", "", True),
        ("pyproject.toml [tool.oidcflow]", "pyproject.toml", None),
        ("./oidcflow.toml", "oidcflow.toml", None),
        (
            "~/.config/oidcflow/config.toml",
            str(Path.home() / ".config" / "oidcflow" / "config.toml"),
            None,
        ),
        ("OIDCFLOW_CONFIG_FILE", os.environ.get("OIDCFLOW_CONFIG_FILE", ""), None),
        ("Environment variables", "OIDCFLOW_* vars", None),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)

    for name, path_str, forced_status in sources:
        if forced_status is True:
            status = "✓ Active"
            path_display = ""
        elif name == "Environment variables":
            found = [k for k in os.environ if k.startswith("OIDCFLOW_")]
            if found:
                status = f"✓ {len(found)} vars"
                path_display = ", ".join(found[:3])
                if len(found) > 3:
                    path_display += "..."
            else:
                status = "✗ No vars"
                path_display = ""
        elif not path_str:
            status = "✗ Not set"
            path_display = ""
        else:
            path = Path(path_str).expanduser()
            status = "✓ Found" if path.exists() else "✗ Not found"
            path_display = str(path)

        print(f"{name:<40} {status:<15} {path_display}")

    print("\nNote: Later sources override earlier ones.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
