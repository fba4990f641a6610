"""
Command line entry point for Mailboard.

    mailboard generate-key          print a fresh MAIL_ENCRYPTION_KEY
    mailboard serve                 run the API with uvicorn
    mailboard create-user EMAIL     add a user to the local session store
    mailboard create-session EMAIL  log in and print a bearer token
"""

import argparse
import getpass
import sqlite3
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

from .config import load_config
from .crypto import generate_encryption_key
from .user_auth import UserAuth

console = Console()


def _password(args) -> str:
    return args.password or getpass.getpass("Password: ")


def cmd_generate_key(args, config) -> int:
    key = generate_encryption_key()
    if args.quiet:
        print(key)
    else:
        console.print(Panel.fit(
            f"[bold]{key}[/bold]\n\nAdd to .env as MAIL_ENCRYPTION_KEY={key}",
            title="Encryption key",
            border_style="green"
        ))
    return 0


def cmd_serve(args, config) -> int:
    import uvicorn
    from api.main import configure_logging, create_app

    configure_logging(config.server.log_level)
    host = args.host or config.server.host
    port = args.port or config.server.port
    console.print(f"[blue]Starting Mailboard API on[/blue] http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port)
    return 0


def cmd_create_user(args, config) -> int:
    auth = UserAuth(config.server.users_db_path, config.server.session_expiry_hours)
    try:
        user_id = auth.create_user(args.email, _password(args))
    except sqlite3.IntegrityError:
        console.print(f"[red]User {args.email} already exists[/red]")
        return 1
    console.print(f"[green]Created user[/green] {args.email} ({user_id})")
    return 0


def cmd_create_session(args, config) -> int:
    auth = UserAuth(config.server.users_db_path, config.server.session_expiry_hours)
    user = auth.authenticate(args.email, _password(args))
    if not user:
        console.print("[red]Invalid email or password[/red]")
        return 1
    token = auth.create_session(user['id'])
    if args.quiet:
        print(token)
    else:
        console.print(Panel.fit(
            f"Authorization: Bearer {token}",
            title=f"Session for {user['email']}",
            border_style="blue"
        ))
    return 0


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="mailboard", description="Unified mail API")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to configuration file (default: config.ini in the project root)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    key_parser = subparsers.add_parser("generate-key", help="Print a new token encryption key")
    key_parser.add_argument("-q", "--quiet", action="store_true", help="Print only the key")
    key_parser.set_defaults(func=cmd_generate_key)

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.set_defaults(func=cmd_serve)

    user_parser = subparsers.add_parser("create-user", help="Create a local user")
    user_parser.add_argument("email")
    user_parser.add_argument("--password", type=str, default=None)
    user_parser.set_defaults(func=cmd_create_user)

    session_parser = subparsers.add_parser("create-session", help="Log in and print a session token")
    session_parser.add_argument("email")
    session_parser.add_argument("--password", type=str, default=None)
    session_parser.add_argument("-q", "--quiet", action="store_true", help="Print only the token")
    session_parser.set_defaults(func=cmd_create_session)

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point for the application."""
    env_path = Path.cwd() / '.env'
    if env_path.exists():
        load_dotenv(env_path)

    args = parse_arguments(argv)
    config = load_config(args.config)
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
