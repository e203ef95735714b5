from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .audit.reader import read_entries
from .errors import SigningError
from .settings import Settings, settings

# flag -> settings field; unset flags fall back to the environment
SERVE_FLAGS = {
    "--host": "host",
    "--port": "port",
    "--access-login": "access_login",
    "--access-password": "access_password",
    "--interactions-file": "interactions_file",
    "--callback-data-file": "callback_data_file",
    "--webhook-data-file": "webhook_data_file",
    "--private-key-file": "private_key_file",
    "--html-dir": "html_dir",
    "--app-id": "app_id",
    "--app-name": "app_name",
    "--github-api-url": "github_api_url",
    "--log-level": "log_level",
}


def _settings_from(args: argparse.Namespace) -> Settings:
    overrides = {
        field: getattr(args, field)
        for field in SERVE_FLAGS.values()
        if getattr(args, field, None) is not None
    }
    if getattr(args, "gate_installation_access_token", False):
        overrides["gate_installation_access_token"] = True
    return Settings(**overrides)


def cmd_serve(args: argparse.Namespace) -> int:
    cfg = _settings_from(args)
    logging.basicConfig(level=cfg.log_level.upper())
    logging.debug("settings parsed: %s", cfg.model_dump(exclude={"access_password", "session_secret"}))
    if not cfg.app_id:
        print("--app-id (or APP_ID) is required", file=sys.stderr)
        return 2

    import uvicorn

    from .api.main import create_app

    try:
        app = create_app(cfg)
    except SigningError as e:
        print(f"Cannot load signing key: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Cannot open data files: {e}", file=sys.stderr)
        return 1
    logging.debug("listening on: %s:%s", cfg.host, cfg.port)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())
    return 0


def cmd_mint(args: argparse.Namespace) -> int:
    cfg = _settings_from(args)
    if not cfg.app_id:
        print("--app-id (or APP_ID) is required", file=sys.stderr)
        return 2
    from .auth.assertion import AssertionMinter

    try:
        assertion = AssertionMinter.from_file(cfg.private_key_file).mint(cfg.app_id)
    except SigningError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(assertion.token)
    return 0


def cmd_interactions(args: argparse.Namespace) -> int:
    path = Path(args.file) if args.file else settings.interactions_file
    if not path.exists():
        print(f"Interaction log not found: {path}", file=sys.stderr)
        return 1
    try:
        entries = read_entries(path.read_bytes())
    except ValueError as e:
        print(f"Malformed interaction log: {e}", file=sys.stderr)
        return 3
    for e in entries:
        arrow = ">" if e.direction == "request" else "<"
        print(f"{arrow} {e.start_line} ({len(e.headers)} headers, {len(e.body)} bytes)")
    print(f"{len(entries)} entries")
    return 0


def _add_settings_flags(p: argparse.ArgumentParser, flags: list[str]) -> None:
    for flag in flags:
        field = SERVE_FLAGS[flag]
        kind = int if field == "port" else str
        p.add_argument(flag, dest=field, type=kind, default=None, help=f"overrides {field.upper()}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ghrelay",
        description="GitHub App credential relay with an HTTP interaction log",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the relay server")
    _add_settings_flags(p_serve, list(SERVE_FLAGS))
    p_serve.add_argument(
        "--gate-installation-access-token",
        action="store_true",
        help="Require a session for /installation-access-token",
    )
    p_serve.set_defaults(func=cmd_serve)

    p_mint = sub.add_parser("mint", help="Print a freshly minted app assertion")
    _add_settings_flags(p_mint, ["--private-key-file", "--app-id"])
    p_mint.set_defaults(func=cmd_mint)

    p_inter = sub.add_parser("interactions", help="Summarize the interaction log")
    p_inter.add_argument("--file", help="Interaction log path (default: INTERACTIONS_FILE)")
    p_inter.set_defaults(func=cmd_interactions)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
