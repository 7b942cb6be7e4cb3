"""Command line interface for the photo-migrator package."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from . import __version__
from .cli_progress import (
    BatchProgressDisplay,
    console,
    render_configuration_summary,
    render_plan,
    render_run_summary,
    render_status,
)
from .errors import MigratorError, ReauthenticationRequired
from .models import MediaClass, UploadConfig
from .orchestrator import MigrationOrchestrator
from .services.accessor import DirectoryAccessor
from .services.credentials import (
    TOKEN_URL,
    CredentialCoordinator,
    CredentialStore,
    TokenEndpointClient,
)
from .services.database import DEFAULT_DATA_DIR, Database
from .services.remote_store import DEFAULT_API_URL

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "photo-migrator" / "config.json"
DEFAULT_STAGING_DIR = DEFAULT_DATA_DIR / "staging"
DEFAULT_LOG_DIR = DEFAULT_DATA_DIR / "logs"
COMBINED_LOG_FILE = "combined.log"
ERROR_LOG_FILE = "error.log"
FILE_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _get_log_paths(log_dir: Optional[Path] = None) -> Tuple[Path, Path]:
    directory = Path(log_dir or os.getenv("PHOTO_MIGRATOR_LOG_DIR") or DEFAULT_LOG_DIR).expanduser()
    return directory / COMBINED_LOG_FILE, directory / ERROR_LOG_FILE


def _setup_logging(
    debug: bool,
    silent: bool,
    log_level: Optional[str],
    log_dir: Optional[Path] = None,
) -> str:
    """
    Configure logging.

    The run log and the error log are always written. The console stays
    quiet unless --debug or --log-level is provided.
    Returns a string describing the effective console mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if debug:
        level = logging.DEBUG
    elif log_level:
        level = getattr(logging, log_level.upper(), logging.INFO)
    else:
        env_level = os.getenv("LOG_LEVEL")
        level = getattr(logging, (env_level or "INFO").upper(), logging.INFO)
    root_logger.setLevel(level)

    combined_path, error_path = _get_log_paths(log_dir)
    try:
        combined_path.parent.mkdir(parents=True, exist_ok=True)
        combined = logging.FileHandler(combined_path, encoding="utf-8")
        combined.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        errors = logging.FileHandler(error_path, encoding="utf-8")
        errors.setLevel(logging.ERROR)
        errors.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        root_logger.addHandler(combined)
        root_logger.addHandler(errors)
    except OSError as exc:
        print(f"WARNING: file logging disabled: {exc}", file=sys.stderr)

    # third-party request logs are noise at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    if silent or (not debug and not log_level):
        return "silent"

    from rich.logging import RichHandler

    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _load_client_config(path: Optional[Path] = None) -> Tuple[Optional[str], Optional[str]]:
    """
    OAuth client id/secret from the environment, else from config.json.

    The JSON file accepts ``clientId``/``clientSecret`` or the snake_case keys.
    """
    client_id = os.getenv("PHOTO_MIGRATOR_CLIENT_ID")
    client_secret = os.getenv("PHOTO_MIGRATOR_CLIENT_SECRET")
    if client_id and client_secret:
        return client_id, client_secret

    config_path = Path(path or os.getenv("PHOTO_MIGRATOR_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()
    if not config_path.is_file():
        return client_id, client_secret
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CLIError(f"invalid client config {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise CLIError(f"invalid client config {config_path}: expected a JSON object")
    return (
        client_id or data.get("clientId") or data.get("client_id"),
        client_secret or data.get("clientSecret") or data.get("client_secret"),
    )


def _media_class(args: argparse.Namespace) -> Optional[MediaClass]:
    if getattr(args, "photos_only", False):
        return MediaClass.PHOTO
    if getattr(args, "videos_only", False):
        return MediaClass.VIDEO
    return None


def _build_config(args: argparse.Namespace) -> UploadConfig:
    try:
        return UploadConfig.from_env(concurrency=getattr(args, "concurrency", None))
    except ValueError as exc:
        raise CLIError(f"invalid configuration: {exc}") from exc


def _build_coordinator(
    db: Database,
    config: UploadConfig,
    client_config: Optional[Path],
    required: bool,
) -> CredentialCoordinator:
    client_id, client_secret = _load_client_config(client_config)
    if required and not (client_id and client_secret):
        raise CLIError(
            "OAuth client is not configured: set PHOTO_MIGRATOR_CLIENT_ID/PHOTO_MIGRATOR_CLIENT_SECRET "
            f"or create {DEFAULT_CONFIG_PATH} with clientId and clientSecret"
        )
    token_client = TokenEndpointClient(
        client_id or "",
        client_secret or "",
        token_url=os.getenv("PHOTO_MIGRATOR_TOKEN_URL") or TOKEN_URL,
    )
    return CredentialCoordinator(CredentialStore(db), token_client, config)


def _build_accessor(args: argparse.Namespace, required: bool) -> DirectoryAccessor:
    library = args.library or os.getenv("PHOTO_MIGRATOR_LIBRARY")
    staging = args.staging_dir or os.getenv("PHOTO_MIGRATOR_STAGING_DIR") or DEFAULT_STAGING_DIR
    if library is None:
        if required:
            raise CLIError("library directory not set: use --library or PHOTO_MIGRATOR_LIBRARY")
        library = "."
    library_path = Path(library).expanduser()
    if required and not library_path.is_dir():
        raise CLIError(f"library directory does not exist: {library_path}")
    staging_path = Path(staging).expanduser()
    staging_path.mkdir(parents=True, exist_ok=True)
    return DirectoryAccessor(library_path, staging_path)


async def _run_command(args: argparse.Namespace) -> int:
    config = _build_config(args)
    db_path = args.db or os.getenv("PHOTO_MIGRATOR_DB")
    db = Database(Path(db_path).expanduser() if db_path else None)
    try:
        db.open()
    except Exception as exc:
        raise CLIError(f"cannot open database: {exc}") from exc

    try:
        needs_auth = args.command in ("upload", "login")
        coordinator = _build_coordinator(db, config, args.client_config, required=needs_auth)

        if args.command == "login":
            return await _login(coordinator, args.code)

        accessor = _build_accessor(args, required=args.command == "scan")
        async with MigrationOrchestrator(
            db,
            accessor,
            coordinator,
            config,
            api_url=os.getenv("PHOTO_MIGRATOR_API_URL") or DEFAULT_API_URL,
        ) as migrator:
            if args.command == "scan":
                added = await migrator.scan()
                console.print(f"[green]Scan complete:[/green] {added} new item(s) recorded")
                return 0

            if args.command == "plan":
                batch = migrator.plan(_media_class(args))
                render_plan(batch, migrator.store.get_many(batch.item_ids))
                return 0

            if args.command == "status":
                render_status(migrator.status())
                return 0

            if args.command == "retry-failed":
                count = migrator.retry_failed(_media_class(args))
                console.print(f"Re-admitted {count} failed item(s) as pending")
                return 0

            if args.command == "upload":
                return await _upload(migrator, _media_class(args), args.max_cycles)

        raise CLIError(f"unknown command: {args.command}")
    finally:
        db.close()


async def _login(coordinator: CredentialCoordinator, code: Optional[str]) -> int:
    if not code:
        console.print("Authorize this app by visiting this url:")
        console.print(coordinator.authorization_url(), soft_wrap=True)
        code = console.input("Enter the code from that page here: ").strip()
    if not code:
        raise CLIError("no authorization code given")
    try:
        await coordinator.authorize(code)
    except MigratorError as exc:
        raise CLIError(f"login failed: {exc}") from exc
    console.print("[green]Authentication successful, tokens stored.[/green]")
    return 0


async def _upload(migrator: MigrationOrchestrator, media_class: Optional[MediaClass], max_cycles: Optional[int]) -> int:
    display = BatchProgressDisplay()
    display.attach(migrator.events)
    try:
        results = await migrator.run(media_class, max_cycles=max_cycles)
    finally:
        display.close()
        display.detach(migrator.events)
    render_run_summary(results)
    if any(r.halted and r.halted_reason != "paused" for r in results):
        return 1
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photo-migrator",
        description="Move a local media library to the remote photo store, exactly once per item.",
    )
    parser.add_argument("--db", default=None, help="Item database path (default from PHOTO_MIGRATOR_DB)")
    parser.add_argument(
        "--library",
        default=None,
        help="Library directory to scan (default from PHOTO_MIGRATOR_LIBRARY)",
    )
    parser.add_argument(
        "--staging-dir",
        default=None,
        help=f"Staging directory for exported copies (default {DEFAULT_STAGING_DIR})",
    )
    parser.add_argument(
        "--client-config",
        type=Path,
        default=None,
        help=f"OAuth client JSON (default {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"photo-migrator {__version__}",
    )

    def add_class_filter(sub: argparse.ArgumentParser) -> None:
        group = sub.add_mutually_exclusive_group()
        group.add_argument("--photos-only", action="store_true", help="Only photos")
        group.add_argument("--videos-only", action="store_true", help="Only videos")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.add_parser("scan", help="Enumerate the library and record new items")

    plan = commands.add_parser("plan", help="Preview the next batch without uploading")
    add_class_filter(plan)

    upload = commands.add_parser("upload", help="Run upload cycles until done")
    upload.add_argument("--concurrency", type=int, default=None, help="Parallel uploads (default 2)")
    upload.add_argument("--max-cycles", type=int, default=None, help="Stop after N cycles")
    add_class_filter(upload)

    commands.add_parser("status", help="Show item counts, failures and recent batches")

    login = commands.add_parser("login", help="Authorize access to the remote store")
    login.add_argument("--code", default=None, help="Authorization code (prompted when omitted)")

    retry = commands.add_parser("retry-failed", help="Re-admit failed items as pending")
    add_class_filter(retry)
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "upload" and not args.silent:
        combined_log, _ = _get_log_paths()
        render_configuration_summary(
            {
                "Library": args.library or os.getenv("PHOTO_MIGRATOR_LIBRARY") or "-",
                "Database": args.db or os.getenv("PHOTO_MIGRATOR_DB") or "(default)",
                "Concurrency": args.concurrency or os.getenv("PHOTO_MIGRATOR_CONCURRENCY") or 2,
                "Classes": (_media_class(args).value + "s") if _media_class(args) else "photos, then videos",
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
                "Run Log": str(combined_log),
            }
        )

    try:
        return asyncio.run(_run_command(args))
    except ReauthenticationRequired as exc:
        print(f"ERROR: {exc}. Run 'photo-migrator login'.", file=sys.stderr)
        return 1
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
