"""Tests for photo-migrator CLI helpers."""
import json
import logging
import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from photo_migrator.cli import (
    CLIError,
    _build_parser,
    _get_log_paths,
    _load_client_config,
    _load_env_file,
    _media_class,
    _setup_logging,
    run_cli,
)
from photo_migrator.models import Credential, ItemStatus, MediaClass, utcnow
from photo_migrator.services.credentials import CredentialStore, TokenEndpointClient
from photo_migrator.services.database import Database
from photo_migrator.services.item_store import ItemStore


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Isolate the CLI from the user's home, cwd .env and OAuth client."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PHOTO_MIGRATOR_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("PHOTO_MIGRATOR_CONFIG", str(tmp_path / "missing-config.json"))
    for name in ("PHOTO_MIGRATOR_CLIENT_ID", "PHOTO_MIGRATOR_CLIENT_SECRET", "PHOTO_MIGRATOR_LIBRARY",
                 "PHOTO_MIGRATOR_DB", "PHOTO_MIGRATOR_STAGING_DIR", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield tmp_path
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            root_logger.removeHandler(handler)
            handler.close()


def _unset(monkeypatch, *names):
    """Remove variables and have them removed again at teardown."""
    for name in names:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def _base_args(tmp_path):
    return ["--db", str(tmp_path / "items.db"), "--staging-dir", str(tmp_path / "staging"), "--silent"]


def test_load_env_file(tmp_path, monkeypatch):
    env_path = tmp_path / ".env"
    env_path.write_text(
        "\n".join(
            [
                "# comment",
                "PHOTO_MIGRATOR_LIBRARY=/photos",
                "PHOTO_MIGRATOR_CLIENT_ID='abc.apps'",
                "export PHOTO_MIGRATOR_CONCURRENCY=4",
                "not a pair",
            ]
        ),
        encoding="utf-8",
    )
    _unset(monkeypatch, "PHOTO_MIGRATOR_LIBRARY", "PHOTO_MIGRATOR_CLIENT_ID", "PHOTO_MIGRATOR_CONCURRENCY")

    _load_env_file(env_path)

    assert os.environ["PHOTO_MIGRATOR_LIBRARY"] == "/photos"
    assert os.environ["PHOTO_MIGRATOR_CLIENT_ID"] == "abc.apps"
    assert os.environ["PHOTO_MIGRATOR_CONCURRENCY"] == "4"


def test_load_env_file_keeps_existing_values(tmp_path, monkeypatch):
    env_path = tmp_path / ".env"
    env_path.write_text("PHOTO_MIGRATOR_LIBRARY=/from-file\n", encoding="utf-8")
    monkeypatch.setenv("PHOTO_MIGRATOR_LIBRARY", "/from-shell")

    _load_env_file(env_path)

    assert os.environ["PHOTO_MIGRATOR_LIBRARY"] == "/from-shell"


def test_load_env_file_missing(tmp_path):
    with pytest.raises(CLIError):
        _load_env_file(tmp_path / "nope.env")


def test_setup_logging_defaults_to_silent(cli_env):
    mode = _setup_logging(debug=False, silent=False, log_level=None)
    run_log, error_log = _get_log_paths()
    assert mode == "silent"
    assert run_log.exists()
    assert error_log.exists()


def test_setup_logging_debug_mode(cli_env):
    mode = _setup_logging(debug=True, silent=False, log_level=None)
    run_log, error_log = _get_log_paths()
    assert mode == "DEBUG"
    assert run_log.exists()
    assert error_log.exists()
    assert logging.getLogger().isEnabledFor(logging.DEBUG) is True


def test_errors_reach_error_log(cli_env):
    _setup_logging(debug=False, silent=True, log_level=None)
    logging.getLogger("photo_migrator.test").error("commit rejected")
    logging.getLogger("photo_migrator.test").info("routine")
    for handler in logging.getLogger().handlers:
        handler.flush()

    run_log, error_log = _get_log_paths()
    assert "routine" in run_log.read_text(encoding="utf-8")
    errors = error_log.read_text(encoding="utf-8")
    assert "commit rejected" in errors
    assert "routine" not in errors


def test_load_client_config_from_json(tmp_path, monkeypatch):
    monkeypatch.delenv("PHOTO_MIGRATOR_CLIENT_ID", raising=False)
    monkeypatch.delenv("PHOTO_MIGRATOR_CLIENT_SECRET", raising=False)
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"clientId": "id-1", "clientSecret": "secret-1"}), encoding="utf-8")

    assert _load_client_config(config) == ("id-1", "secret-1")


def test_load_client_config_prefers_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_ID", "env-id")
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_SECRET", "env-secret")

    assert _load_client_config(tmp_path / "missing.json") == ("env-id", "env-secret")


def test_load_client_config_invalid_json(tmp_path, monkeypatch):
    monkeypatch.delenv("PHOTO_MIGRATOR_CLIENT_ID", raising=False)
    monkeypatch.delenv("PHOTO_MIGRATOR_CLIENT_SECRET", raising=False)
    config = tmp_path / "config.json"
    config.write_text("{not json", encoding="utf-8")

    with pytest.raises(CLIError):
        _load_client_config(config)


def test_parser_class_filters():
    parser = _build_parser()
    assert _media_class(parser.parse_args(["upload", "--photos-only"])) == MediaClass.PHOTO
    assert _media_class(parser.parse_args(["plan", "--videos-only"])) == MediaClass.VIDEO
    assert _media_class(parser.parse_args(["status"])) is None
    with pytest.raises(SystemExit):
        parser.parse_args(["upload", "--photos-only", "--videos-only"])


def test_parser_upload_options():
    args = _build_parser().parse_args(["upload", "--concurrency", "4", "--max-cycles", "3"])
    assert args.concurrency == 4
    assert args.max_cycles == 3


def test_no_command_prints_help(cli_env, capsys):
    assert run_cli([]) == 0
    assert "photo-migrator" in capsys.readouterr().out


def test_scan_and_status(cli_env):
    library = cli_env / "library"
    library.mkdir()
    (library / "a.jpg").write_bytes(b"a")
    (library / "clip.mov").write_bytes(b"v")

    assert run_cli(_base_args(cli_env) + ["--library", str(library), "scan"]) == 0
    assert run_cli(_base_args(cli_env) + ["status"]) == 0

    with Database(cli_env / "items.db") as db:
        counts = ItemStore(db).total_by_status()
    assert counts[ItemStatus.PENDING] == 2


def test_scan_requires_library(cli_env):
    assert run_cli(_base_args(cli_env) + ["scan"]) == 1


def test_upload_without_client_config(cli_env):
    assert run_cli(_base_args(cli_env) + ["upload"]) == 1


def test_upload_without_login(cli_env, monkeypatch):
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_ID", "id")
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_SECRET", "secret")

    assert run_cli(_base_args(cli_env) + ["upload"]) == 1


def test_login_with_code(cli_env, monkeypatch):
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_ID", "id")
    monkeypatch.setenv("PHOTO_MIGRATOR_CLIENT_SECRET", "secret")
    credential = Credential("access", "refresh", utcnow() + timedelta(hours=1))
    exchange = AsyncMock(return_value=credential)
    monkeypatch.setattr(TokenEndpointClient, "exchange_code", exchange)

    assert run_cli(_base_args(cli_env) + ["login", "--code", "4/abc"]) == 0

    exchange.assert_awaited_once_with("4/abc")
    with Database(cli_env / "items.db") as db:
        assert CredentialStore(db).load().refresh_token == "refresh"


def test_invalid_env_file(cli_env):
    assert run_cli(["--env-file", str(cli_env / "missing.env"), "status"]) == 1


def test_default_env_file_is_loaded(cli_env, monkeypatch):
    _unset(monkeypatch, "PHOTO_MIGRATOR_CONCURRENCY")
    (cli_env / ".env").write_text("PHOTO_MIGRATOR_CONCURRENCY=3\n", encoding="utf-8")

    assert run_cli(_base_args(cli_env) + ["status"]) == 0
    assert os.environ["PHOTO_MIGRATOR_CONCURRENCY"] == "3"
