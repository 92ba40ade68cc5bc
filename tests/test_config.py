# tests/test_config.py
import logging
from pathlib import Path

import pytest

from consentledger.config import Settings, load_settings
from consentledger.crypto.engine import PBKDF2_ITERATIONS
from consentledger.log import get_logger

ADMIN = "0x" + "AD" * 20


@pytest.fixture
def clean_env(monkeypatch):
    for var in ("CONSENT_DB_PATH", "CONSENT_BLOB_DIR", "CONSENT_ADMIN", "CONSENT_PBKDF2_ITERATIONS", "CONSENT_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings()
    assert settings.db_path.name == "ledger.db"
    assert settings.blob_dir.name == "blobs"
    assert settings.admin is None
    assert settings.pbkdf2_iterations == PBKDF2_ITERATIONS
    assert settings.log_level == "WARNING"


def test_env_overrides(clean_env, tmp_path: Path):
    clean_env.setenv("CONSENT_DB_PATH", str(tmp_path / "env.db"))
    clean_env.setenv("CONSENT_BLOB_DIR", str(tmp_path / "env-blobs"))
    clean_env.setenv("CONSENT_ADMIN", ADMIN)
    clean_env.setenv("CONSENT_PBKDF2_ITERATIONS", "1234")
    settings = Settings()
    assert settings.db_path == (tmp_path / "env.db").resolve()
    assert settings.blob_dir == (tmp_path / "env-blobs").resolve()
    assert settings.admin == ADMIN.lower()
    assert settings.pbkdf2_iterations == 1234
    assert settings.storage_uri == f"sqlite://{settings.db_path}"
    assert settings.blobstore_uri == f"file://{settings.blob_dir}"


def test_explicit_arguments_win(clean_env, tmp_path: Path):
    clean_env.setenv("CONSENT_DB_PATH", str(tmp_path / "env.db"))
    settings = load_settings(db_path=tmp_path / "flag" / "flag.db", admin=ADMIN)
    assert settings.db_path == (tmp_path / "flag" / "flag.db").resolve()
    assert settings.db_path.parent.exists()
    assert settings.salt_dir == settings.db_path.parent / "salts"


@pytest.mark.parametrize("var, value", [("CONSENT_ADMIN", "admin"), ("CONSENT_PBKDF2_ITERATIONS", "0")])
def test_invalid_settings_rejected(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(ValueError):
        Settings()


def test_loggers_share_hierarchy():
    log = get_logger("ledger")
    assert log.name == "consentledger.ledger"
    assert get_logger("consentledger.session").name == "consentledger.session"
    get_logger(level="debug")
    assert logging.getLogger("consentledger").level == logging.DEBUG
    get_logger(level="WARNING")
