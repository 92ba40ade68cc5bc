# consentledger/config.py
"""
Runtime settings. Each value resolves in this order:
1. explicit argument (CLI flag / constructor)
2. environment variable
3. default under ~/.consentledger/
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from consentledger.core.encoding import normalize_address
from consentledger.crypto.engine import PBKDF2_ITERATIONS

DEFAULT_HOME = Path.home() / ".consentledger"


def _env_path(var: str, default: Path) -> Path:
    value = os.environ.get(var)
    return Path(value).expanduser().resolve() if value else default


@dataclass
class Settings:
    db_path: Path = field(default_factory=lambda: _env_path("CONSENT_DB_PATH", DEFAULT_HOME / "ledger.db"))
    blob_dir: Path = field(default_factory=lambda: _env_path("CONSENT_BLOB_DIR", DEFAULT_HOME / "blobs"))
    admin: Optional[str] = field(default_factory=lambda: os.environ.get("CONSENT_ADMIN") or None)
    pbkdf2_iterations: int = field(
        default_factory=lambda: int(os.environ.get("CONSENT_PBKDF2_ITERATIONS", PBKDF2_ITERATIONS))
    )
    log_level: str = field(default_factory=lambda: os.environ.get("CONSENT_LOG_LEVEL", "WARNING"))

    def __post_init__(self):
        self.db_path = Path(self.db_path)
        self.blob_dir = Path(self.blob_dir)
        if self.admin:
            self.admin = normalize_address(self.admin)
        if self.pbkdf2_iterations < 1:
            raise ValueError(f"CONSENT_PBKDF2_ITERATIONS must be positive, got {self.pbkdf2_iterations}")

    @property
    def salt_dir(self) -> Path:
        """Per-owner PBKDF2 salts. Salts are not secret."""
        return self.db_path.parent / "salts"

    @property
    def storage_uri(self) -> str:
        return f"sqlite://{self.db_path}"

    @property
    def blobstore_uri(self) -> str:
        return f"file://{self.blob_dir}"


def load_settings(
    db_path: Optional[Path] = None,
    blob_dir: Optional[Path] = None,
    admin: Optional[str] = None,
) -> Settings:
    settings = Settings()
    if db_path:
        settings.db_path = Path(db_path).expanduser().resolve()
    if blob_dir:
        settings.blob_dir = Path(blob_dir).expanduser().resolve()
    if admin:
        settings.admin = normalize_address(admin)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    return settings
