import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent

BYTES_PER_MB = 1024 * 1024
# Telegram bots may send documents up to 50 MB; stay below that.
DEFAULT_MAX_UPLOAD_MB = 45
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_API_BASE = "https://api.telegram.org"

logger = logging.getLogger("tgfilehost.config")


def is_truthy(value: Optional[str]) -> bool:
    """Return ``False`` for unset, empty or ``"false"`` values."""

    if value is None:
        return False
    text = str(value)
    return text != "" and text.lower() != "false"


def _resolve_env_path(environ: Mapping[str, str], env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(environ: Mapping[str, str], key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, environ.get(key), default
        )
        return default


def _load_secret_key(environ: Mapping[str, str], data_dir: Path) -> str:
    env_secret = environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = data_dir / ".secret_key"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        logger.info("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        logger.critical(
            "Using in-memory secret key. Pagination cursors will not survive restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings handed to :func:`tgfilehost.app.create_app`."""

    bot_token: str = ""
    chat_id: str = ""
    basic_user: str = ""
    basic_pass: str = ""
    public_base_url: str = ""
    disable_telemetry: bool = False
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_upload_mb: int = DEFAULT_MAX_UPLOAD_MB
    data_dir: Path = BASE_DIR / "data"
    logs_dir: Optional[Path] = None
    static_dir: Path = BASE_DIR / "static"
    secret_key: str = ""
    log_level: str = "INFO"

    @property
    def auth_enabled(self) -> bool:
        return is_truthy(self.basic_user) and is_truthy(self.basic_pass)

    @property
    def hosting_configured(self) -> bool:
        return is_truthy(self.bot_token) and is_truthy(self.chat_id)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * BYTES_PER_MB

    @property
    def db_path(self) -> Path:
        return self.data_dir / "files.db"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        data_dir = _resolve_env_path(environ, "TGFILEHOST_DATA_DIR", BASE_DIR / "data")
        logs_value = environ.get("TGFILEHOST_LOGS_DIR")
        telemetry = environ.get("disable_telemetry", environ.get("DISABLE_TELEMETRY"))
        return cls(
            bot_token=environ.get("TG_BOT_TOKEN", ""),
            chat_id=environ.get("TG_CHAT_ID", ""),
            basic_user=environ.get("BASIC_USER", ""),
            basic_pass=environ.get("BASIC_PASS", ""),
            public_base_url=environ.get("PUBLIC_BASE_URL", "").rstrip("/"),
            disable_telemetry=is_truthy(telemetry),
            api_base=environ.get("TG_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            timeout_seconds=_safe_int_env(
                environ, "TGFILEHOST_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS
            ),
            max_upload_mb=_safe_int_env(
                environ, "TGFILEHOST_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB
            ),
            data_dir=data_dir,
            logs_dir=Path(logs_value).expanduser().resolve() if logs_value else data_dir / "logs",
            static_dir=_resolve_env_path(environ, "TGFILEHOST_STATIC_DIR", BASE_DIR / "static"),
            secret_key=_load_secret_key(environ, data_dir),
            log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        )
