"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_SYSTEM_PROMPT = "Only ever reply with 3 lines maximum. Keep your responses concise and helpful."

# ---------------------------------------------------------------------------
# conf.json: runtime config (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_relaychat_dir() -> Path:
    """Resolve the relaychat data directory. RELAYCHAT_DIR env var or ~/.config/relaychat."""
    d = os.environ.get("RELAYCHAT_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "relaychat"


class RelayConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    room_backend: str = ""  # local | redis
    completion_provider: str = ""  # openai | mock
    openai_model: str = ""
    log_level: str = ""
    log_file: str = ""
    frontend_url: str = ""
    cors_allow_all_origins: bool | None = None  # None = use Settings default


_logger = logging.getLogger(__name__)


def load_conf() -> RelayConfig:
    """Load conf.json from the relaychat data directory."""
    conf_path = get_relaychat_dir() / "conf.json"
    if conf_path.exists():
        try:
            return RelayConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return RelayConfig()


def save_conf(config: RelayConfig) -> None:
    """Save conf.json to the relaychat data directory."""
    relaychat_dir = get_relaychat_dir()
    relaychat_dir.mkdir(parents=True, exist_ok=True)
    (relaychat_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Secret auto-generation
# ---------------------------------------------------------------------------


def _ensure_secrets(env_file: Path) -> None:
    """Generate TOKEN_SIGNING_KEY and SECRET_KEY if missing, append to .env."""
    from cryptography.fernet import Fernet
    import secrets as _secrets

    lines_to_append: list[str] = []

    if not os.environ.get("TOKEN_SIGNING_KEY"):
        key = Fernet.generate_key().decode()
        os.environ["TOKEN_SIGNING_KEY"] = key
        lines_to_append.append(f"TOKEN_SIGNING_KEY={key}")

    if not os.environ.get("SECRET_KEY"):
        key = _secrets.token_urlsafe(32)
        os.environ["SECRET_KEY"] = key
        lines_to_append.append(f"SECRET_KEY={key}")

    if lines_to_append:
        env_file.parent.mkdir(parents=True, exist_ok=True)
        with open(env_file, "a") as f:
            f.write("\n" + "\n".join(lines_to_append) + "\n")


# ---------------------------------------------------------------------------
# Bootstrap: load .env, generate secrets, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_ensure_secrets(_env_file)
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    SECRET_KEY: str = "change-me-in-production"
    DEBUG: bool = False

    DATABASE_URL: str = _conf.database_url or f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    REDIS_URL: str = _conf.redis_url or "redis://localhost:6379/0"

    # Fernet key; tokens are signed and timestamped with it
    TOKEN_SIGNING_KEY: str = ""
    TOKEN_TTL_SECONDS: int = 86_400

    ROOM_BACKEND: str = _conf.room_backend or "local"

    COMPLETION_PROVIDER: str = _conf.completion_provider or "openai"
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = ""
    OPENAI_MODEL: str = _conf.openai_model or "gpt-4o"
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_MAX_TOKENS: int = 150
    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT

    FRONTEND_URL: str = _conf.frontend_url or "http://localhost:3001"
    CORS_ALLOW_ALL_ORIGINS: bool = (
        _conf.cors_allow_all_origins if _conf.cors_allow_all_origins is not None else False
    )

    HEARTBEAT_INTERVAL: int = 30  # seconds
    PONG_TIMEOUT: int = 10  # seconds
    OUTBOX_MAX_SIZE: int = 1000  # frames queued per connection

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_FORMAT: str = "text"  # text | json
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
