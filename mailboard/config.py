"""
Configuration loading for Mailboard.

Settings come from config.ini (configparser). Secrets such as the token
encryption key and OAuth client secrets are read from environment variables,
which override anything in the file. Call load_dotenv() before load_config()
to pick up a local .env file.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.ini"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    database_path: str = str(PROJECT_ROOT / "mail_data.db")
    users_db_path: str = str(PROJECT_ROOT / "users.db")
    session_expiry_hours: int = 24


@dataclass
class MailSettings:
    max_results_limit: int = 100
    preview_length: int = 255
    request_timeout: float = 30.0
    default_sync_frequency_minutes: int = 5


@dataclass
class RateLimitConfig:
    max_requests: int = 30
    window_seconds: float = 60.0
    max_entries: int = 10000


@dataclass
class CacheConfig:
    messages_ttl: float = 300.0
    summary_ttl: float = 120.0


@dataclass
class ImapConfig:
    host: Optional[str] = None
    port: int = 993
    use_ssl: bool = True
    junk_folder: str = "Junk"
    trash_folder: str = "Trash"
    sent_folder: str = "Sent"
    drafts_folder: str = "Drafts"
    archive_folder: str = "Archive"


@dataclass
class OAuthClientConfig:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    tenant: str = "common"


@dataclass
class MailConfig:
    """All settings for the application."""
    server: ServerConfig = field(default_factory=ServerConfig)
    mail: MailSettings = field(default_factory=MailSettings)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    imap: ImapConfig = field(default_factory=ImapConfig)
    outlook: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    gmail: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    encryption_key: Optional[str] = None


def _read_section(cfg: configparser.ConfigParser, section: str, target) -> None:
    """Copy values from one ini section onto a dataclass, coercing to the field's type."""
    if not cfg.has_section(section):
        return

    for name, current in vars(target).items():
        if not cfg.has_option(section, name):
            continue
        if isinstance(current, bool):
            value = cfg.getboolean(section, name)
        elif isinstance(current, int):
            value = cfg.getint(section, name)
        elif isinstance(current, float):
            value = cfg.getfloat(section, name)
        else:
            value = cfg.get(section, name) or None
        setattr(target, name, value)


def load_config(config_path: Optional[str] = None) -> MailConfig:
    """
    Load configuration from an ini file and the environment.

    Args:
        config_path: Path to the ini file (default: config.ini in the project root).
            A missing file is not an error; defaults are used.

    Returns:
        MailConfig with file values and environment overrides applied
    """
    path = Path(config_path) if config_path else CONFIG_PATH
    cfg = configparser.ConfigParser()
    if path.exists():
        cfg.read(path)
        logger.info(f"Loaded configuration from {path}")
    else:
        logger.info(f"No config file at {path}, using defaults")

    config = MailConfig()
    _read_section(cfg, "server", config.server)
    _read_section(cfg, "mail", config.mail)
    _read_section(cfg, "rate_limit", config.rate_limit)
    _read_section(cfg, "cache", config.cache)
    _read_section(cfg, "imap", config.imap)
    _read_section(cfg, "outlook", config.outlook)
    _read_section(cfg, "gmail", config.gmail)

    # Environment overrides
    config.encryption_key = os.environ.get("MAIL_ENCRYPTION_KEY") or None
    config.imap.host = os.environ.get("IMAP_HOST") or config.imap.host
    config.outlook.client_id = os.environ.get("OUTLOOK_CLIENT_ID") or config.outlook.client_id
    config.outlook.client_secret = os.environ.get("OUTLOOK_CLIENT_SECRET") or config.outlook.client_secret
    config.outlook.redirect_uri = os.environ.get("OUTLOOK_REDIRECT_URI") or config.outlook.redirect_uri
    config.gmail.client_id = os.environ.get("GOOGLE_CLIENT_ID") or config.gmail.client_id
    config.gmail.client_secret = os.environ.get("GOOGLE_CLIENT_SECRET") or config.gmail.client_secret
    config.gmail.redirect_uri = os.environ.get("GOOGLE_REDIRECT_URI") or config.gmail.redirect_uri

    return config
