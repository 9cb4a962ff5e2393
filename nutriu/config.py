"""
Configuration and logging setup for Nutri U.

Settings are read from the process environment after loading an optional
`.env` file with python-dotenv, so local development and deployments share the
same variable names.
"""
# nutriu/config.py

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from nutriu.errors import ConfigurationError

DEFAULT_CACHE_FILE = "session_cache.json"
DEFAULT_KEY_FILE = "secret.key"
DEFAULT_SESSION_TIMEOUT = 10.0
DEFAULT_LOOKUP_TIMEOUT = 8.0
DEFAULT_TIMEZONE = "America/Tijuana"
DEFAULT_BROWSER_COOKIE = "nutriu_browser"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the application."""
    supabase_url: str = ""
    supabase_key: str = ""
    service_role_key: str = ""
    cache_file: str = DEFAULT_CACHE_FILE
    key_file: str = DEFAULT_KEY_FILE
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT
    timezone: str = DEFAULT_TIMEZONE
    browser_cookie: str = DEFAULT_BROWSER_COOKIE
    log_level: str = "INFO"

    def require_supabase(self) -> None:
        """Raises ConfigurationError unless the Supabase project is configured."""
        if not self.supabase_url:
            raise ConfigurationError("SUPABASE_URL is not set")
        if not self.supabase_key:
            raise ConfigurationError("SUPABASE_KEY is not set")


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{name} must be greater than zero")
    return value


def load_settings(dotenv_path=None) -> Settings:
    """Loads settings from `.env` (if present) and the environment.

    Args:
        dotenv_path (str, optional): Explicit path to a dotenv file.

    Returns:
        Settings: The resolved settings.
    """
    load_dotenv(dotenv_path)
    return Settings(
        supabase_url=(os.getenv("SUPABASE_URL") or "").strip(),
        supabase_key=(os.getenv("SUPABASE_KEY") or "").strip(),
        service_role_key=(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip(),
        cache_file=os.getenv("NUTRIU_CACHE_FILE") or DEFAULT_CACHE_FILE,
        key_file=os.getenv("NUTRIU_KEY_FILE") or DEFAULT_KEY_FILE,
        session_timeout=_float_env("NUTRIU_SESSION_TIMEOUT", DEFAULT_SESSION_TIMEOUT),
        lookup_timeout=_float_env("NUTRIU_LOOKUP_TIMEOUT", DEFAULT_LOOKUP_TIMEOUT),
        timezone=os.getenv("NUTRIU_TIMEZONE") or DEFAULT_TIMEZONE,
        browser_cookie=os.getenv("NUTRIU_BROWSER_COOKIE") or DEFAULT_BROWSER_COOKIE,
        log_level=(os.getenv("NUTRIU_LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Installs a stream handler on the `nutriu` logger once."""
    logger = logging.getLogger("nutriu")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(handler)
