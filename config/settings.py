"""
Configuration loader for NotifyRelay.
Reads settings from YAML file with environment variable substitution,
then applies the well-known environment overrides used by the hosting platform.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Raised when a required setting is missing or invalid at startup."""
    pass


@dataclass
class TelegramConfig:
    bot_token: str = ""
    api_base_url: str = "https://api.telegram.org"
    parse_mode: str = "HTML"
    timeout_s: float = 30.0
    web_app_url: str = ""
    poll_timeout_s: int = 30           # long-poll timeout for getUpdates
    listener_enabled: bool = True


@dataclass
class StoreConfig:
    backend: str = "memory"            # "memory" for dev, "firestore" for production
    collection: str = "notification_queue"
    project_id: str = ""
    credentials_file: str = ""         # service-account JSON on disk
    credentials_json: str = ""         # service-account JSON inline (env var)


@dataclass
class FeedConfig:
    backoff_floor_s: float = 1.0
    backoff_ceiling_s: float = 60.0
    ledger_ttl_s: float = 86400.0      # dispatch ledger entry lifetime
    ledger_max_size: int = 10000


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class Settings:
    app_name: str = "NotifyRelay"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    sink_backend: str = "telegram"     # "telegram" | "memory"
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def validate(self) -> None:
        """Raise ConfigError when a credential the process cannot run without is missing."""
        if self.sink_backend == "telegram" and not self.telegram.bot_token:
            raise ConfigError("TELEGRAM_BOT_TOKEN is missing")
        if self.store.backend == "firestore":
            if not self.store.project_id:
                raise ConfigError("FIREBASE_PROJECT_ID is missing")
            if self.store.credentials_file and not Path(self.store.credentials_file).exists():
                raise ConfigError(
                    f"Firestore credentials file not found: {self.store.credentials_file}"
                )
        if self.feed.backoff_floor_s <= 0 or self.feed.backoff_ceiling_s < self.feed.backoff_floor_s:
            raise ConfigError("feed backoff must satisfy 0 < floor <= ceiling")


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _unresolved(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("${")


def _read_secret_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError(f"Cannot read secret file {path}: {e}") from e


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ

    token_file = env.get("TELEGRAM_BOT_TOKEN_FILE")
    if env.get("TELEGRAM_BOT_TOKEN"):
        settings.telegram.bot_token = env["TELEGRAM_BOT_TOKEN"]
    elif token_file:
        settings.telegram.bot_token = _read_secret_file(token_file)
    if _unresolved(settings.telegram.bot_token):
        settings.telegram.bot_token = ""

    if env.get("WEB_APP_URL"):
        settings.telegram.web_app_url = env["WEB_APP_URL"]
    if env.get("PORT"):
        try:
            settings.server.port = int(env["PORT"])
        except ValueError as e:
            raise ConfigError(f"PORT must be an integer, got {env['PORT']!r}") from e

    if env.get("NOTIFY_STORE_BACKEND"):
        settings.store.backend = env["NOTIFY_STORE_BACKEND"]
    if env.get("FIREBASE_PROJECT_ID"):
        settings.store.project_id = env["FIREBASE_PROJECT_ID"]
    if env.get("GOOGLE_APPLICATION_CREDENTIALS"):
        settings.store.credentials_file = env["GOOGLE_APPLICATION_CREDENTIALS"]
    if env.get("FIREBASE_CREDENTIALS_JSON"):
        settings.store.credentials_json = env["FIREBASE_CREDENTIALS_JSON"]

    if env.get("LOG_LEVEL"):
        settings.log_level = env["LOG_LEVEL"].upper()


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFY_RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = str(raw.get("log_level", settings.log_level)).upper()
        settings.log_json = raw.get("log_json", settings.log_json)
        settings.sink_backend = raw.get("sink_backend", settings.sink_backend)

        if "telegram" in raw:
            tg = raw["telegram"]
            defaults = TelegramConfig()
            settings.telegram = TelegramConfig(
                bot_token=tg.get("bot_token", ""),
                api_base_url=tg.get("api_base_url", defaults.api_base_url),
                parse_mode=tg.get("parse_mode", defaults.parse_mode),
                timeout_s=float(tg.get("timeout_s", defaults.timeout_s)),
                web_app_url=tg.get("web_app_url", ""),
                poll_timeout_s=int(tg.get("poll_timeout_s", defaults.poll_timeout_s)),
                listener_enabled=tg.get("listener_enabled", defaults.listener_enabled),
            )

        if "store" in raw:
            st = raw["store"]
            settings.store = StoreConfig(
                backend=st.get("backend", "memory"),
                collection=st.get("collection", "notification_queue"),
                project_id=st.get("project_id", ""),
                credentials_file=st.get("credentials_file", ""),
                credentials_json=st.get("credentials_json", ""),
            )

        if "feed" in raw:
            fd = raw["feed"]
            defaults = FeedConfig()
            settings.feed = FeedConfig(
                backoff_floor_s=float(fd.get("backoff_floor_s", defaults.backoff_floor_s)),
                backoff_ceiling_s=float(fd.get("backoff_ceiling_s", defaults.backoff_ceiling_s)),
                ledger_ttl_s=float(fd.get("ledger_ttl_s", defaults.ledger_ttl_s)),
                ledger_max_size=int(fd.get("ledger_max_size", defaults.ledger_max_size)),
            )

        if "server" in raw:
            sv = raw["server"]
            settings.server = ServerConfig(
                host=sv.get("host", "0.0.0.0"),
                port=int(sv.get("port", 3000)),
            )

    for name in ("project_id", "credentials_file", "credentials_json"):
        if _unresolved(getattr(settings.store, name)):
            setattr(settings.store, name, "")
    if _unresolved(settings.telegram.web_app_url):
        settings.telegram.web_app_url = ""

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
