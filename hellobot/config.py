"""Process-wide settings, loaded once at startup.

Endpoints and secrets come from the environment (``.env`` via python-dotenv),
tunables from ``default.config.toml`` merged with ``user.config.toml``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from .utils import get_config, normalize_id


class ConfigError(ValueError):
    """Required configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    homeserver: str
    access_token: str = ""
    username: str = ""
    password: str = ""
    user_id: str = ""
    store_path: str = "./history/session.json"
    device_name: str = "hellobot"
    command_prefix: str = "!hello"
    reply_text: str = "Hello world!"
    auto_join: bool = True
    sync_timeout_ms: int = 30000
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    backoff_multiplier: float = 2.0
    dedupe_window: int = 1000
    skip_initial_timeline: bool = True
    handler_timeout: float = 10.0
    log_level: str = "INFO"

    @property
    def can_login(self) -> bool:
        return bool(self.username and self.password)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{name}] must be a table")
    return value


def load_settings(
    env: Mapping[str, str] | None = None, config: Mapping[str, Any] | None = None
) -> Settings:
    """Build :class:`Settings` from environment variables and the TOML config."""
    if env is None:
        env = os.environ
    if config is None:
        config = get_config()

    bot_cfg = _section(config, "bot")
    commands_cfg = _section(config, "commands")
    sync_cfg = _section(config, "sync")
    dispatch_cfg = _section(config, "dispatch")
    logging_cfg = _section(config, "logging")

    homeserver = (env.get("HOMESERVER_URL") or "").strip().rstrip("/")
    if not homeserver:
        raise ConfigError("HOMESERVER_URL must be set")

    access_token = (env.get("ACCESS_TOKEN") or "").strip()
    username = (env.get("BOT_USERNAME") or "").strip()
    password = env.get("BOT_PASSWORD") or ""
    if not access_token and not (username and password):
        raise ConfigError("Either ACCESS_TOKEN or BOT_USERNAME and BOT_PASSWORD must be set")

    try:
        return Settings(
            homeserver=homeserver,
            access_token=access_token,
            username=username,
            password=password,
            user_id=normalize_id(env.get("BOT_USER_ID")) or "",
            store_path=env.get("BOT_STORE_PATH")
            or bot_cfg.get("store_path", Settings.store_path),
            device_name=str(bot_cfg.get("device_name", Settings.device_name)),
            auto_join=bool(bot_cfg.get("auto_join", Settings.auto_join)),
            command_prefix=str(commands_cfg.get("prefix", Settings.command_prefix)),
            reply_text=str(commands_cfg.get("reply", Settings.reply_text)),
            sync_timeout_ms=int(sync_cfg.get("timeout_ms", Settings.sync_timeout_ms)),
            backoff_initial=float(sync_cfg.get("backoff_initial", Settings.backoff_initial)),
            backoff_max=float(sync_cfg.get("backoff_max", Settings.backoff_max)),
            backoff_multiplier=float(
                sync_cfg.get("backoff_multiplier", Settings.backoff_multiplier)
            ),
            dedupe_window=int(sync_cfg.get("dedupe_window", Settings.dedupe_window)),
            skip_initial_timeline=bool(
                sync_cfg.get("skip_initial_timeline", Settings.skip_initial_timeline)
            ),
            handler_timeout=float(
                dispatch_cfg.get("handler_timeout_seconds", Settings.handler_timeout)
            ),
            log_level=(env.get("LOG_LEVEL") or logging_cfg.get("level", Settings.log_level)).upper(),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc
