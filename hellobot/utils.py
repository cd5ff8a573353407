import os
import tomllib
from typing import Any, Dict, Optional

from deepmerge import always_merger

DEFAULT_CONFIG_PATH = "default.config.toml"
USER_CONFIG_PATH = "user.config.toml"


def get_config(
    default_path: str = DEFAULT_CONFIG_PATH, user_path: str = USER_CONFIG_PATH
) -> Dict[str, Any]:
    """
    Loads the default TOML config and deep-merges the optional user overrides on top.
    A missing default file yields an empty base config.
    """
    config: Dict[str, Any] = {}
    if os.path.exists(default_path):
        with open(default_path, 'rb') as f:
            config = tomllib.load(f)
    try:
        with open(user_path, 'rb') as f:
            overrides = tomllib.load(f)
    except FileNotFoundError:
        overrides = {}

    return always_merger.merge(config, overrides)


def normalize_id(value: Any) -> Optional[str]:
    """
    Returns a trimmed string form of a Matrix id, or None for empty and boolean values.
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def mask_token(token: Optional[str], visible: int = 6) -> str:
    """
    Shortens an access token for logs: the first and last few characters survive.
    """
    if not token:
        return "<none>"
    if len(token) <= visible * 2:
        return "*" * len(token)
    return f"{token[:visible]}...{token[-visible:]}"
