import json
import os
from dataclasses import dataclass, field
from typing import Optional

from .constants import DEFAULT_LANGUAGE, ROTATION_INTERVAL_SECONDS
from .debug import debug_print

CONFIG_FILE = os.environ.get("GEMINI_BRIDGE_CONFIG", "config.json")

DEFAULT_TIMEOUTS = {
    "chat": 60,
    "upload": 120,
    "bootstrap": 30,
    "refresh": 30,
}


@dataclass
class Timeouts:
    chat: float = 60
    upload: float = 120
    bootstrap: float = 30
    refresh: float = 30


@dataclass
class EngineOptions:
    model: str = "unspecified"
    auto_refresh_rotation: bool = True
    external_refresh: bool = False
    external_source_hint: str = "auto"
    timeouts: Timeouts = field(default_factory=Timeouts)
    rotation_interval: float = ROTATION_INTERVAL_SECONDS
    impersonate: Optional[str] = None
    proxy: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    debug: bool = False
    cookie_file: Optional[str] = None


def _as_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    if isinstance(value, int):
        return bool(value)
    return default


def _as_seconds(value, default: float) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return default
    if seconds <= 0:
        return default
    return seconds


def get_config(path: Optional[str] = None) -> dict:
    path = path or CONFIG_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            debug_print(f"⚠️  Config file {path} is not an object, using defaults")
            config = {}
    except (FileNotFoundError, json.JSONDecodeError) as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}
    except Exception as e:
        debug_print(f"⚠️  Unexpected error reading config: {e}, using defaults")
        config = {}

    # Ensure default keys exist
    config.setdefault("model", "unspecified")
    config.setdefault("auto_refresh_rotation", True)
    config.setdefault("external_refresh", False)
    config.setdefault("external_source_hint", "auto")
    config.setdefault("rotation_interval", ROTATION_INTERVAL_SECONDS)
    config.setdefault("curl_impersonate", "")
    config.setdefault("proxy", "")
    config.setdefault("language", DEFAULT_LANGUAGE)
    config.setdefault("debug", False)
    config.setdefault("cookie_file", "")

    timeouts = config.get("timeouts")
    if not isinstance(timeouts, dict):
        timeouts = {}
    config["timeouts"] = {
        name: _as_seconds(timeouts.get(name), default) for name, default in DEFAULT_TIMEOUTS.items()
    }
    return config


def save_config(config: dict, path: Optional[str] = None) -> None:
    path = path or CONFIG_FILE
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=4)
    except Exception as e:
        debug_print(f"❌ Error saving config: {e}")


def options_from_config(config: dict) -> EngineOptions:
    timeouts = config.get("timeouts") or {}
    hint = config.get("external_source_hint")
    if not isinstance(hint, str) or not hint.strip():
        hint = "auto"

    return EngineOptions(
        model=str(config.get("model") or "unspecified"),
        auto_refresh_rotation=_as_bool(config.get("auto_refresh_rotation"), True),
        external_refresh=_as_bool(config.get("external_refresh"), False),
        external_source_hint=hint.strip(),
        timeouts=Timeouts(
            chat=_as_seconds(timeouts.get("chat"), DEFAULT_TIMEOUTS["chat"]),
            upload=_as_seconds(timeouts.get("upload"), DEFAULT_TIMEOUTS["upload"]),
            bootstrap=_as_seconds(timeouts.get("bootstrap"), DEFAULT_TIMEOUTS["bootstrap"]),
            refresh=_as_seconds(timeouts.get("refresh"), DEFAULT_TIMEOUTS["refresh"]),
        ),
        rotation_interval=_as_seconds(config.get("rotation_interval"), ROTATION_INTERVAL_SECONDS),
        impersonate=(config.get("curl_impersonate") or None),
        proxy=(config.get("proxy") or None),
        language=str(config.get("language") or DEFAULT_LANGUAGE),
        debug=_as_bool(config.get("debug"), False),
        cookie_file=(config.get("cookie_file") or None),
    )


def load_options(path: Optional[str] = None) -> EngineOptions:
    return options_from_config(get_config(path))
