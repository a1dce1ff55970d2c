"""Central configuration helpers for the random album playlist tool."""

from __future__ import annotations

import os
import unicodedata
import warnings
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent

# Load the root .env first, then allow working-directory overrides without clobbering.
load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)
load_dotenv(override=False)

LEGACY_ENV_NAMES: Dict[str, list[str]] = {
    "SUBSONIC_URL": ["GRAPLSUB_BASE_URL"],
    "SUBSONIC_USER": ["GRAPLSUB_USER"],
    "SUBSONIC_PASSWORD": ["GRAPLSUB_PASS"],
    "PLAYLIST_NAME": ["GRAPLSUB_PLAYLIST_NAME"],
    "NUM_ALBUMS": ["GRAPLSUB_NUM_ALBUMS"],
}

_WARNED: set[tuple[str, str]] = set()


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or invalid."""


def _coerce_str(value: str) -> str:
    return unicodedata.normalize("NFC", value.strip())


def _get_env(name: str) -> Optional[str]:
    candidates = [name] + LEGACY_ENV_NAMES.get(name, [])
    for candidate in candidates:
        raw = os.getenv(candidate)
        if raw is None or raw.strip() == "":
            continue
        if candidate != name:
            _warn_once(candidate, name)
        return raw
    return None


def _warn_once(old_name: str, new_name: str) -> None:
    key = (old_name, new_name)
    if key in _WARNED:
        return
    _WARNED.add(key)
    warnings.warn(
        f"Environment variable {old_name} is deprecated; use {new_name} instead.",
        DeprecationWarning,
        stacklevel=3,
    )


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return _coerce_str(default) if isinstance(default, str) else default
    return _coerce_str(raw)


def env_required(name: str) -> str:
    # Secrets are not NFC-normalized; the token digest must see the exact bytes.
    raw = _get_env(name)
    if raw is None:
        raise ConfigurationError(f"{name} is required.")
    return raw


def env_int(name: str, default: Optional[int] = None, *, min_value: Optional[int] = None) -> int:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        if default is None:
            raise ConfigurationError(f"Missing required integer environment variable: {name}")
        value = int(default)
    else:
        try:
            value = int(raw.strip())
        except ValueError as exc:
            raise ConfigurationError(f"Environment variable {name} must be an integer, got {raw!r}") from exc
    if min_value is not None and value < min_value:
        raise ConfigurationError(f"Environment variable {name} must be >= {min_value}, got {value}")
    return value


def env_float(name: str, default: Optional[float] = None) -> float:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        if default is None:
            raise ConfigurationError(f"Missing required float environment variable: {name}")
        return float(default)
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name} must be a float, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    base_url: str
    username: str
    password: str
    playlist_name: str
    num_albums: int
    api_version: str = "1.16.1"
    client_name: str = "random-albums"
    max_albums_per_request: int = 500
    max_songs_per_append: int = 50
    max_workers: int = 4
    request_timeout: float = 15.0
    retries: int = 2
    retry_backoff: float = 1.0
    log_level: str = "INFO"

    def __repr__(self) -> str:
        return (
            f"Settings(base_url={self.base_url!r}, username={self.username!r}, password='***', "
            f"playlist_name={self.playlist_name!r}, num_albums={self.num_albums})"
        )

    @classmethod
    def from_env(cls) -> Settings:
        defaults = {
            "SUBSONIC_URL": "http://localhost:4533",
            "SUBSONIC_API_VERSION": "1.16.1",
            "SUBSONIC_CLIENT": "random-albums",
            "PLAYLIST_NAME": "Random Albums",
            "NUM_ALBUMS": "100",
            "MAX_ALBUMS_PER_REQUEST": "500",
            "MAX_SONGS_PER_APPEND": "50",
            "MAX_WORKERS": "4",
            "REQUEST_TIMEOUT": "15",
            "RETRIES": "2",
            "RETRY_BACKOFF": "1.0",
            "LOG_LEVEL": "INFO",
        }

        values = {key: env_str(key, defaults.get(key)) for key in defaults}

        base_url = (values["SUBSONIC_URL"] or defaults["SUBSONIC_URL"]).rstrip("/")
        username = env_required("SUBSONIC_USER").strip()
        password = env_required("SUBSONIC_PASSWORD")
        playlist_name = values["PLAYLIST_NAME"] or defaults["PLAYLIST_NAME"]
        num_albums = env_int("NUM_ALBUMS", defaults["NUM_ALBUMS"], min_value=1)
        max_albums_per_request = env_int("MAX_ALBUMS_PER_REQUEST", defaults["MAX_ALBUMS_PER_REQUEST"], min_value=1)
        max_songs_per_append = env_int("MAX_SONGS_PER_APPEND", defaults["MAX_SONGS_PER_APPEND"], min_value=1)
        max_workers = env_int("MAX_WORKERS", defaults["MAX_WORKERS"], min_value=1)
        request_timeout = env_float("REQUEST_TIMEOUT", defaults["REQUEST_TIMEOUT"])
        retries = env_int("RETRIES", defaults["RETRIES"], min_value=0)
        retry_backoff = env_float("RETRY_BACKOFF", defaults["RETRY_BACKOFF"])
        log_level = (values["LOG_LEVEL"] or defaults["LOG_LEVEL"]).upper()

        if request_timeout <= 0:
            raise ConfigurationError(f"REQUEST_TIMEOUT must be positive, got {request_timeout}")

        return cls(
            base_url=base_url,
            username=username,
            password=password,
            playlist_name=playlist_name,
            num_albums=num_albums,
            api_version=values["SUBSONIC_API_VERSION"] or defaults["SUBSONIC_API_VERSION"],
            client_name=values["SUBSONIC_CLIENT"] or defaults["SUBSONIC_CLIENT"],
            max_albums_per_request=max_albums_per_request,
            max_songs_per_append=max_songs_per_append,
            max_workers=max_workers,
            request_timeout=request_timeout,
            retries=retries,
            retry_backoff=max(0.0, retry_backoff),
            log_level=log_level,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached Settings instance populated from the environment."""
    return Settings.from_env()


__all__ = [
    "ConfigurationError",
    "Settings",
    "env_float",
    "env_int",
    "env_required",
    "env_str",
    "get_settings",
]
