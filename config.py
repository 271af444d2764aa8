"""Config management for lyrion-auth-relay.

Policy values (TTL, fallback URL, accepted callback paths, caller pattern)
are read once at startup and handed to the relay as a read-only object.
Precedence: environment > config file > defaults.
"""
import json
import os
import re
from pathlib import Path
from typing import Optional


CONFIG_DIR = Path.home() / ".lyrion-auth-relay"
CONFIG_FILE = CONFIG_DIR / "config.json"

STORE_BACKENDS = ("memory", "redis", "supabase")

DEFAULTS = {
    "binding_ttl": 60 * 15,
    "fallback_url": "https://lyrion.org/invalid/path",
    "homepage_url": "https://lyrion.org",
    "user_agent_pattern": r"^iTunes.*L(?:yrion|ogitech) M(?:usic|edia) Server",
    "accepted_paths": ["/plugins/Spotty/settings/callback"],
    "min_port": 1024,
    "single_use_nonces": False,
    "store": "memory",
    "redis_url": "redis://localhost:6379/0",
}

# env var -> config key
ENV_KEYS = {
    "RELAY_BINDING_TTL": "binding_ttl",
    "RELAY_FALLBACK_URL": "fallback_url",
    "RELAY_HOMEPAGE_URL": "homepage_url",
    "RELAY_USER_AGENT_PATTERN": "user_agent_pattern",
    "RELAY_ACCEPTED_PATHS": "accepted_paths",
    "RELAY_MIN_PORT": "min_port",
    "RELAY_SINGLE_USE_NONCES": "single_use_nonces",
    "RELAY_STORE": "store",
    "REDIS_URL": "redis_url",
}


def _as_int(key: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer, got {value!r}")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_paths(value) -> frozenset:
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(p.strip() for p in value if p and p.strip())


class RelayConfig:
    """Read-only configuration container.

    Values are validated and normalised on construction; there are no
    setters, so one instance can be shared by every request.
    """

    def __init__(self, data: dict = None):
        merged = dict(DEFAULTS)
        merged.update(data or {})

        ttl = _as_int("binding_ttl", merged["binding_ttl"])
        if ttl <= 0:
            raise ValueError("binding_ttl must be positive")

        min_port = _as_int("min_port", merged["min_port"])
        if not 0 < min_port <= 65535:
            raise ValueError("min_port must be between 1 and 65535")

        try:
            pattern = re.compile(merged["user_agent_pattern"])
        except re.error as e:
            raise ValueError(f"user_agent_pattern is not a valid regex: {e}")

        store = str(merged["store"]).strip().lower()
        if store not in STORE_BACKENDS:
            raise ValueError(f"Unknown store backend: {store!r} (expected one of {', '.join(STORE_BACKENDS)})")

        self._data = {
            "binding_ttl": ttl,
            "fallback_url": merged["fallback_url"],
            "homepage_url": merged["homepage_url"],
            "user_agent_pattern": pattern,
            "accepted_paths": _as_paths(merged["accepted_paths"]),
            "min_port": min_port,
            "single_use_nonces": _as_bool(merged["single_use_nonces"]),
            "store": store,
            "redis_url": merged["redis_url"],
        }

    @property
    def binding_ttl(self) -> int:
        return self._data["binding_ttl"]

    @property
    def fallback_url(self) -> str:
        return self._data["fallback_url"]

    @property
    def homepage_url(self) -> str:
        return self._data["homepage_url"]

    @property
    def user_agent_pattern(self) -> re.Pattern:
        return self._data["user_agent_pattern"]

    @property
    def accepted_paths(self) -> frozenset:
        return self._data["accepted_paths"]

    @property
    def min_port(self) -> int:
        return self._data["min_port"]

    @property
    def single_use_nonces(self) -> bool:
        return self._data["single_use_nonces"]

    @property
    def store(self) -> str:
        return self._data["store"]

    @property
    def redis_url(self) -> str:
        return self._data["redis_url"]

    def to_dict(self) -> dict:
        """Plain-JSON view of the effective configuration."""
        data = dict(self._data)
        data["user_agent_pattern"] = self.user_agent_pattern.pattern
        data["accepted_paths"] = sorted(self.accepted_paths)
        return data


def _read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError):
        return {}

    return data if isinstance(data, dict) else {}


def load_config(path: Optional[Path] = None, environ: Optional[dict] = None) -> RelayConfig:
    """Load config from file and environment."""
    environ = os.environ if environ is None else environ
    if path is None:
        path = Path(environ["RELAY_CONFIG_FILE"]) if environ.get("RELAY_CONFIG_FILE") else CONFIG_FILE

    data = _read_config_file(path)
    for env_var, key in ENV_KEYS.items():
        value = environ.get(env_var)
        if value:
            data[key] = value

    return RelayConfig(data)
