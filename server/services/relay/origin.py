"""Relay origin resolution.

Candidates, first match wins: override file, RELAY_URL, built-in default.
ws/wss URLs are accepted and mapped to http/https; everything is reduced to
scheme://host[:port].
"""
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from core.logging import get_logger

logger = get_logger(__name__)

_SCHEME_MAP = {"ws": "http", "wss": "https", "http": "http", "https": "https"}


@dataclass
class RelayOrigin:
    """Where the relay lives and where that answer came from."""
    origin: Optional[str]
    source: str
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.origin is not None


def normalize_relay_origin(value) -> Optional[str]:
    """Return 'scheme://host[:port]' for an http(s)/ws(s) URL, else None."""
    if not value or not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        parts = urlsplit(trimmed)
        port = parts.port
    except ValueError:
        return None
    scheme = _SCHEME_MAP.get(parts.scheme.lower())
    if scheme is None or not parts.hostname:
        return None
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    default_port = 443 if scheme == "https" else 80
    if port is not None and port != default_port:
        host = f"{host}:{port}"
    return f"{scheme}://{host}"


def load_relay_override(path: Optional[str]) -> Optional[str]:
    """Read relay_origin (or relay_url) from the override JSON file."""
    if not path:
        return None
    override_path = Path(path)
    if not override_path.exists():
        return None
    try:
        data = json.loads(override_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("[Relay] Failed to parse relay override file", path=path, error=str(e))
        return None
    if isinstance(data, dict):
        return data.get("relay_origin") or data.get("relay_url") or None
    return None


def resolve_relay_origin(override_path: Optional[str], env_value: Optional[str], default: str) -> RelayOrigin:
    """Pick the relay origin and tag its source."""
    override = load_relay_override(override_path)
    if override:
        origin = normalize_relay_origin(override)
        if origin:
            return RelayOrigin(origin, "override")
        return RelayOrigin(None, "override_invalid",
                           ["relay override file contains an invalid relay_origin"])

    if env_value and env_value.strip():
        origin = normalize_relay_origin(env_value)
        if origin:
            return RelayOrigin(origin, "env")
        return RelayOrigin(None, "env_invalid", ["RELAY_URL is invalid"])

    origin = normalize_relay_origin(default)
    if origin:
        return RelayOrigin(origin, "default")
    return RelayOrigin(None, "default", ["relay_origin is not set"])
