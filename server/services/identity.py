"""Persistent agent identity for relay authentication (Ed25519).

Stores the keypair, pair code and relay-assigned agent id in a single JSON
file so the bridge keeps the same identity across restarts.

Key format: JWK-style fields, both unpadded base64url strings.
- public_key_x:  32-byte Ed25519 public key (sent to the relay)
- private_key_d: 32-byte Ed25519 private seed

Signatures are 64 bytes, returned as unpadded base64url.
"""

import base64
import binascii
import json
import os
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from core.logging import get_logger

logger = get_logger(__name__)

KEY_FORMAT = "ed25519-jwk-v2"
PAIR_CODE_BYTES = 3
KEY_BYTES = 32
FILE_MODE = 0o600

_PAIR_CODE_RE = re.compile(r"^[0-9A-F]{6}$")


class IdentityError(Exception):
    """Identity material could not be used or stored (bad nonce, unusable keys, unwritable file)."""


# =============================================================================
# Encoding helpers
# =============================================================================

def b64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def decode_base64_any(value: str) -> bytes:
    """Decode a base64 or base64url string, padding optional."""
    if not value or not isinstance(value, str):
        raise IdentityError("Invalid base64 input")
    normalized = value.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as e:
        raise IdentityError(f"Invalid base64 input: {e}") from e


def normalize_pair_code(value: Any) -> Optional[str]:
    """Return the upper-cased pair code, or None if it is not 6 hex chars."""
    if not value:
        return None
    normalized = str(value).strip().upper()
    if not _PAIR_CODE_RE.match(normalized):
        return None
    return normalized


def generate_pair_code() -> str:
    return secrets.token_hex(PAIR_CODE_BYTES).upper()


def _raw_private_seed(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public_key(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _generate_keypair() -> Dict[str, str]:
    private_key = Ed25519PrivateKey.generate()
    return {
        "public_key_x": b64url_encode(_raw_public_key(private_key.public_key())),
        "private_key_d": b64url_encode(_raw_private_seed(private_key)),
    }


def _keys_from_jwk_fields(public_key_x: str, private_key_d: str) -> Ed25519PrivateKey:
    """Rebuild the private key and check it matches the stored public key."""
    seed = decode_base64_any(private_key_d)
    public = decode_base64_any(public_key_x)
    if len(seed) != KEY_BYTES or len(public) != KEY_BYTES:
        raise IdentityError(
            f"Invalid key size: public={len(public)} seed={len(seed)}, expected {KEY_BYTES}"
        )
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    if _raw_public_key(private_key.public_key()) != public:
        raise IdentityError("Stored public key does not match private seed")
    return private_key


def _migrate_pkcs8(data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Convert the legacy base64 PKCS#8 DER `private_key` field to JWK fields."""
    try:
        der = base64.b64decode(data["private_key"])
        private_key = serialization.load_der_private_key(der, password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise IdentityError("Legacy key is not Ed25519")
        logger.info("[Identity] Migrated from legacy PKCS#8 key format")
        return {
            "public_key_x": b64url_encode(_raw_public_key(private_key.public_key())),
            "private_key_d": b64url_encode(_raw_private_seed(private_key)),
        }
    except Exception as e:
        logger.error("[Identity] Legacy key migration failed", error=str(e))
        return None


# =============================================================================
# Identity Store
# =============================================================================

class IdentityStore:
    """Owns the bridge's keypair, agent id and pair code.

    Loading is lazy and happens once; every accessor triggers it. A corrupt or
    unreadable file is never fatal: a fresh identity is generated and written
    in its place.
    """

    def __init__(self, storage_path: str, legacy_path: Optional[str] = None):
        self.storage_path = Path(storage_path)
        self.legacy_path = Path(legacy_path) if legacy_path else None

        self.public_key_x: Optional[str] = None
        self.private_key_d: Optional[str] = None
        self.agent_id: Optional[str] = None
        self.pair_code: Optional[str] = None
        self.created_at: Optional[str] = None
        self.loaded = False

        self._private_key: Optional[Ed25519PrivateKey] = None
        self._public_key: Optional[Ed25519PublicKey] = None

    # =========================================================================
    # Persistence
    # =========================================================================

    def _read_file(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("[Identity] Failed to read identity file, regenerating",
                         path=str(path), error=str(e))
            return None
        if not isinstance(data, dict):
            logger.error("[Identity] Identity file is not an object, regenerating", path=str(path))
            return None
        return data

    def load(self) -> None:
        """Load identity from disk, repairing or generating it as needed."""
        if self.loaded:
            return

        data = self._read_file(self.storage_path)
        if data is None and self.legacy_path is not None:
            data = self._read_file(self.legacy_path)
            if data is not None:
                logger.info("[Identity] Found identity at legacy path, will migrate",
                            path=str(self.legacy_path))

        keys: Optional[Dict[str, str]] = None
        needs_save = False

        if data:
            if data.get("format") == KEY_FORMAT and data.get("public_key_x") and data.get("private_key_d"):
                keys = {"public_key_x": data["public_key_x"], "private_key_d": data["private_key_d"]}
            elif data.get("private_key"):
                keys = _migrate_pkcs8(data)
                needs_save = True

        private_key = None
        if keys:
            try:
                private_key = _keys_from_jwk_fields(keys["public_key_x"], keys["private_key_d"])
            except Exception as e:
                logger.error("[Identity] Stored keys invalid, regenerating", error=str(e))
                keys = None

        if not keys:
            logger.info("[Identity] Generating new Ed25519 keypair")
            keys = _generate_keypair()
            private_key = _keys_from_jwk_fields(keys["public_key_x"], keys["private_key_d"])
            self.created_at = datetime.now(timezone.utc).isoformat()
            self.pair_code = generate_pair_code()
            self.agent_id = None
            needs_save = True
        else:
            stored_code = normalize_pair_code(data.get("pair_code"))
            self.agent_id = data.get("agent_id") or None
            self.pair_code = stored_code or generate_pair_code()
            self.created_at = data.get("created_at") or datetime.now(timezone.utc).isoformat()
            if stored_code is None:
                needs_save = True

        self.public_key_x = keys["public_key_x"]
        self.private_key_d = keys["private_key_d"]
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self.loaded = True

        if needs_save:
            self.save()

        logger.info("[Identity] Agent identity ready",
                    pair_code=self.pair_code,
                    agent_id=self.agent_id or "(none)")

    def save(self) -> None:
        """Write the identity file, readable by the owning user only."""
        payload = {
            "format": KEY_FORMAT,
            "created_at": self.created_at,
            "public_key_x": self.public_key_x,
            "private_key_d": self.private_key_d,
            "agent_id": self.agent_id,
            "pair_code": self.pair_code,
        }
        tmp_path = self.storage_path.with_name(self.storage_path.name + ".tmp")
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self.storage_path)
        except OSError as e:
            logger.error("[Identity] Failed to write identity file", path=str(self.storage_path), error=str(e))
            raise IdentityError(f"Cannot write identity file: {e}") from e

    # =========================================================================
    # Accessors
    # =========================================================================

    def get_public_key(self) -> str:
        """Public key as base64url, the form sent to the relay."""
        self.load()
        return self.public_key_x

    def get_key_info(self) -> Dict[str, int]:
        """Key sizes for diagnostics. Never includes key material."""
        self.load()
        return {
            "public_key_bytes": len(decode_base64_any(self.public_key_x)),
            "public_key_string_length": len(self.public_key_x),
        }

    def get_agent_id(self) -> Optional[str]:
        self.load()
        return self.agent_id

    def set_agent_id(self, agent_id: Optional[str]) -> None:
        self.load()
        if not agent_id or agent_id == self.agent_id:
            return
        self.agent_id = agent_id
        self.save()

    def get_pair_code(self) -> str:
        self.load()
        return self.pair_code

    def set_pair_code(self, pair_code: Any) -> bool:
        """Set an explicit pair code. Returns False if it is not 6 hex chars."""
        self.load()
        normalized = normalize_pair_code(pair_code)
        if not normalized:
            return False
        if normalized == self.pair_code:
            return True
        self.pair_code = normalized
        self.save()
        return True

    def regenerate_pair_code(self) -> str:
        self.load()
        self.pair_code = generate_pair_code()
        self.save()
        return self.pair_code

    # =========================================================================
    # Signing
    # =========================================================================

    def sign(self, nonce: str) -> str:
        """Sign the raw bytes of a base64/base64url nonce.

        Returns the 64-byte signature as unpadded base64url.
        """
        self.load()
        try:
            nonce_bytes = decode_base64_any(nonce)
        except IdentityError as e:
            logger.error("[Identity] Failed to decode nonce", error=str(e))
            raise IdentityError("Invalid nonce encoding") from e

        signature = self._private_key.sign(nonce_bytes)
        logger.debug("[Identity] Signed nonce",
                     nonce_length=len(nonce),
                     nonce_bytes=len(nonce_bytes),
                     signature_bytes=len(signature))
        return b64url_encode(signature)

    def verify(self, nonce: str, signature: str) -> bool:
        """Check a signature produced by sign(). False on any mismatch."""
        self.load()
        try:
            self._public_key.verify(decode_base64_any(signature), decode_base64_any(nonce))
            return True
        except (InvalidSignature, IdentityError):
            return False
