"""
Device identity for gateway connections.

Each panel installation owns one Ed25519 keypair. The gateway identifies the
panel by deviceId (sha256 of the raw public key) and checks a signature over
the connect parameters, so a stolen bearer token alone cannot impersonate
the panel.

The identity file uses the same JSON layout as the gateway's own CLI:

  {"version": 1, "deviceId": "...", "publicKeyPem": "...",
   "privateKeyPem": "...", "createdAtMs": 1700000000000}

A sibling device-auth.json holds tokens issued by a previous pairing:

  {"tokens": {"operator": {"token": "..."}}}
"""

import base64
import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from audit import audit_log

DEVICE_IDENTITY_VERSION = 1
DEVICE_AUTH_FILENAME = "device-auth.json"
CLIENT_ID = "cli"
CLIENT_MODE = "cli"


@dataclass
class DeviceIdentity:
    device_id: str
    public_key_pem: str
    private_key_pem: str
    created_at_ms: int
    version: int = DEVICE_IDENTITY_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "deviceId": self.device_id,
            "publicKeyPem": self.public_key_pem,
            "privateKeyPem": self.private_key_pem,
            "createdAtMs": self.created_at_ms,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def base64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def derive_public_key_raw(public_key_pem: str) -> bytes:
    """Raw 32-byte key for Ed25519, SPKI DER bytes for anything else."""
    key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    if isinstance(key, Ed25519PublicKey):
        return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


def fingerprint_public_key(public_key_pem: str) -> str:
    return hashlib.sha256(derive_public_key_raw(public_key_pem)).hexdigest()


def public_key_raw_base64url(public_key_pem: str) -> str:
    return base64url_encode(derive_public_key_raw(public_key_pem))


def generate_device_identity() -> DeviceIdentity:
    """Generate a fresh Ed25519 identity (not persisted)."""
    private_key = Ed25519PrivateKey.generate()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return DeviceIdentity(
        device_id=fingerprint_public_key(public_pem),
        public_key_pem=public_pem,
        private_key_pem=private_pem,
        created_at_ms=_now_ms(),
    )


def _read_json(path: Path) -> Optional[dict]:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _write_identity(path: Path, identity: DeviceIdentity) -> bool:
    """Write the identity with owner-only permissions. Failure is non-fatal."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(identity.to_dict(), indent=2) + "\n")
        os.chmod(path, 0o600)
        return True
    except OSError as e:
        print(f"[device-identity] Could not persist identity to {path}: {e}")
        return False


def _positive_int(value, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed > 0 else fallback


def load_or_create(path: Path) -> DeviceIdentity:
    """
    Load the device identity at path, creating it on first use.

    The stored deviceId is always recomputed from the public key; a mismatch
    is repaired in place. Missing, malformed or incomplete files are replaced
    by a fresh identity.
    """
    path = Path(path)
    data = _read_json(path)
    if (
        data is not None
        and data.get("version") == DEVICE_IDENTITY_VERSION
        and isinstance(data.get("deviceId"), str)
        and isinstance(data.get("publicKeyPem"), str)
        and isinstance(data.get("privateKeyPem"), str)
    ):
        try:
            derived_id = fingerprint_public_key(data["publicKeyPem"])
        except ValueError:
            derived_id = None
        if derived_id:
            identity = DeviceIdentity(
                device_id=derived_id,
                public_key_pem=data["publicKeyPem"],
                private_key_pem=data["privateKeyPem"],
                created_at_ms=_positive_int(data.get("createdAtMs"), _now_ms()),
            )
            if data["deviceId"] != derived_id:
                _write_identity(path, identity)
                audit_log("device_identity_repaired", {"path": str(path), "device_id": derived_id})
            return identity

    identity = generate_device_identity()
    persisted = _write_identity(path, identity)
    audit_log("device_identity_created", {
        "path": str(path),
        "device_id": identity.device_id,
        "persisted": persisted,
    })
    return identity


def device_auth_path(identity_path: Path) -> Path:
    return Path(identity_path).parent / DEVICE_AUTH_FILENAME


def load_stored_device_token(identity_path: Path, role: str) -> str:
    """Token previously issued to this device for role, or ''."""
    data = _read_json(device_auth_path(identity_path))
    if not data:
        return ""
    tokens = data.get("tokens")
    entry = tokens.get(role) if isinstance(tokens, dict) else None
    token = entry.get("token") if isinstance(entry, dict) else None
    return token.strip() if isinstance(token, str) else ""


def build_device_auth_payload(
    *,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: list[str],
    signed_at_ms: int,
    token: str = "",
    nonce: str = "",
) -> str:
    """Canonical string signed by the device: v1 without nonce, v2 with."""
    version = "v2" if nonce else "v1"
    normalized_scopes = [s.strip() for s in scopes or [] if isinstance(s, str) and s.strip()]
    parts = [
        version,
        (device_id or "").strip(),
        (client_id or "").strip(),
        (client_mode or "").strip(),
        (role or "").strip(),
        ",".join(normalized_scopes),
        str(signed_at_ms),
        (token or "").strip(),
    ]
    if version == "v2":
        parts.append(nonce.strip())
    return "|".join(parts)


def sign_payload(private_key_pem: str, payload: str) -> str:
    private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(private_key, Ed25519PrivateKey):
        raise ValueError("Device identity key is not Ed25519")
    return base64url_encode(private_key.sign(payload.encode("utf-8")))


def build_connect_device(
    identity: Optional[DeviceIdentity],
    *,
    role: str,
    scopes: list[str],
    token: str = "",
    nonce: str = "",
) -> Optional[dict]:
    """The 'device' block of connect params, or None if identity is unusable."""
    if not identity or not identity.device_id or not identity.public_key_pem or not identity.private_key_pem:
        return None
    signed_at = _now_ms()
    payload = build_device_auth_payload(
        device_id=identity.device_id,
        client_id=CLIENT_ID,
        client_mode=CLIENT_MODE,
        role=role,
        scopes=scopes,
        signed_at_ms=signed_at,
        token=token,
        nonce=nonce,
    )
    try:
        device = {
            "id": identity.device_id,
            "publicKey": public_key_raw_base64url(identity.public_key_pem),
            "signature": sign_payload(identity.private_key_pem, payload),
            "signedAt": signed_at,
        }
    except ValueError as e:
        print(f"[device-identity] Cannot sign connect proof: {e}")
        return None
    if nonce:
        device["nonce"] = nonce
    return device
