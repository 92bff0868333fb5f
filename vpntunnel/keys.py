"""Key provisioning for WireGuard tunnel endpoints."""

import base64
import binascii
import logging

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .errors import ProvisioningError
from .models import KeyPair


KEY_SIZE = 32  # Curve25519

logger = logging.getLogger(__name__)


def _encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _public_from(private_key: X25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return _encode(raw)


def generate_keypair() -> KeyPair:
    """Generate a new WireGuard keypair."""
    try:
        private_key = X25519PrivateKey.generate()
        raw = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
        return KeyPair(private_key=_encode(raw), public_key=_public_from(private_key))

    except Exception as e:
        logger.error(f"Error generating keypair: {e}")
        raise ProvisioningError(f"failed to generate keypair: {e}") from e


def public_key_from_private(private_key_b64: str) -> str:
    """Derive the base64 public key from a base64 private key."""
    raw = decode_key(private_key_b64)
    return _public_from(X25519PrivateKey.from_private_bytes(raw))


def decode_key(key_b64: str) -> bytes:
    """Decode a base64 key, checking its length."""
    try:
        raw = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 encoding: {e}") from e

    if len(raw) != KEY_SIZE:
        raise ValueError(f"invalid key length: {len(raw)}, expected {KEY_SIZE}")

    return raw


def validate_key(key_b64: str) -> bool:
    """Check that a key is a base64-encoded 32-byte value."""
    try:
        decode_key(key_b64)
        return True
    except ValueError:
        return False
