"""Ephemeral secp256k1 keys for a single inscription job."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from coincurve import PrivateKey as Secp256k1PrivateKey
from coincurve import PublicKeyXOnly
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec

from .taproot import SECP256K1_ORDER

logger = logging.getLogger(__name__)


class KeyValidationFailed(RuntimeError):
    """Raised when a job key is malformed or cannot produce verifiable signatures."""


def verify_schnorr(xonly_pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """Verify a BIP340 signature over a 32-byte digest."""

    if len(signature) != 64 or len(digest) != 32 or len(xonly_pubkey) != 32:
        return False
    try:
        return bool(PublicKeyXOnly(xonly_pubkey).verify(signature, digest))
    except ValueError:
        return False


@dataclass(frozen=True)
class EphemeralKey:
    """A secp256k1 keypair that owns signing authority for one job.

    ``xonly`` is the BIP340 x-only public key placed into every leaf script.
    """

    secret: bytes = field(repr=False)
    xonly: bytes

    @classmethod
    def generate(cls) -> "EphemeralKey":
        private_key = ec.generate_private_key(ec.SECP256K1(), default_backend())
        secret = private_key.private_numbers().private_value.to_bytes(32, "big")
        return cls.from_secret(secret)

    @classmethod
    def from_secret(cls, secret: bytes) -> "EphemeralKey":
        if len(secret) != 32:
            raise KeyValidationFailed(f"Private key must be 32 bytes, got {len(secret)}")
        value = int.from_bytes(secret, "big")
        if not 0 < value < SECP256K1_ORDER:
            raise KeyValidationFailed("Private key is outside the secp256k1 scalar range")
        public_numbers = (
            ec.derive_private_key(value, ec.SECP256K1(), default_backend())
            .public_key()
            .public_numbers()
        )
        return cls(secret=bytes(secret), xonly=public_numbers.x.to_bytes(32, "big"))

    @classmethod
    def from_hex(cls, secret_hex: str) -> "EphemeralKey":
        try:
            secret = bytes.fromhex(secret_hex.strip())
        except (AttributeError, ValueError) as exc:
            raise KeyValidationFailed("Private key is not valid hex") from exc
        return cls.from_secret(secret)

    def hex(self) -> str:
        return self.secret.hex()

    def sign(self, digest: bytes) -> bytes:
        """Return a 64-byte BIP340 signature over ``digest``."""

        if len(digest) != 32:
            raise ValueError(f"BIP340 signing requires a 32-byte digest, got {len(digest)}")
        return Secp256k1PrivateKey(self.secret).sign_schnorr(digest)

    def verify(self, digest: bytes, signature: bytes) -> bool:
        return verify_schnorr(self.xonly, digest, signature)
