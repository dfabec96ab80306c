"""
Agent identity using secp256k1 keys.

Each agent is identified by the x-only public key of its secp256k1
keypair. Keys are accepted either as 64 hex characters or in their
bech32 form (nsec/npub); internally every key is lowercase hex.
"""

import os
import re
from dataclasses import dataclass
from typing import Union

import coincurve
from bech32 import bech32_decode, bech32_encode, convertbits
from cryptography.hazmat.primitives.asymmetric import ec

HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

NSEC_PREFIX = "nsec"
NPUB_PREFIX = "npub"

# Order of the secp256k1 group
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class InvalidKeyError(ValueError):
    """Raised when a secret key is missing or malformed."""


class InvalidPeerIdError(ValueError):
    """Raised when a peer identifier cannot be normalized."""


def _bech32_to_bytes(value: str, hrp: str) -> bytes:
    decoded_hrp, data = bech32_decode(value)
    if decoded_hrp != hrp or data is None:
        raise ValueError(f"not a valid {hrp} string")
    raw = convertbits(data, 5, 8, False)
    if raw is None or len(raw) != 32:
        raise ValueError(f"{hrp} payload must be 32 bytes")
    return bytes(raw)


def _bytes_to_bech32(hrp: str, raw: bytes) -> str:
    return bech32_encode(hrp, convertbits(raw, 8, 5))


def npub_encode(public_key: Union[str, bytes]) -> str:
    """Encode a public key (hex or bytes) as npub."""
    if isinstance(public_key, str):
        public_key = bytes.fromhex(public_key)
    return _bytes_to_bech32(NPUB_PREFIX, public_key)


def nsec_encode(secret_key: bytes) -> str:
    """Encode a secret key as nsec."""
    return _bytes_to_bech32(NSEC_PREFIX, secret_key)


def parse_secret_key(value: str) -> bytes:
    """
    Parse a configured secret key.

    Accepts 64 hex characters or an nsec1... string.

    Raises:
        InvalidKeyError: If the key is empty, malformed or out of range
    """
    if not value or not value.strip():
        raise InvalidKeyError("No private key configured")

    value = value.strip()
    if value.lower().startswith(NSEC_PREFIX + "1"):
        try:
            secret = _bech32_to_bytes(value.lower(), NSEC_PREFIX)
        except ValueError as e:
            raise InvalidKeyError(f"Invalid nsec key: {e}") from e
    elif HEX_KEY_RE.match(value):
        secret = bytes.fromhex(value)
    else:
        raise InvalidKeyError("Private key must be 64 hex characters or nsec1...")

    scalar = int.from_bytes(secret, "big")
    if not 0 < scalar < CURVE_ORDER:
        raise InvalidKeyError("Private key is outside the secp256k1 range")
    return secret


def derive_public_key(secret_key: bytes) -> bytes:
    """Derive the 32-byte x-only public key for a secret key."""
    private_key = ec.derive_private_key(int.from_bytes(secret_key, "big"), ec.SECP256K1())
    x = private_key.public_key().public_numbers().x
    return x.to_bytes(32, "big")


def _is_curve_point(x_only: bytes) -> bool:
    try:
        ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), b"\x02" + x_only)
        return True
    except ValueError:
        return False


def normalize_peer_id(value: str) -> str:
    """
    Canonicalize a peer identifier to lowercase hex.

    Accepts 64 hex characters (any case) or an npub1... string.

    Raises:
        InvalidPeerIdError: If the value is not a valid public key
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidPeerIdError("Empty peer id")

    value = value.strip()
    if value.lower().startswith(NPUB_PREFIX + "1"):
        try:
            raw = _bech32_to_bytes(value.lower(), NPUB_PREFIX)
        except ValueError as e:
            raise InvalidPeerIdError(f"Invalid npub: {e}") from e
    elif HEX_KEY_RE.match(value):
        raw = bytes.fromhex(value)
    else:
        raise InvalidPeerIdError(f"Not a public key: {value[:16]}")

    if not _is_curve_point(raw):
        raise InvalidPeerIdError(f"Not a point on secp256k1: {raw.hex()[:16]}")
    return raw.hex()


def verify_signature(public_key: str, message: bytes, signature: str) -> bool:
    """Verify a BIP-340 Schnorr signature over a 32-byte message."""
    try:
        key = coincurve.PublicKeyXOnly(bytes.fromhex(public_key))
        return key.verify(bytes.fromhex(signature), message)
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True)
class Identity:
    """A secp256k1 identity for signing events."""
    secret_key: bytes
    public_key: bytes

    @classmethod
    def from_secret(cls, value: Union[str, bytes]) -> "Identity":
        """Load an identity from a configured key (hex, nsec or raw bytes)."""
        if isinstance(value, bytes):
            secret = parse_secret_key(value.hex())
        else:
            secret = parse_secret_key(value)
        return cls(secret_key=secret, public_key=derive_public_key(secret))

    @classmethod
    def generate(cls) -> "Identity":
        """Generate a new random identity."""
        while True:
            secret = os.urandom(32)
            if 0 < int.from_bytes(secret, "big") < CURVE_ORDER:
                return cls(secret_key=secret, public_key=derive_public_key(secret))

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def secret_key_hex(self) -> str:
        return self.secret_key.hex()

    @property
    def npub(self) -> str:
        return npub_encode(self.public_key)

    @property
    def nsec(self) -> str:
        return nsec_encode(self.secret_key)

    def sign(self, message: bytes) -> str:
        """Schnorr-sign a 32-byte message, returning the hex signature."""
        key = coincurve.PrivateKey(self.secret_key)
        return key.sign_schnorr(message, os.urandom(32)).hex()

    def __repr__(self) -> str:
        return f"Identity(npub={self.npub!r})"
