"""
Identity and encryption for Agent Reach.

Provides:
- Agent identity (secp256k1 keys, BIP-340 signatures)
- Key parsing and peer id normalization (hex / bech32)
- NIP-04 direct message encryption
"""

from .identity import (
    Identity,
    InvalidKeyError,
    InvalidPeerIdError,
    derive_public_key,
    normalize_peer_id,
    npub_encode,
    nsec_encode,
    parse_secret_key,
    verify_signature,
)
from .nip04 import DecryptionError, EncryptionError, decrypt, encrypt

__all__ = [
    # Identity
    "Identity",
    "InvalidKeyError",
    "InvalidPeerIdError",
    "derive_public_key",
    "normalize_peer_id",
    "npub_encode",
    "nsec_encode",
    "parse_secret_key",
    "verify_signature",
    # NIP-04
    "DecryptionError",
    "EncryptionError",
    "decrypt",
    "encrypt",
]
