"""
NIP-04 direct message encryption.

The shared secret is the x coordinate of the ECDH point between our
secret key and the peer's public key, used directly as an AES-256-CBC
key. Payloads travel as ``base64(ciphertext) + "?iv=" + base64(iv)``.
"""

import base64
import binascii
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

IV_SEPARATOR = "?iv="


class EncryptionError(Exception):
    """Raised when a message cannot be encrypted."""


class DecryptionError(Exception):
    """Raised when a payload cannot be decrypted."""


def shared_secret(secret_key: bytes, peer_public_key: str) -> bytes:
    """Compute the NIP-04 shared key with a peer (hex x-only public key)."""
    private_key = ec.derive_private_key(int.from_bytes(secret_key, "big"), ec.SECP256K1())
    peer = ec.EllipticCurvePublicKey.from_encoded_point(
        ec.SECP256K1(), b"\x02" + bytes.fromhex(peer_public_key)
    )
    return private_key.exchange(ec.ECDH(), peer)


def encrypt(secret_key: bytes, peer_public_key: str, plaintext: str) -> str:
    """Encrypt a message for a peer."""
    try:
        key = shared_secret(secret_key, peer_public_key)
    except ValueError as e:
        raise EncryptionError(f"Cannot derive shared key: {e}") from e

    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return (
        base64.b64encode(ciphertext).decode("ascii")
        + IV_SEPARATOR
        + base64.b64encode(iv).decode("ascii")
    )


def decrypt(secret_key: bytes, peer_public_key: str, payload: str) -> str:
    """
    Decrypt a message from a peer.

    Raises:
        DecryptionError: On a malformed payload, wrong key or bad padding
    """
    if not isinstance(payload, str) or IV_SEPARATOR not in payload:
        raise DecryptionError("Payload is missing the iv")

    encoded_ct, encoded_iv = payload.split(IV_SEPARATOR, 1)
    try:
        ciphertext = base64.b64decode(encoded_ct, validate=True)
        iv = base64.b64decode(encoded_iv, validate=True)
    except binascii.Error as e:
        raise DecryptionError(f"Invalid base64: {e}") from e

    if len(iv) != 16 or not ciphertext or len(ciphertext) % 16:
        raise DecryptionError("Invalid ciphertext or iv length")

    try:
        key = shared_secret(secret_key, peer_public_key)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
    except ValueError as e:
        # covers bad padding, invalid peer keys and non-utf8 output
        raise DecryptionError(f"Decryption failed: {e}") from e
