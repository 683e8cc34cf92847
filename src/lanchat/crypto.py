"""
LanChat - Cryptographic operations for private messages.

This module implements per-pair encryption for direct messages:
- Ephemeral NIST P-256 key pair generated once per process
- ECDH key agreement with the peer's advertised public key
- SHA-256 of the shared secret as the AES-256 key
- AES-256-CBC with PKCS7 padding and a fresh random IV per message

Encrypted payloads travel as ``"<iv hex>:<ciphertext hex>"``.

Key pairs are never persisted: every run advertises a new public key via
discovery, so a restarted peer cannot read messages addressed to its previous
incarnation.

All cryptographic operations use the cryptography library (Apache 2.0/BSD License).
"""

import hashlib
import logging
import os
import secrets
from typing import Dict, Tuple

from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .constants import (
    CIPHERTEXT_DELIMITER,
    DECRYPTION_FAILED,
    IV_SIZE,
    PEER_ID_BYTES,
)
from .errors import CryptoError, ErrorCode, FormatError

logger = logging.getLogger(__name__)

CURVE = ec.SECP256R1()
BLOCK_SIZE_BITS = algorithms.AES.block_size


def generate_peer_id() -> str:
    """
    Generate a process instance id for discovery and session handshakes.

    The id is 16 bytes (128 bits) from the OS CSPRNG encoded as 32 hex
    characters. With n live peers the collision probability is about
    n^2 / 2^129, which is negligible for any local network.
    """
    return secrets.token_hex(PEER_ID_BYTES)


def load_public_key(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Load a peer public key from its hex-encoded SEC1 point.

    Both compressed and uncompressed encodings are accepted.

    Raises:
        CryptoError: If the value is not a valid point on the curve
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes.fromhex(public_key_hex))
    except (ValueError, TypeError) as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            "Invalid peer public key",
            {"error": str(e)},
        )


def parse_encrypted_blob(blob: str) -> Tuple[bytes, bytes]:
    """
    Split an encrypted payload into IV and ciphertext.

    Raises:
        FormatError: If the delimiter, IV or ciphertext is absent or malformed
    """
    if not isinstance(blob, str) or CIPHERTEXT_DELIMITER not in blob:
        raise FormatError(message="Missing IV delimiter")

    iv_hex, _, ciphertext_hex = blob.partition(CIPHERTEXT_DELIMITER)
    if not iv_hex or not ciphertext_hex:
        raise FormatError(message="Missing IV or ciphertext")

    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
    except ValueError as e:
        raise FormatError(message="IV or ciphertext is not valid hex", details={"error": str(e)})

    if len(iv) != IV_SIZE:
        raise FormatError(message=f"IV must be {IV_SIZE} bytes", details={"iv_length": len(iv)})
    if len(ciphertext) % (BLOCK_SIZE_BITS // 8) != 0:
        raise FormatError(
            message="Ciphertext is not a whole number of blocks",
            details={"ciphertext_length": len(ciphertext)},
        )

    return iv, ciphertext


class CryptoEngine:
    """
    Holds this process's ephemeral key pair and performs per-pair encryption.

    Derived AES keys are cached per peer public key, since the same peers
    exchange many messages over the lifetime of the process.
    """

    def __init__(self):
        self.private_key = ec.generate_private_key(CURVE)
        self.public_key = self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.CompressedPoint,
        ).hex()
        self._shared_keys: Dict[str, bytes] = {}

    def derive_key(self, peer_public_key: str) -> bytes:
        """
        Derive the symmetric key shared with the owner of ``peer_public_key``.

        Both ends of an ECDH pair derive the same key.

        Raises:
            CryptoError: If the peer key is invalid
        """
        key = self._shared_keys.get(peer_public_key)
        if key is None:
            shared_secret = self.private_key.exchange(ec.ECDH(), load_public_key(peer_public_key))
            key = hashlib.sha256(shared_secret).digest()
            self._shared_keys[peer_public_key] = key
        return key

    def encrypt(self, plaintext: str, recipient_public_key: str) -> str:
        """
        Encrypt a direct message for a recipient.

        Args:
            plaintext: Message text
            recipient_public_key: Recipient's advertised public key (hex)

        Returns:
            ``"<iv hex>:<ciphertext hex>"``

        Raises:
            CryptoError: If the recipient key is invalid
        """
        key = self.derive_key(recipient_public_key)
        iv = os.urandom(IV_SIZE)

        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return iv.hex() + CIPHERTEXT_DELIMITER + ciphertext.hex()

    def decrypt(self, blob: str, sender_public_key: str) -> str:
        """
        Decrypt a direct message from a sender.

        Args:
            blob: ``"<iv hex>:<ciphertext hex>"`` as produced by encrypt()
            sender_public_key: Sender's advertised public key (hex)

        Returns:
            The plaintext, or DECRYPTION_FAILED if the key is wrong or the
            ciphertext is corrupted

        Raises:
            FormatError: If the blob is not in the expected encoding
        """
        iv, ciphertext = parse_encrypted_blob(blob)

        try:
            key = self.derive_key(sender_public_key)
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (CryptoError, ValueError) as e:
            logger.warning(f"Decryption failed: {e}")
            return DECRYPTION_FAILED
