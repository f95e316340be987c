"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations shared by both chat modes:
P-256 key pairs and their serialization, and the AES-256-GCM envelope
pipeline that turns plaintext into transport-safe records and back.
"""

import os
import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Tuple
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


IV_SIZE = 12
KEY_SIZE = 32


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class IdentityCorruptError(CryptoError):
    """Local identity blob is present but unreadable"""
    pass


class InvalidKeyFormatError(CryptoError):
    """Room key material could not be decoded"""
    pass


class InvalidPeerKeyError(CryptoError):
    """Peer public key is malformed or on the wrong curve"""
    pass


class DecryptionFailedError(CryptoError):
    """Envelope failed authentication or could not be parsed"""
    pass


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    Transport record stored server-side in place of plaintext.

    Attributes:
        ciphertext: base64 of AES-GCM output (ciphertext + 16-byte tag)
        iv: base64 of the 12-byte nonce
    """
    ciphertext: str
    iv: str

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {'ciphertext': self.ciphertext, 'iv': self.iv}

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedEnvelope':
        """Create from dictionary"""
        return cls(ciphertext=data['ciphertext'], iv=data['iv'])


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def b64decode(text: str) -> bytes:
    """Strict base64 decode; raises ValueError on anything malformed."""
    if not isinstance(text, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(text.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(str(e)) from e


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate a P-256 keypair for ECDH key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    return private_key, private_key.public_key()


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Serialize a P-256 public key to base64 SubjectPublicKeyInfo"""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return b64encode(der)


def deserialize_public_key(encoded: str) -> ec.EllipticCurvePublicKey:
    """
    Deserialize a base64 SubjectPublicKeyInfo into a P-256 public key.

    Raises:
        ValueError: If the data is not a P-256 public key
    """
    try:
        public_key = serialization.load_der_public_key(b64decode(encoded))
    except UnsupportedAlgorithm as e:
        raise ValueError(str(e)) from e
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError("not an elliptic curve key")
    if not isinstance(public_key.curve, ec.SECP256R1):
        raise ValueError(f"unsupported curve: {public_key.curve.name}")
    return public_key


def serialize_private_key(private_key: ec.EllipticCurvePrivateKey) -> str:
    """Serialize a P-256 private key to base64 PKCS#8"""
    der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    return b64encode(der)


def deserialize_private_key(encoded: str) -> ec.EllipticCurvePrivateKey:
    """
    Deserialize a base64 PKCS#8 blob into a P-256 private key.

    Raises:
        ValueError: If the data is not a P-256 private key
    """
    try:
        private_key = serialization.load_der_private_key(b64decode(encoded), password=None)
    except UnsupportedAlgorithm as e:
        raise ValueError(str(e)) from e
    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise ValueError("not an elliptic curve key")
    if not isinstance(private_key.curve, ec.SECP256R1):
        raise ValueError(f"unsupported curve: {private_key.curve.name}")
    return private_key


def encrypt_envelope(plaintext: str, key: bytes) -> EncryptedEnvelope:
    """
    Encrypt a message using AES-256-GCM.

    A new random IV is drawn on every call, so encrypting the same plaintext
    twice under the same key yields two different envelopes.

    Args:
        plaintext: Message to encrypt
        key: 32-byte encryption key

    Returns:
        EncryptedEnvelope with base64 ciphertext and IV
    """
    if len(key) != KEY_SIZE:
        raise CryptoError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")

    iv = os.urandom(IV_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(iv, plaintext.encode('utf-8'), None)
    return EncryptedEnvelope(ciphertext=b64encode(ciphertext), iv=b64encode(iv))


def decrypt_envelope(envelope: EncryptedEnvelope, key: bytes) -> str:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        envelope: Envelope produced by encrypt_envelope
        key: 32-byte encryption key

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionFailedError: If decoding or authentication fails
    """
    try:
        ciphertext = b64decode(envelope.ciphertext)
        iv = b64decode(envelope.iv)
    except ValueError as e:
        raise DecryptionFailedError(f"Malformed envelope: {e}") from e

    if len(iv) != IV_SIZE:
        raise DecryptionFailedError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    if len(key) != KEY_SIZE:
        raise DecryptionFailedError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")

    aesgcm = AESGCM(key)
    try:
        plaintext = aesgcm.decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionFailedError("Authentication failed") from e

    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionFailedError("Plaintext is not valid UTF-8") from e
