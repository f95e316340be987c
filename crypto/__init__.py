"""
Cryptographic module for end-to-end encrypted chat.

Implements the two key-distribution models used by the client:
- Rooms: one AES-256-GCM key carried in the link fragment
- Conversations: P-256 ECDH between published identity keys
"""

from .primitives import (
    EncryptedEnvelope,
    generate_keypair,
    serialize_public_key,
    encrypt_envelope,
    decrypt_envelope,
    CryptoError,
    IdentityCorruptError,
    InvalidKeyFormatError,
    InvalidPeerKeyError,
    DecryptionFailedError,
)
from .agreement import derive_shared_key
from .room_key import (
    generate_room_key,
    encode_room_key,
    decode_room_key,
    build_room_link,
    parse_room_link,
)

__all__ = [
    'EncryptedEnvelope',
    'generate_keypair',
    'serialize_public_key',
    'encrypt_envelope',
    'decrypt_envelope',
    'derive_shared_key',
    'generate_room_key',
    'encode_room_key',
    'decode_room_key',
    'build_room_link',
    'parse_room_link',
    'CryptoError',
    'IdentityCorruptError',
    'InvalidKeyFormatError',
    'InvalidPeerKeyError',
    'DecryptionFailedError',
]
