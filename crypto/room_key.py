"""
Room Key Codec

A room is an anonymous, link-shared chat. Its single AES-256-GCM key is
generated by whoever opens the room and travels only in the URL fragment,
which browsers and HTTP clients never send to the server.
"""

from typing import Tuple
from urllib.parse import urlsplit
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .primitives import (
    KEY_SIZE,
    InvalidKeyFormatError,
    b64decode,
    b64encode,
)

# Path segment before the room code: this client shares /room/, web links use /chat/
ROOM_PATH_SEGMENTS = ('room', 'chat')


def generate_room_key() -> bytes:
    """
    Generate a fresh 256-bit room key from the OS CSPRNG.

    Returns:
        32-byte AES-GCM key
    """
    return AESGCM.generate_key(bit_length=256)


def encode_room_key(key: bytes) -> str:
    """Encode a raw room key as base64 for the link fragment"""
    if len(key) != KEY_SIZE:
        raise InvalidKeyFormatError(f"Room key must be {KEY_SIZE} bytes, got {len(key)}")
    return b64encode(key)


def decode_room_key(encoded: str) -> bytes:
    """
    Decode a room key taken from a link fragment.

    Raises:
        InvalidKeyFormatError: If the text is not base64 of exactly 32 bytes
    """
    try:
        key = b64decode(encoded)
    except ValueError as e:
        raise InvalidKeyFormatError("Invalid encryption key format") from e

    if len(key) != KEY_SIZE:
        raise InvalidKeyFormatError(f"Room key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def build_room_link(base_url: str, code: str, key: bytes) -> str:
    """
    Build a shareable room link.

    The key goes in the fragment, never in the path or query string.
    """
    return f"{base_url.rstrip('/')}/room/{code}#{encode_room_key(key)}"


def parse_room_link(link: str) -> Tuple[str, bytes]:
    """
    Split a room link into its room code and decoded key.

    Returns:
        Tuple of (room_code, room_key)

    Raises:
        InvalidKeyFormatError: If the link has no usable code or key
    """
    parts = urlsplit(link.strip())
    if parts.query:
        raise InvalidKeyFormatError("Room links must not carry a query string")
    if not parts.fragment:
        raise InvalidKeyFormatError("Room link has no key fragment")

    segments = [s for s in parts.path.split('/') if s]
    if len(segments) < 2 or segments[-2] not in ROOM_PATH_SEGMENTS:
        raise InvalidKeyFormatError("Room link has no room code")

    return segments[-1], decode_room_key(parts.fragment)
