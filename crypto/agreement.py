"""
Pairwise Key Agreement

Derives the symmetric key for a two-party conversation from one party's
private identity key and the other party's published public key.

The derived key is never stored or cached. Callers re-derive it for every
encrypt batch and every decrypt batch, so a leaked derived key only exposes
the operation that produced it.
"""

from cryptography.hazmat.primitives.asymmetric import ec

from .primitives import (
    InvalidPeerKeyError,
    deserialize_public_key,
)


def import_peer_key(encoded: str) -> ec.EllipticCurvePublicKey:
    """
    Import a peer's encoded public key for derivation only.

    Args:
        encoded: base64 SubjectPublicKeyInfo from the identity directory

    Returns:
        The peer's P-256 public key

    Raises:
        InvalidPeerKeyError: If the key is malformed or not on P-256
    """
    try:
        return deserialize_public_key(encoded)
    except (ValueError, TypeError) as e:
        raise InvalidPeerKeyError(f"Invalid peer public key: {e}") from e


def derive_shared_key(my_private_key: ec.EllipticCurvePrivateKey, their_public_key: str) -> bytes:
    """
    Perform ECDH and return a 32-byte AES-256-GCM key.

    The shared x-coordinate is used as the AES key directly, matching what a
    browser peer gets from WebCrypto deriveKey(ECDH -> AES-GCM 256).

    Args:
        my_private_key: Our P-256 private key
        their_public_key: Their encoded public key

    Returns:
        32-byte symmetric key

    Raises:
        InvalidPeerKeyError: If their key cannot be imported or used
    """
    peer_key = import_peer_key(their_public_key)
    try:
        return my_private_key.exchange(ec.ECDH(), peer_key)
    except ValueError as e:
        raise InvalidPeerKeyError(f"Key agreement failed: {e}") from e
