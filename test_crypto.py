#!/usr/bin/env python3
"""
Tests for cryptographic primitives, key agreement and room keys.
"""

import base64
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, x25519

from crypto.primitives import (
    EncryptedEnvelope,
    generate_keypair,
    serialize_public_key,
    deserialize_public_key,
    serialize_private_key,
    deserialize_private_key,
    encrypt_envelope,
    decrypt_envelope,
    DecryptionFailedError,
    InvalidKeyFormatError,
    InvalidPeerKeyError,
)
from crypto.agreement import derive_shared_key
from crypto.room_key import (
    generate_room_key,
    encode_room_key,
    decode_room_key,
    build_room_link,
    parse_room_link,
)


def _flip_bit(encoded: str, index: int, bit: int = 0) -> str:
    data = bytearray(base64.b64decode(encoded))
    data[index] ^= 1 << bit
    return base64.b64encode(bytes(data)).decode()


def test_encryption():
    """Test symmetric encryption round trip"""
    print("Testing encryption...")

    key = generate_room_key()
    for plaintext in ["Hello, World!", "", "héllo wörld 🔐", "x" * 5000]:
        envelope = encrypt_envelope(plaintext, key)
        assert decrypt_envelope(envelope, key) == plaintext, "Decryption failed"
        assert envelope.ciphertext != plaintext, "Ciphertext equals plaintext"
        assert len(base64.b64decode(envelope.iv)) == 12, "Wrong IV length"

    print("✓ Encryption/decryption works")


def test_wrong_key():
    """Decrypting under another key must fail"""
    print("Testing wrong key...")

    envelope = encrypt_envelope("secret", generate_room_key())
    with pytest.raises(DecryptionFailedError):
        decrypt_envelope(envelope, generate_room_key())

    print("✓ Wrong key rejected")


def test_tamper_detection():
    """Flipping any bit of ciphertext or IV must fail authentication"""
    print("Testing tamper detection...")

    key = generate_room_key()
    envelope = encrypt_envelope("attack at dawn", key)
    ciphertext_len = len(base64.b64decode(envelope.ciphertext))

    for index in range(ciphertext_len):
        for bit in (0, 7):
            tampered = EncryptedEnvelope(_flip_bit(envelope.ciphertext, index, bit), envelope.iv)
            with pytest.raises(DecryptionFailedError):
                decrypt_envelope(tampered, key)

    for index in range(12):
        for bit in range(8):
            tampered = EncryptedEnvelope(envelope.ciphertext, _flip_bit(envelope.iv, index, bit))
            with pytest.raises(DecryptionFailedError):
                decrypt_envelope(tampered, key)

    print("✓ Tampering detected")


def test_malformed_envelope():
    """Garbage fields fail with DecryptionFailedError, never another error"""
    print("Testing malformed envelopes...")

    key = generate_room_key()
    good = encrypt_envelope("hi", key)
    short_iv = base64.b64encode(b"\x00" * 8).decode()

    for envelope in [
        EncryptedEnvelope("not-base64!!", good.iv),
        EncryptedEnvelope(good.ciphertext, "not-base64!!"),
        EncryptedEnvelope(good.ciphertext, short_iv),
        EncryptedEnvelope("", good.iv),
        EncryptedEnvelope(good.ciphertext[:8], good.iv),
    ]:
        with pytest.raises(DecryptionFailedError):
            decrypt_envelope(envelope, key)

    print("✓ Malformed envelopes rejected")


def test_iv_uniqueness():
    """Same plaintext and key twice gives different IVs and ciphertexts"""
    print("Testing IV uniqueness...")

    key = generate_room_key()
    first = encrypt_envelope("same message", key)
    second = encrypt_envelope("same message", key)

    assert first.iv != second.iv, "IV reused"
    assert first.ciphertext != second.ciphertext, "Ciphertext repeated"

    ivs = {encrypt_envelope("same message", key).iv for _ in range(200)}
    assert len(ivs) == 200, "IV collision"

    print("✓ IVs are unique")


def test_envelope_dict():
    envelope = encrypt_envelope("hi", generate_room_key())
    assert EncryptedEnvelope.from_dict(envelope.to_dict()) == envelope
    assert set(envelope.to_dict()) == {"ciphertext", "iv"}


def test_key_serialization():
    """Keys survive encode/decode and the public key is SPKI DER"""
    print("Testing key serialization...")

    private_key, public_key = generate_keypair()
    encoded = serialize_public_key(public_key)
    restored = deserialize_public_key(encoded)
    assert serialize_public_key(restored) == encoded

    restored_private = deserialize_private_key(serialize_private_key(private_key))
    assert serialize_public_key(restored_private.public_key()) == encoded

    der = base64.b64decode(encoded)
    assert serialization.load_der_public_key(der).curve.name == "secp256r1"

    print("✓ Key serialization works")


def test_agreement_symmetry():
    """Key derived by A decrypts what B encrypted, and vice versa"""
    print("Testing ECDH agreement...")

    alice_private, alice_public = generate_keypair()
    bob_private, bob_public = generate_keypair()

    alice_key = derive_shared_key(alice_private, serialize_public_key(bob_public))
    bob_key = derive_shared_key(bob_private, serialize_public_key(alice_public))

    assert len(alice_key) == 32, "Wrong shared key length"

    envelope = encrypt_envelope("hello", alice_key)
    assert decrypt_envelope(envelope, bob_key) == "hello", "Bob could not read Alice"

    reply = encrypt_envelope("hi alice", bob_key)
    assert decrypt_envelope(reply, alice_key) == "hi alice", "Alice could not read Bob"

    print("✓ ECDH agreement works")


def test_third_party_cannot_decrypt():
    alice_private, _ = generate_keypair()
    _, bob_public = generate_keypair()
    eve_private, _ = generate_keypair()

    envelope = encrypt_envelope("private", derive_shared_key(alice_private, serialize_public_key(bob_public)))
    eve_key = derive_shared_key(eve_private, serialize_public_key(bob_public))
    with pytest.raises(DecryptionFailedError):
        decrypt_envelope(envelope, eve_key)


def test_invalid_peer_key():
    """Malformed or wrong-curve peer keys raise InvalidPeerKeyError"""
    print("Testing invalid peer keys...")

    my_private, _ = generate_keypair()

    p384 = ec.generate_private_key(ec.SECP384R1()).public_key()
    x25519_public = x25519.X25519PrivateKey.generate().public_key()
    wrong_curve_keys = [
        base64.b64encode(key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )).decode()
        for key in (p384, x25519_public)
    ]

    for bad in ["not-base64!!", "", base64.b64encode(b"\x00" * 65).decode()] + wrong_curve_keys:
        with pytest.raises(InvalidPeerKeyError):
            derive_shared_key(my_private, bad)

    print("✓ Invalid peer keys rejected")


def test_room_key_round_trip():
    """decode(encode(K)) works exactly like K"""
    print("Testing room key codec...")

    key = generate_room_key()
    assert len(key) == 32, "Wrong room key length"

    encoded = encode_room_key(key)
    decoded = decode_room_key(encoded)
    assert decoded == key

    envelope = encrypt_envelope("room message", key)
    assert decrypt_envelope(envelope, decoded) == "room message"

    assert generate_room_key() != key, "Room keys repeat"

    print("✓ Room key codec works")


def test_room_key_malformed():
    for bad in ["not-base64!!", "", base64.b64encode(b"short").decode(),
                base64.b64encode(b"\x00" * 33).decode()]:
        with pytest.raises(InvalidKeyFormatError):
            decode_room_key(bad)


def test_room_link():
    """The key travels only in the fragment and a second session can read it"""
    print("Testing room links...")

    key = generate_room_key()
    link = build_room_link("https://chat.example/", "abc123", key)

    assert link.startswith("https://chat.example/room/abc123#")
    path_and_query = link.split("#", 1)[0]
    assert encode_room_key(key) not in path_and_query

    envelope = encrypt_envelope("see you there", key)
    code, joined_key = parse_room_link(link)
    assert code == "abc123"
    assert decrypt_envelope(envelope, joined_key) == "see you there"

    for bad in [
        "https://chat.example/room/abc123",
        "https://chat.example/room/abc123#not-base64!!",
        "https://chat.example/abc123#" + encode_room_key(key),
        "https://chat.example/room/abc123?k=1#" + encode_room_key(key),
    ]:
        with pytest.raises(InvalidKeyFormatError):
            parse_room_link(bad)

    print("✓ Room links work")


def test_web_client_room_link():
    """Links shared by the web client use /chat/<code>#<key>"""
    key = generate_room_key()
    envelope = encrypt_envelope("from the browser", key)

    code, joined_key = parse_room_link(f"https://chat.example/chat/xyz789#{encode_room_key(key)}")
    assert code == "xyz789"
    assert decrypt_envelope(envelope, joined_key) == "from the browser"

    with pytest.raises(InvalidKeyFormatError):
        parse_room_link(f"https://chat.example/lobby/xyz789#{encode_room_key(key)}")


def run_all_tests():
    """Run all tests"""
    print("\n" + "="*50)
    print("Running Cryptographic Tests")
    print("="*50 + "\n")

    try:
        test_encryption()
        test_wrong_key()
        test_tamper_detection()
        test_malformed_envelope()
        test_iv_uniqueness()
        test_envelope_dict()
        test_key_serialization()
        test_agreement_symmetry()
        test_third_party_cannot_decrypt()
        test_invalid_peer_key()
        test_room_key_round_trip()
        test_room_key_malformed()
        test_room_link()
        test_web_client_room_link()

        print("\n" + "="*50)
        print("✓ All tests passed!")
        print("="*50 + "\n")
        return 0

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
