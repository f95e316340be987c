"""Ciphertext-only chat server and public key directory."""
