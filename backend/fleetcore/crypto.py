"""AES-GCM sealing for offline sync batches.

Devices encrypt a JSON batch with the shared sync key before queueing it;
the reconciler opens it here. Ciphertext and nonce travel base64-encoded.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fleetcore.exceptions import SyncDecryptionError

NONCE_SIZE = 12


def _parse_hex_key(value: str | None) -> bytes:
    if not value:
        raise SyncDecryptionError("Sync encryption key is not configured", code="sync_key_missing")
    text = value.strip()
    if text.startswith("0x") or text.startswith("0X"):
        text = text[2:]
    try:
        key = bytes.fromhex(text)
    except ValueError as exc:
        raise SyncDecryptionError("Sync encryption key must be hex-encoded", code="sync_key_invalid") from exc
    if len(key) not in (16, 24, 32):
        raise SyncDecryptionError(
            f"Sync encryption key must be 16, 24 or 32 bytes (got {len(key)})",
            code="sync_key_invalid",
        )
    return key


def _b64decode(value: str, *, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SyncDecryptionError(f"{name} is not valid base64") from exc


def encrypt_payload(data: dict[str, Any], key_hex: str | None) -> tuple[str, str]:
    """Seal a batch as a device would.

    Returns
    -------
    tuple[str, str]
        Base64 ciphertext (with GCM tag) and base64 nonce.
    """
    key = _parse_hex_key(key_hex)
    nonce = os.urandom(NONCE_SIZE)
    plaintext = json.dumps(data, default=str).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return base64.b64encode(ciphertext).decode("ascii"), base64.b64encode(nonce).decode("ascii")


def decrypt_payload(payload_b64: str, iv_b64: str, key_hex: str | None) -> dict[str, Any]:
    """Open a sealed batch and decode its JSON body.

    Raises
    ------
    SyncDecryptionError
        Bad key, tampered ciphertext, wrong nonce or non-JSON plaintext.
    """
    key = _parse_hex_key(key_hex)
    ciphertext = _b64decode(payload_b64, name="Payload")
    nonce = _b64decode(iv_b64, name="IV")
    if len(nonce) != NONCE_SIZE:
        raise SyncDecryptionError(f"IV must be {NONCE_SIZE} bytes (got {len(nonce)})")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise SyncDecryptionError("Payload failed authentication") from exc

    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SyncDecryptionError("Decrypted payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise SyncDecryptionError("Decrypted payload must be a JSON object")
    return data
