"""Sealing and opening offline sync payloads."""

import base64
import json

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from conftest import SYNC_KEY
from fleetcore.crypto import NONCE_SIZE, decrypt_payload, encrypt_payload
from fleetcore.exceptions import SyncDecryptionError, ValidationError


def _seal_raw(plaintext: bytes, key_hex: str = SYNC_KEY) -> tuple[str, str]:
    nonce = b"\x01" * NONCE_SIZE
    ciphertext = AESGCM(bytes.fromhex(key_hex)).encrypt(nonce, plaintext, None)
    return base64.b64encode(ciphertext).decode(), base64.b64encode(nonce).decode()


def test_opens_what_a_device_sealed():
    body = {"events": [{"event_id": "e-1"}], "points": []}
    payload, iv = encrypt_payload(body, SYNC_KEY)

    assert decrypt_payload(payload, iv, SYNC_KEY) == body
    assert len(base64.b64decode(iv)) == NONCE_SIZE


def test_fresh_nonce_per_payload():
    first = encrypt_payload({"events": []}, SYNC_KEY)
    second = encrypt_payload({"events": []}, SYNC_KEY)
    assert first[1] != second[1]


def test_wrong_key_is_rejected():
    payload, iv = encrypt_payload({"events": []}, "a1" * 32)
    with pytest.raises(SyncDecryptionError, match="authentication"):
        decrypt_payload(payload, iv, SYNC_KEY)


def test_tampered_ciphertext_is_rejected():
    payload, iv = encrypt_payload({"events": []}, SYNC_KEY)
    raw = bytearray(base64.b64decode(payload))
    raw[0] ^= 0xFF
    with pytest.raises(SyncDecryptionError):
        decrypt_payload(base64.b64encode(bytes(raw)).decode(), iv, SYNC_KEY)


def test_decryption_errors_are_validation_errors():
    with pytest.raises(ValidationError) as exc_info:
        decrypt_payload("not base64!!", base64.b64encode(b"\x00" * NONCE_SIZE).decode(), SYNC_KEY)
    assert exc_info.value.code == "decryption_failed"


def test_nonce_length_is_checked():
    payload, _ = encrypt_payload({"events": []}, SYNC_KEY)
    with pytest.raises(SyncDecryptionError, match="IV must be"):
        decrypt_payload(payload, base64.b64encode(b"\x00" * 8).decode(), SYNC_KEY)


@pytest.mark.parametrize("key", [None, "", "xyz", "abcd"])
def test_bad_keys(key):
    with pytest.raises(SyncDecryptionError) as exc_info:
        encrypt_payload({"events": []}, key)
    assert exc_info.value.code in ("sync_key_missing", "sync_key_invalid")


def test_plaintext_must_be_a_json_object():
    payload, iv = _seal_raw(json.dumps([1, 2, 3]).encode())
    with pytest.raises(SyncDecryptionError, match="JSON object"):
        decrypt_payload(payload, iv, SYNC_KEY)

    payload, iv = _seal_raw(b"\xff\xfe not json")
    with pytest.raises(SyncDecryptionError, match="not valid JSON"):
        decrypt_payload(payload, iv, SYNC_KEY)
