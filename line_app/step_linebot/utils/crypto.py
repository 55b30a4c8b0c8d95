import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from django.conf import settings

from step_linebot.utils.errors import CredentialError

PREFIX = "enc:"
NONCE_SIZE = 12


def _derive_key(owner_id) -> bytes:
    secret = settings.MAIN_CONFIG["CREDENTIAL_SECRET"]
    return hashlib.sha256(f"{secret}:{owner_id}".encode("utf-8")).digest()


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def encrypt_credential(owner_id, value: str) -> str:
    """
    "enc:" + base64(nonce(12byte) + 暗号文 + タグ) の形式で返す
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(owner_id)).encrypt(nonce, value.encode("utf-8"), None)
    return PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_credential(owner_id, value: str) -> str:
    # 暗号化前に保存された値はそのまま返す
    if not is_encrypted(value):
        return value or ""

    try:
        combined = base64.b64decode(value[len(PREFIX):])
    except ValueError as e:
        raise CredentialError("Invalid encrypted value format") from e
    if len(combined) <= NONCE_SIZE:
        raise CredentialError("Invalid encrypted value format")

    nonce, ciphertext = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
    try:
        plain = AESGCM(_derive_key(owner_id)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise CredentialError("Decryption failed") from e
    return plain.decode("utf-8")
