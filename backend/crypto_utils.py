"""Encryption at rest for the stored Zoho OAuth tokens, using Fernet.

    from crypto_utils import encrypt_value, decrypt_value

    row["refresh_token"] = encrypt_value(refresh_token)   # before INSERT/UPDATE
    refresh_token = decrypt_value(row["refresh_token"])   # after SELECT

ENCRYPTION_KEY must be a Fernet key (python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())").
Without it, values pass through unchanged (development only).
"""
import os
import logging
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)


def _load_fernet(key: str) -> Optional[Fernet]:
    if not key:
        logger.warning("ENCRYPTION_KEY not set, Zoho tokens will be stored unencrypted")
        return None
    try:
        return Fernet(key.encode())
    except (ValueError, TypeError) as e:
        raise RuntimeError(f"ENCRYPTION_KEY is set but is not a valid Fernet key: {e}")


_fernet = _load_fernet((os.environ.get('ENCRYPTION_KEY') or '').strip())


def encrypt_value(plaintext: str) -> str:
    """Encrypt a token. Returns it unchanged when no key is configured."""
    if not _fernet or not plaintext:
        return plaintext
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a token. Rows written before a key was configured are returned as-is."""
    if not _fernet or not ciphertext:
        return ciphertext
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.warning("Stored token is not Fernet-encrypted, using raw value")
        return ciphertext
