"""
clipkeeper Crypto -- encryption for history exports and secure file creation.

Exported history lines are encrypted with Fernet (AES-128-CBC + HMAC-SHA256).
The key is a machine-specific secret stored at <CLIPKEEPER_HOME>/.key.

Enabled by default. Disable: CLIPKEEPER_ENCRYPT=0

The key file is created automatically on first use with 0600 permissions.
Losing it means losing access to encrypted exports.
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from clipkeeper.config import clipkeeper_home

logger = logging.getLogger("clipkeeper.crypto")

_PREFIX = "ENC:"

_fernet_instance = None


def _key_path() -> Path:
    """Resolve key file path lazily."""
    return clipkeeper_home() / ".key"


def is_enabled() -> bool:
    """Check if export encryption is enabled (on by default).

    Set CLIPKEEPER_ENCRYPT=0 to explicitly disable.
    """
    val = os.environ.get("CLIPKEEPER_ENCRYPT", "").strip().lower()
    if val in ("0", "false", "no"):
        return False
    return True


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    """Get the Fernet key, creating one if it doesn't exist."""
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A 32-byte raw secret still needs encoding
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    home = clipkeeper_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    # O_EXCL: no window where the key exists with default permissions
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet() -> Fernet:
    """Lazy-load the Fernet instance."""
    global _fernet_instance
    if _fernet_instance is None:
        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt(plaintext: str) -> str:
    """Encrypt a string. Returns prefixed base64 ciphertext.

    If encryption is disabled, returns plaintext unchanged.
    """
    if not is_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return _PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt a string. Handles both encrypted and plaintext inputs.

    Data without the 'ENC:' prefix is returned as-is, so plaintext exports
    stay readable after encryption is switched on.

    Raises ValueError if decryption fails (wrong key or corrupted data).
    """
    if not data.startswith(_PREFIX):
        return data
    try:
        token = data[len(_PREFIX):].encode("ascii")
        return _get_fernet().decrypt(token).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise ValueError(f"Decryption failed: {e!r}") from e


def encrypt_line(line: str) -> str:
    """Encrypt a single JSONL line."""
    if not is_enabled():
        return line
    return encrypt(line)


def decrypt_line(line: str) -> str:
    """Decrypt a single JSONL line. Handles plaintext transparently."""
    return decrypt(line.strip())


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Create a SQLite connection with secure file permissions (0o600).

    Pre-creates the DB file with restricted permissions before connecting,
    and fixes existing files that have overly permissive permissions.
    """
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
