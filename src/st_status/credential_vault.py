"""
Credential Vault for the status poller.

Encrypts OAuth credentials and tokens at rest with AES-256-GCM. Two
on-disk generations are understood, told apart by the envelope's
version field:

- version 1: key derived from client id + client secret with
  PBKDF2-HMAC-SHA512 and a static salt; the payload holds only tokens
  and the client credentials live in plaintext configuration.
- version 2: a random 256-bit key lives in its own owner-only key file
  and the payload carries the client credentials as well.

Ciphertext layout (base64): nonce (16 bytes) + tag (16 bytes) + data.
"""

import base64
import binascii
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import OAuthConfig, PersistenceConfig
from .enums import LogLevel, VaultVersion
from .exceptions import PersistenceError, VaultKeyError
from .models import CredentialRecord, EncryptedEnvelope

KEY_LENGTH = 32  # 256 bits
NONCE_LENGTH = 16  # 128 bits
TAG_LENGTH = 16

LEGACY_SALT = b"MMM-STStatus-OAuth-v1"
LEGACY_ITERATIONS = 100_000

OWNER_ONLY = 0o600


def generate_key() -> bytes:
    """Generate a new random 256-bit key."""
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)


def derive_legacy_key(client_id: str, client_secret: str) -> bytes:
    """Derive the version 1 key from the OAuth client credentials."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=LEGACY_SALT,
        iterations=LEGACY_ITERATIONS,
    )
    return kdf.derive(f"{client_id}:{client_secret}".encode("utf-8"))


def encrypt(payload: dict[str, Any], key: bytes) -> str:
    """
    Encrypt a JSON-serializable payload.

    A fresh random nonce is drawn for every call.
    """
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(key).encrypt(nonce, json.dumps(payload).encode("utf-8"), None)
    # cryptography appends the tag; store it up front next to the nonce
    data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(nonce + tag + data).decode("ascii")


def decrypt(ciphertext: str, key: bytes) -> Optional[dict[str, Any]]:
    """
    Decrypt and verify a payload.

    Returns:
        The payload dict, or None on tampering, corruption, a wrong key or
        a malformed envelope. Never raises.
    """
    try:
        raw = base64.b64decode(ciphertext, validate=True)
        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            return None
        nonce = raw[:NONCE_LENGTH]
        tag = raw[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        data = raw[NONCE_LENGTH + TAG_LENGTH:]
        plain = AESGCM(key).decrypt(nonce, data + tag, None)
        payload = json.loads(plain.decode("utf-8"))
    except (InvalidTag, ValueError, TypeError, binascii.Error, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


class CredentialVault:
    """
    File-backed store for the encrypted Credential Record.

    Owns the key file lifecycle: the key is created once, written with
    owner-only permissions and never regenerated over an existing file.
    """

    def __init__(
        self,
        persistence: PersistenceConfig,
        logger: Optional[object] = None,
    ) -> None:
        self._key_file = persistence.key_file
        self._data_file = persistence.data_file
        self._legacy_file = persistence.legacy_token_file
        self._logger = logger

    @property
    def data_file(self) -> Path:
        return self._data_file

    @property
    def key_file(self) -> Path:
        return self._key_file

    def exists(self) -> bool:
        """True if any generation of encrypted credentials is on disk."""
        return self._data_file.exists() or self._legacy_file.exists()

    def load_key(self) -> Optional[bytes]:
        """
        Read the key file.

        Returns:
            The key, or None if no key file exists

        Raises:
            VaultKeyError: If the key file is unreadable or has the wrong length
        """
        if not self._key_file.exists():
            return None
        try:
            key = self._key_file.read_bytes()
        except OSError as e:
            raise VaultKeyError(
                code="key_unreadable",
                message=f"Failed to read key file: {e}",
                details={"key_file": str(self._key_file)},
            ) from e
        if len(key) != KEY_LENGTH:
            raise VaultKeyError(
                code="key_invalid_length",
                message="Key file has an invalid length; refusing to replace it",
                details={"key_file": str(self._key_file), "length": len(key)},
            )
        return key

    def load_or_create_key(self) -> bytes:
        """
        Return the existing key, creating one only when no key file exists.

        Raises:
            VaultKeyError: If an existing key file is unusable
            PersistenceError: If a new key cannot be written
        """
        key = self.load_key()
        if key is not None:
            return key

        key = generate_key()
        try:
            self._key_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, OWNER_ONLY)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            os.chmod(self._key_file, OWNER_ONLY)
        except FileExistsError as e:
            # Created concurrently; never overwrite it
            raise VaultKeyError(
                code="key_race",
                message="Key file appeared while creating it",
                details={"key_file": str(self._key_file)},
            ) from e
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write key file: {e}",
                details={"key_file": str(self._key_file)},
            ) from e

        self._log(LogLevel.INFO, "Generated new encryption key", {"key_file": str(self._key_file)})
        return key

    def save(self, record: CredentialRecord) -> None:
        """
        Encrypt and persist a Credential Record in the current generation.

        Raises:
            VaultKeyError: If the key file is unusable
            PersistenceError: If the data file cannot be written
        """
        key = self.load_or_create_key()
        envelope = EncryptedEnvelope(
            version=VaultVersion.STORED_KEY.value,
            ciphertext=encrypt(record.to_payload(), key),
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        self._write_owner_only(self._data_file, json.dumps(envelope.to_dict(), indent=2))
        self._log(LogLevel.DEBUG, "Credentials saved", {"data_file": str(self._data_file)})

    def load(self, oauth: Optional[OAuthConfig] = None) -> Optional[CredentialRecord]:
        """
        Load the Credential Record.

        The current-generation data file is tried first, then the legacy
        token file. Each envelope is opened according to its version field.

        Args:
            oauth: Client credentials from configuration, needed for version 1

        Returns:
            The record, or None if credentials are absent or unusable

        Raises:
            VaultKeyError: If the key file exists but is unusable
        """
        for path in (self._data_file, self._legacy_file):
            envelope = self._read_envelope(path)
            if envelope is None:
                continue
            record = self._open(envelope, oauth, path)
            if record is not None:
                return record
        return None

    def _open(
        self,
        envelope: EncryptedEnvelope,
        oauth: Optional[OAuthConfig],
        path: Path,
    ) -> Optional[CredentialRecord]:
        if envelope.version == VaultVersion.STORED_KEY.value:
            key = self.load_key()
            if key is None:
                self._log(LogLevel.ERROR, "Data file exists but key file is missing", {
                    "data_file": str(path),
                })
                return None
            payload = decrypt(envelope.ciphertext, key)
            if payload is None:
                self._log(LogLevel.ERROR, "Decryption failed", {"data_file": str(path)})
                return None
            return CredentialRecord.from_payload(payload)

        if envelope.version == VaultVersion.DERIVED_KEY.value:
            if oauth is None:
                self._log(LogLevel.WARN, "Legacy token file needs clientId/clientSecret", {
                    "data_file": str(path),
                })
                return None
            payload = decrypt(envelope.ciphertext, derive_legacy_key(oauth.client_id, oauth.client_secret))
            if payload is None:
                self._log(LogLevel.ERROR, "Decryption failed", {"data_file": str(path)})
                return None
            record = CredentialRecord.from_payload(payload)
            record.client_id = record.client_id or oauth.client_id
            record.client_secret = record.client_secret or oauth.client_secret
            return record

        self._log(LogLevel.ERROR, "Unsupported credential file version", {
            "data_file": str(path),
            "version": envelope.version,
        })
        return None

    def _read_envelope(self, path: Path) -> Optional[EncryptedEnvelope]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._log(LogLevel.ERROR, "Unreadable credential file", {
                "data_file": str(path),
                "error_message": str(e),
            })
            return None
        envelope = EncryptedEnvelope.from_dict(data)
        if envelope is None:
            self._log(LogLevel.ERROR, "Malformed credential envelope", {"data_file": str(path)})
        return envelope

    def _write_owner_only(self, path: Path, content: str) -> None:
        # The target is only ever replaced whole
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, OWNER_ONLY)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(tmp, OWNER_ONLY)
            os.replace(tmp, path)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write credential file: {e}",
                details={"data_file": str(path)},
            ) from e

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "CredentialVault", message, data)
