"""
Durable JSON records for local state.

Each record is written to a temporary file in the same directory, fsynced
and moved into place with `os.replace`, so a crash never leaves a
half-written record behind.

Records that carry note secrets are sealed with AES-256-GCM under a key
derived from the store passphrase (PBKDF2-HMAC-SHA256). The envelope keeps
its own salt and nonce:

    {"version": 1, "cipher": "AES-256-GCM", "kdf": "PBKDF2-SHA256",
     "iterations": 200000, "salt": <b64>, "nonce": <b64>, "ciphertext": <b64>}
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shieldpool.errors import StoreDecryptionError

logger = logging.getLogger("shieldpool.storage")

CIPHER_NAME = "AES-256-GCM"
KDF_NAME = "PBKDF2-SHA256"
DEFAULT_KDF_ITERATIONS = 200_000
SALT_SIZE = 16
NONCE_SIZE = 12


class RecordCipher:
    """
    Seals JSON documents for storage.

    The key is derived once per salt. A cipher adopts the salt of the first
    envelope it opens, so reopening a store costs a single derivation.

    Usage:
        cipher = RecordCipher("correct horse battery staple")
        envelope = cipher.seal({"notes": [...]})
        data = cipher.open(envelope)
    """

    def __init__(self, passphrase: str | bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> None:
        if not passphrase:
            raise ValueError("Store passphrase must not be empty")
        self._passphrase = passphrase.encode("utf-8") if isinstance(passphrase, str) else passphrase
        self.iterations = iterations
        self._salt: bytes | None = None
        self._keys: dict[tuple[bytes, int], AESGCM] = {}
        self._lock = threading.Lock()

    def seal(self, data: Any) -> dict[str, Any]:
        plaintext = json.dumps(data, sort_keys=True).encode("utf-8")
        with self._lock:
            if self._salt is None:
                self._salt = os.urandom(SALT_SIZE)
            salt = self._salt
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead(salt, self.iterations).encrypt(nonce, plaintext, CIPHER_NAME.encode())
        return {
            "version": 1,
            "cipher": CIPHER_NAME,
            "kdf": KDF_NAME,
            "iterations": self.iterations,
            "salt": _b64(salt),
            "nonce": _b64(nonce),
            "ciphertext": _b64(ciphertext),
        }

    def open(self, envelope: dict[str, Any]) -> Any:
        """
        Raises:
            StoreDecryptionError: Wrong passphrase, or the record was tampered with.
        """
        if envelope.get("cipher") != CIPHER_NAME or envelope.get("kdf") != KDF_NAME:
            raise StoreDecryptionError(
                f"Unsupported record envelope: {envelope.get('cipher')}/{envelope.get('kdf')}"
            )
        try:
            salt = base64.b64decode(envelope["salt"])
            nonce = base64.b64decode(envelope["nonce"])
            ciphertext = base64.b64decode(envelope["ciphertext"])
            iterations = int(envelope["iterations"])
        except (KeyError, ValueError) as e:
            raise StoreDecryptionError(f"Malformed record envelope: {e}") from e
        try:
            plaintext = self._aead(salt, iterations).decrypt(nonce, ciphertext, CIPHER_NAME.encode())
        except InvalidTag:
            raise StoreDecryptionError("Record authentication failed (wrong passphrase?)") from None
        with self._lock:
            if self._salt is None:
                self._salt = salt
        return json.loads(plaintext)

    def _aead(self, salt: bytes, iterations: int) -> AESGCM:
        with self._lock:
            aead = self._keys.get((salt, iterations))
            if aead is None:
                kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
                aead = AESGCM(kdf.derive(self._passphrase))
                self._keys[(salt, iterations)] = aead
            return aead


def is_sealed(data: Any) -> bool:
    return isinstance(data, dict) and "ciphertext" in data and "nonce" in data


def atomic_write_json(path: str | Path, data: Any, cipher: RecordCipher | None = None) -> None:
    """Write `data` as JSON to `path` atomically, sealed when `cipher` is given."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document = cipher.seal(data) if cipher is not None else data
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=1, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_json(path: str | Path, default: Any = None, cipher: RecordCipher | None = None) -> Any:
    """
    Read a JSON record, returning `default` when it does not exist yet.

    A sealed record needs `cipher`. A plaintext record read with a cipher is
    accepted and gets sealed on its next write.

    Raises:
        StoreDecryptionError: If the record is sealed and cannot be opened.
    """
    path = Path(path)
    if not path.exists():
        return default
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    if is_sealed(document):
        if cipher is None:
            raise StoreDecryptionError(f"{path} is encrypted and no store passphrase was given")
        return cipher.open(document)
    if cipher is not None:
        logger.warning(f"{path} is stored in plaintext; it will be encrypted on the next write")
    return document


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")
