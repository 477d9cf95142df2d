"""
Master key vault.

The BIP39 seed and the wallet tree are encrypted together with AES-256-GCM
under a key derived from the user's password with Argon2id. The decrypted
seed only lives inside an ``UnlockedSession``, in a mutable buffer that is
zeroed when the session closes.
"""

from __future__ import annotations

import atexit
import json
import secrets
import weakref
from pathlib import Path

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger
from pydantic import ValidationError

from hdengine.config import KdfParams
from hdengine.errors import (
    CorruptDataError,
    InvalidMnemonicError,
    WalletIOError,
    WrongPasswordError,
)
from hdengine.wallet.bip32 import HDKey
from hdengine.wallet.mnemonic import generate_mnemonic, mnemonic_to_seed, validate_mnemonic
from hdengine.wallet.models import WalletTree
from hdengine.wallet.storage import NONCE_SIZE, SALT_SIZE, WalletFile, WalletRecord

KEY_SIZE = 32  # AES-256


class SessionClosedError(RuntimeError):
    pass


class MasterSeed:
    """BIP39 seed held in a buffer that can be wiped."""

    def __init__(self, seed: bytes | bytearray, mnemonic: str | None = None):
        self._buffer = bytearray(seed)
        # Only set right after creation so the caller can show it once
        self.mnemonic = mnemonic

    @property
    def wiped(self) -> bool:
        return not self._buffer

    @property
    def value(self) -> bytes:
        if self.wiped:
            raise SessionClosedError("Seed has been wiped")
        return bytes(self._buffer)

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer = bytearray()
        self.mnemonic = None


_open_sessions: weakref.WeakSet[UnlockedSession] = weakref.WeakSet()


class UnlockedSession:
    """
    Decrypted wallet contents. Use as a context manager so the seed is wiped
    on exit; sessions still open at interpreter exit are closed too.
    """

    def __init__(self, seed: MasterSeed, tree: WalletTree):
        self.seed = seed
        self.tree = tree
        self._closed = False
        _open_sessions.add(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def master_key(self, testnet: bool = False) -> HDKey:
        if self._closed:
            raise SessionClosedError("Session is closed")
        return HDKey.from_seed(self.seed.value, testnet=testnet)

    def derive(self, path: str, testnet: bool = False) -> HDKey:
        return self.master_key(testnet).derive(path)

    def close(self) -> None:
        if not self._closed:
            self.seed.wipe()
            self._closed = True
            _open_sessions.discard(self)

    def __enter__(self) -> UnlockedSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@atexit.register
def _close_open_sessions() -> None:
    for session in list(_open_sessions):
        session.close()


def derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    """Derive the 32-byte encryption key from the password with Argon2id."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


class MasterKeyVault:
    """Creates, unlocks and re-encrypts the wallet file."""

    def __init__(self, path: Path, kdf: KdfParams | None = None):
        self.file = WalletFile(path)
        self.kdf = kdf or KdfParams()

    @property
    def path(self) -> Path:
        return self.file.path

    def exists(self) -> bool:
        return self.file.exists()

    def create(
        self,
        password: str,
        mnemonic: str | None = None,
        passphrase: str = "",
    ) -> UnlockedSession:
        """
        Create a new wallet file, replacing any existing one.

        Args:
            password: Encryption password
            mnemonic: Existing BIP39 mnemonic to restore; a new 24-word one is
                generated when omitted
            passphrase: Optional BIP39 passphrase

        Returns:
            Unlocked session; ``session.seed.mnemonic`` holds the phrase
        """
        if mnemonic is None:
            mnemonic = generate_mnemonic()
        elif not validate_mnemonic(mnemonic):
            raise InvalidMnemonicError("Invalid BIP39 mnemonic")

        seed = MasterSeed(mnemonic_to_seed(mnemonic, passphrase), mnemonic=mnemonic)
        session = UnlockedSession(seed, WalletTree())
        self.save(session, password)
        logger.info(f"Created new wallet at {self.path}")
        return session

    def unlock(self, password: str) -> UnlockedSession:
        if not self.exists():
            raise WalletIOError(f"Wallet file not found: {self.path}")

        record = self.file.read()
        try:
            key = derive_key(password, record.salt, record.kdf)
        except HashingError as e:
            raise CorruptDataError(f"Unusable KDF parameters in header: {e}") from e
        try:
            plaintext = AESGCM(key).decrypt(record.nonce, record.ciphertext, record.header)
        except InvalidTag as e:
            raise WrongPasswordError("Wrong password or tampered wallet file") from e

        seed, tree = self._decode_payload(plaintext)
        logger.info("Wallet unlocked")
        return UnlockedSession(seed, tree)

    def save(self, session: UnlockedSession, password: str) -> None:
        """Encrypt the session's seed and tree under a fresh salt and nonce."""
        salt = secrets.token_bytes(SALT_SIZE)
        nonce = secrets.token_bytes(NONCE_SIZE)
        key = derive_key(password, salt, self.kdf)

        payload = json.dumps(
            {"seed": session.seed.value.hex(), "tree": session.tree.model_dump(mode="json")}
        ).encode("utf-8")

        record = WalletRecord(kdf=self.kdf, salt=salt, nonce=nonce, ciphertext=b"")
        ciphertext = AESGCM(key).encrypt(nonce, payload, record.header)
        self.file.write(WalletRecord(kdf=self.kdf, salt=salt, nonce=nonce, ciphertext=ciphertext))

    def change_password(self, old_password: str, new_password: str) -> None:
        with self.unlock(old_password) as session:
            self.save(session, new_password)
        logger.info("Wallet password changed")

    @staticmethod
    def _decode_payload(plaintext: bytes) -> tuple[MasterSeed, WalletTree]:
        try:
            payload = json.loads(plaintext)
            seed = MasterSeed(bytearray.fromhex(payload["seed"]))
            tree = WalletTree.model_validate(payload["tree"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise CorruptDataError(f"Malformed wallet payload: {e}") from e
        return seed, tree
