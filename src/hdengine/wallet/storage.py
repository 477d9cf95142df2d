"""
Encrypted wallet file persistence.

File layout (all integers big-endian):

    magic "HDWE" | version u8 | t_cost u32 | m_cost u32 | parallelism u8
    | salt (16) | nonce (12) | ciphertext || tag (16)

Everything before the ciphertext is the header; it is authenticated as
AES-GCM associated data by the vault.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from hdengine.config import KdfParams
from hdengine.errors import CorruptDataError, WalletIOError

MAGIC = b"HDWE"
FORMAT_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16

_HEADER = struct.Struct(">4sBIIB")
HEADER_SIZE = _HEADER.size + SALT_SIZE + NONCE_SIZE

SECURE_FILE_MODE = 0o600


@dataclass(frozen=True)
class WalletRecord:
    kdf: KdfParams
    salt: bytes
    nonce: bytes
    ciphertext: bytes  # includes the 16-byte GCM tag

    @property
    def header(self) -> bytes:
        return (
            _HEADER.pack(
                MAGIC,
                FORMAT_VERSION,
                self.kdf.time_cost,
                self.kdf.memory_cost,
                self.kdf.parallelism,
            )
            + self.salt
            + self.nonce
        )

    def encode(self) -> bytes:
        return self.header + self.ciphertext

    @classmethod
    def decode(cls, data: bytes) -> WalletRecord:
        if len(data) < HEADER_SIZE + TAG_SIZE:
            raise CorruptDataError(f"Wallet file truncated ({len(data)} bytes)")

        magic, version, t_cost, m_cost, parallelism = _HEADER.unpack_from(data)
        if magic != MAGIC:
            raise CorruptDataError("Not a wallet file (bad magic)")
        if version != FORMAT_VERSION:
            raise CorruptDataError(f"Unsupported wallet file version: {version}")

        try:
            kdf = KdfParams(time_cost=t_cost, memory_cost=m_cost, parallelism=parallelism)
        except ValueError as e:
            raise CorruptDataError(f"Invalid KDF parameters in header: {e}") from e

        offset = _HEADER.size
        salt = data[offset : offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce = data[offset : offset + NONCE_SIZE]
        offset += NONCE_SIZE

        return cls(kdf=kdf, salt=salt, nonce=nonce, ciphertext=data[offset:])


class WalletFile:
    """Reads and atomically replaces the wallet file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> WalletRecord:
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise WalletIOError(f"Cannot read wallet file {self.path}: {e}") from e
        return WalletRecord.decode(data)

    def write(self, record: WalletRecord) -> None:
        """Write to a temp file, fsync, then rename over the old file."""
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECURE_FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(record.encode())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise WalletIOError(f"Cannot write wallet file {self.path}: {e}") from e

        if os.name == "posix":
            os.chmod(self.path, SECURE_FILE_MODE)
        logger.debug(f"Wallet file written: {self.path}")
