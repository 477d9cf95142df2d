"""
Tests for the encrypted master key vault and wallet file.
"""

import os
import stat
from unittest.mock import patch

import pytest
from argon2.exceptions import HashingError
from pydantic import ValidationError

from hdengine.config import KdfParams
from hdengine.errors import (
    CorruptDataError,
    InvalidMnemonicError,
    WalletIOError,
    WrongPasswordError,
)
from hdengine.wallet.mnemonic import mnemonic_to_seed
from hdengine.wallet.storage import HEADER_SIZE, MAGIC, WalletFile, WalletRecord
from hdengine.wallet.vault import MasterKeyVault, MasterSeed, SessionClosedError, derive_key


@pytest.fixture
def vault(wallet_path, fast_kdf):
    return MasterKeyVault(wallet_path, fast_kdf)


class TestCreateAndUnlock:
    def test_roundtrip(self, vault, sample_mnemonic):
        with vault.create("hunter2", sample_mnemonic) as session:
            created_seed = session.seed.value

        with vault.unlock("hunter2") as session:
            assert session.seed.value == created_seed
            assert session.seed.value == mnemonic_to_seed(sample_mnemonic)
            assert set(session.tree.coin_types) == {0, 1}
            assert session.tree.coin_types[1].name == "Bitcoin Testnet"

    def test_passphrase_changes_seed(self, vault, sample_mnemonic):
        with vault.create("pw", sample_mnemonic, passphrase="TREZOR") as session:
            assert session.seed.value == mnemonic_to_seed(sample_mnemonic, "TREZOR")

    def test_generates_mnemonic_when_missing(self, vault):
        session = vault.create("pw")
        assert len(session.seed.mnemonic.split()) == 24
        session.close()
        assert session.seed.mnemonic is None

    def test_invalid_mnemonic_rejected(self, vault):
        with pytest.raises(InvalidMnemonicError):
            vault.create("pw", " ".join(["abandon"] * 12))
        assert not vault.exists()

    def test_wrong_password(self, vault, sample_mnemonic):
        vault.create("right", sample_mnemonic).close()
        with pytest.raises(WrongPasswordError):
            vault.unlock("wrong")

    def test_missing_file(self, vault):
        assert not vault.exists()
        with pytest.raises(WalletIOError):
            vault.unlock("pw")

    def test_fresh_salt_and_nonce_per_save(self, vault, sample_mnemonic):
        session = vault.create("pw", sample_mnemonic)
        first = vault.file.read()
        vault.save(session, "pw")
        second = vault.file.read()
        session.close()
        assert first.salt != second.salt
        assert first.nonce != second.nonce

    def test_seed_not_stored_in_clear(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = wallet_path.read_bytes()
        seed = mnemonic_to_seed(sample_mnemonic)
        assert seed not in data
        assert seed.hex().encode() not in data
        assert b"abandon" not in data

    @pytest.mark.skipif(os.name != "posix", reason="Unix permissions")
    def test_owner_only_permissions(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        assert stat.S_IMODE(wallet_path.stat().st_mode) == 0o600

    def test_tree_changes_persist(self, vault, sample_mnemonic):
        with vault.create("pw", sample_mnemonic) as session:
            session.tree.coin_types[0].name = "Renamed"
            vault.save(session, "pw")
        with vault.unlock("pw") as session:
            assert session.tree.coin_types[0].name == "Renamed"


class TestChangePassword:
    def test_old_password_stops_working(self, vault, sample_mnemonic):
        vault.create("old", sample_mnemonic).close()
        vault.change_password("old", "new")

        with pytest.raises(WrongPasswordError):
            vault.unlock("old")
        with vault.unlock("new") as session:
            assert session.seed.value == mnemonic_to_seed(sample_mnemonic)

    def test_wrong_old_password(self, vault, sample_mnemonic):
        vault.create("old", sample_mnemonic).close()
        with pytest.raises(WrongPasswordError):
            vault.change_password("nope", "new")


class TestTampering:
    def test_flipped_ciphertext_byte(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = bytearray(wallet_path.read_bytes())
        data[HEADER_SIZE + 3] ^= 0x01
        wallet_path.write_bytes(bytes(data))
        with pytest.raises(WrongPasswordError):
            vault.unlock("pw")

    def test_header_is_authenticated(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = bytearray(wallet_path.read_bytes())
        # Last byte of the salt
        data[HEADER_SIZE - 13] ^= 0x01
        wallet_path.write_bytes(bytes(data))
        with pytest.raises(WrongPasswordError):
            vault.unlock("pw")

    def test_bad_magic(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = wallet_path.read_bytes()
        wallet_path.write_bytes(b"XXXX" + data[4:])
        with pytest.raises(CorruptDataError):
            vault.unlock("pw")

    def test_truncated(self, vault, wallet_path):
        wallet_path.write_bytes(MAGIC + b"\x01\x00")
        with pytest.raises(CorruptDataError):
            vault.unlock("pw")

    def test_unsupported_version(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = bytearray(wallet_path.read_bytes())
        data[4] = 99
        wallet_path.write_bytes(bytes(data))
        with pytest.raises(CorruptDataError, match="version"):
            vault.unlock("pw")

    def test_too_many_lanes_for_memory(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = bytearray(wallet_path.read_bytes())
        # Parallelism; the file was written with 8 KiB of memory
        data[13] = 5
        wallet_path.write_bytes(bytes(data))
        with pytest.raises(CorruptDataError, match="KDF"):
            vault.unlock("pw")

    def test_oversized_memory_cost(self, vault, sample_mnemonic, wallet_path):
        vault.create("pw", sample_mnemonic).close()
        data = bytearray(wallet_path.read_bytes())
        # High byte of the memory cost
        data[9] |= 0x80
        wallet_path.write_bytes(bytes(data))
        with pytest.raises(CorruptDataError, match="KDF"):
            vault.unlock("pw")

    def test_argon2_failure_is_corrupt_data(self, vault, sample_mnemonic):
        vault.create("pw", sample_mnemonic).close()
        with patch(
            "hdengine.wallet.vault.hash_secret_raw", side_effect=HashingError("bad params")
        ):
            with pytest.raises(CorruptDataError):
                vault.unlock("pw")

    def test_malformed_payload(self, vault, wallet_path, fast_kdf):
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        salt, nonce = b"s" * 16, b"n" * 12
        record = WalletRecord(kdf=fast_kdf, salt=salt, nonce=nonce, ciphertext=b"")
        key = derive_key("pw", salt, fast_kdf)
        ciphertext = AESGCM(key).encrypt(nonce, b"not json", record.header)
        WalletFile(wallet_path).write(
            WalletRecord(kdf=fast_kdf, salt=salt, nonce=nonce, ciphertext=ciphertext)
        )
        with pytest.raises(CorruptDataError):
            vault.unlock("pw")


class TestKdfParameters:
    def test_params_recorded_in_header(self, wallet_path, fast_kdf, sample_mnemonic):
        MasterKeyVault(wallet_path, fast_kdf).create("pw", sample_mnemonic).close()
        assert WalletFile(wallet_path).read().kdf == fast_kdf

    def test_file_readable_after_default_change(self, wallet_path, fast_kdf, sample_mnemonic):
        MasterKeyVault(wallet_path, fast_kdf).create("pw", sample_mnemonic).close()
        other_params = fast_kdf.model_copy(update={"time_cost": 2})
        with MasterKeyVault(wallet_path, other_params).unlock("pw") as session:
            assert session.seed.value == mnemonic_to_seed(sample_mnemonic)

    def test_memory_below_lane_minimum_rejected(self):
        with pytest.raises(ValidationError):
            KdfParams(time_cost=1, memory_cost=16, parallelism=4)
        assert KdfParams(time_cost=1, memory_cost=32, parallelism=4).memory_cost == 32

    def test_upper_bounds(self):
        with pytest.raises(ValidationError):
            KdfParams(memory_cost=2**31)
        with pytest.raises(ValidationError):
            KdfParams(time_cost=1_000)

    def test_key_depends_on_salt(self, fast_kdf):
        assert derive_key("pw", b"a" * 16, fast_kdf) != derive_key("pw", b"b" * 16, fast_kdf)
        assert len(derive_key("pw", b"a" * 16, fast_kdf)) == 32


class TestSession:
    def test_close_wipes_seed(self, vault, sample_mnemonic):
        session = vault.create("pw", sample_mnemonic)
        buffer = session.seed._buffer
        session.close()
        assert session.closed
        assert session.seed.wiped
        assert all(b == 0 for b in buffer)
        with pytest.raises(SessionClosedError):
            session.master_key()

    def test_context_manager_closes_on_error(self, vault, sample_mnemonic):
        session = vault.create("pw", sample_mnemonic)
        with pytest.raises(RuntimeError, match="boom"):
            with session:
                raise RuntimeError("boom")
        assert session.closed

    def test_master_seed_wipe(self):
        seed = MasterSeed(b"\x01" * 64)
        seed.wipe()
        with pytest.raises(SessionClosedError):
            _ = seed.value
