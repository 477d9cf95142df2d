"""
BIP32 HD key derivation.

Supports private (hardened and normal) and public-only child derivation and
the Base58Check extended key serialization (xprv/xpub, tprv/tpub).
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PrivateKey, PublicKey

from hdengine.constants import HARDENED_OFFSET

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

MAINNET_PRIVATE = bytes.fromhex("0488ade4")
MAINNET_PUBLIC = bytes.fromhex("0488b21e")
TESTNET_PRIVATE = bytes.fromhex("04358394")
TESTNET_PUBLIC = bytes.fromhex("043587cf")


class KeyDerivationError(ValueError):
    pass


def _hash160(data: bytes) -> bytes:
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def parse_path(path: str) -> list[int]:
    """
    Parse path notation (e.g. "m/44'/0'/0'/0/0") into child indices.
    ' or h marks hardened derivation.
    """
    if not path.startswith("m"):
        raise KeyDerivationError("Path must start with 'm'")

    indices = []
    for part in path.split("/")[1:]:
        if not part:
            continue

        hardened = part.endswith("'") or part.endswith("h")
        index_str = part.rstrip("'h")
        if not index_str.isdigit():
            raise KeyDerivationError(f"Invalid path segment: {part}")
        index = int(index_str)
        if index >= HARDENED_OFFSET:
            raise KeyDerivationError(f"Path index out of range: {part}")

        if hardened:
            index += HARDENED_OFFSET
        indices.append(index)

    return indices


def format_path(indices: list[int]) -> str:
    parts = ["m"]
    for index in indices:
        if index >= HARDENED_OFFSET:
            parts.append(f"{index - HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation. A key without a private part is "neutered"
    and can only derive normal (non-hardened) children.
    """

    def __init__(
        self,
        private_key: PrivateKey | None,
        chain_code: bytes,
        depth: int = 0,
        public_key: PublicKey | None = None,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
        testnet: bool = False,
    ):
        if private_key is None and public_key is None:
            raise KeyDerivationError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.testnet = testnet

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        if self._private_key is None:
            raise KeyDerivationError("Public-only key has no private key")
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return _hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes, testnet: bool = False) -> HDKey:
        """Create master HD key from seed"""
        if not 16 <= len(seed) <= 64:
            raise KeyDerivationError(f"Seed must be 16-64 bytes, got {len(seed)}")

        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        key_int = int.from_bytes(key_bytes, "big")
        if key_int == 0 or key_int >= SECP256K1_N:
            raise KeyDerivationError("Invalid master key")

        private_key = PrivateKey(key_bytes)

        return cls(private_key, chain_code, depth=0, testnet=testnet)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/44'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        key = self
        for index in parse_path(path):
            key = key.derive_child(index)
        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if not 0 <= index <= 0xFFFFFFFF:
            raise KeyDerivationError(f"Child index out of range: {index}")

        hardened = index >= HARDENED_OFFSET

        if hardened:
            if self._private_key is None:
                raise KeyDerivationError("Hardened derivation requires a private key")
            priv_bytes = self._private_key.secret
            data = b"\x00" + priv_bytes + index.to_bytes(4, "big")
        else:
            pub_bytes = self._public_key.format(compressed=True)
            data = pub_bytes + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise KeyDerivationError("Invalid child key")

        if self._private_key is None:
            try:
                child_public_key = self._public_key.add(key_offset)
            except ValueError as e:
                raise KeyDerivationError("Invalid child key") from e
            return HDKey(
                None,
                child_chain,
                depth=self.depth + 1,
                public_key=child_public_key,
                parent_fingerprint=self.fingerprint,
                child_number=index,
                testnet=self.testnet,
            )

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N

        if child_key_int == 0:
            raise KeyDerivationError("Invalid child key")

        child_key_bytes = child_key_int.to_bytes(32, "big")
        child_private_key = PrivateKey(child_key_bytes)

        return HDKey(
            child_private_key,
            child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            testnet=self.testnet,
        )

    def neuter(self) -> HDKey:
        """Return the public-only counterpart of this key."""
        return HDKey(
            None,
            self.chain_code,
            depth=self.depth,
            public_key=self._public_key,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            testnet=self.testnet,
        )

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def get_address(self) -> str:
        """Get P2PKH address for this key"""
        from hdengine.wallet.address import pubkey_to_p2pkh_address

        return pubkey_to_p2pkh_address(self.get_public_key_bytes(), testnet=self.testnet)

    def to_extended_key(self, private: bool = True) -> str:
        """Serialize as xprv/xpub (tprv/tpub on testnet)."""
        if private and self._private_key is None:
            raise KeyDerivationError("Cannot export private extended key from public-only key")

        if private:
            version = TESTNET_PRIVATE if self.testnet else MAINNET_PRIVATE
            key_data = b"\x00" + self._private_key.secret
        else:
            version = TESTNET_PUBLIC if self.testnet else MAINNET_PUBLIC
            key_data = self.get_public_key_bytes()

        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(payload).decode("ascii")

    @classmethod
    def from_extended_key(cls, extended_key: str) -> HDKey:
        """Parse an xprv/xpub/tprv/tpub string."""
        try:
            payload = base58.b58decode_check(extended_key)
        except ValueError as e:
            raise KeyDerivationError(f"Invalid extended key checksum: {e}") from e

        if len(payload) != 78:
            raise KeyDerivationError(f"Invalid extended key length: {len(payload)}")

        version = payload[:4]
        depth = payload[4]
        parent_fingerprint = payload[5:9]
        child_number = int.from_bytes(payload[9:13], "big")
        chain_code = payload[13:45]
        key_data = payload[45:]

        if version in (MAINNET_PRIVATE, TESTNET_PRIVATE):
            if key_data[0] != 0:
                raise KeyDerivationError("Invalid private key prefix")
            key_int = int.from_bytes(key_data[1:], "big")
            if key_int == 0 or key_int >= SECP256K1_N:
                raise KeyDerivationError("Private key out of range")
            return cls(
                PrivateKey(key_data[1:]),
                chain_code,
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
                testnet=version == TESTNET_PRIVATE,
            )

        if version in (MAINNET_PUBLIC, TESTNET_PUBLIC):
            try:
                public_key = PublicKey(key_data)
            except ValueError as e:
                raise KeyDerivationError(f"Invalid public key: {e}") from e
            return cls(
                None,
                chain_code,
                depth=depth,
                public_key=public_key,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
                testnet=version == TESTNET_PUBLIC,
            )

        raise KeyDerivationError(f"Unknown extended key version: {version.hex()}")


def derive_path(seed: bytes, path: str, testnet: bool = False) -> HDKey:
    """Derive the extended key at ``path`` from a BIP32 seed. Pure."""
    return HDKey.from_seed(seed, testnet=testnet).derive(path)
