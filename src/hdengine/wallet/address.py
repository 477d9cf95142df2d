"""
Bitcoin address generation and validation utilities.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum

import base58
import bech32

from hdengine.constants import BITCOIN_INDEX, BITCOIN_TESTNET_INDEX
from hdengine.errors import InvalidAddressError, InvalidCoinTypeError

P2PKH_VERSION = {False: 0x00, True: 0x6F}
P2SH_VERSION = {False: 0x05, True: 0xC4}
BECH32_HRP = {False: "bc", True: "tb"}


class ScriptType(str, Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "v0_p2wpkh"
    P2WSH = "v0_p2wsh"
    P2TR = "v1_p2tr"


@dataclass(frozen=True)
class ParsedAddress:
    address: str
    script_type: ScriptType
    testnet: bool
    program: bytes

    @property
    def scriptpubkey(self) -> bytes:
        return script_for(self.script_type, self.program)


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def is_testnet_coin_type(coin_type_index: int) -> bool:
    if coin_type_index == BITCOIN_INDEX:
        return False
    if coin_type_index == BITCOIN_TESTNET_INDEX:
        return True
    raise InvalidCoinTypeError(f"Unknown coin type: {coin_type_index}")


def pubkey_to_p2pkh_address(pubkey: bytes, testnet: bool = False) -> str:
    """
    Convert a compressed public key to a P2PKH (Base58Check) address.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    payload = bytes([P2PKH_VERSION[testnet]]) + hash160(pubkey)
    return base58.b58encode_check(payload).decode("ascii")


def pubkey_to_p2pkh_script(pubkey: bytes) -> bytes:
    """Create P2PKH scriptPubKey (OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG)"""
    return script_for(ScriptType.P2PKH, hash160(pubkey))


def script_for(script_type: ScriptType, program: bytes) -> bytes:
    if script_type == ScriptType.P2PKH:
        return b"\x76\xa9\x14" + program + b"\x88\xac"
    if script_type == ScriptType.P2SH:
        return b"\xa9\x14" + program + b"\x87"
    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH):
        return bytes([0x00, len(program)]) + program
    if script_type == ScriptType.P2TR:
        return bytes([0x51, 0x20]) + program
    raise ValueError(f"Unsupported script type: {script_type}")


def _parse_segwit(address: str) -> ParsedAddress:
    lowered = address.lower()
    if address != lowered and address != address.upper():
        raise InvalidAddressError("Mixed-case bech32 address")

    hrp = lowered.split("1", 1)[0]
    if hrp not in BECH32_HRP.values():
        raise InvalidAddressError(f"Unknown bech32 prefix: {hrp}")

    witver, witprog = bech32.decode(hrp, lowered)
    if witver is None or witprog is None:
        raise InvalidAddressError("Invalid bech32 checksum or encoding")

    program = bytes(witprog)
    testnet = hrp == BECH32_HRP[True]

    if witver == 0 and len(program) == 20:
        return ParsedAddress(address, ScriptType.P2WPKH, testnet, program)
    if witver == 0 and len(program) == 32:
        return ParsedAddress(address, ScriptType.P2WSH, testnet, program)
    if witver == 1 and len(program) == 32:
        return ParsedAddress(address, ScriptType.P2TR, testnet, program)

    raise InvalidAddressError(f"Unsupported witness program: v{witver}, {len(program)} bytes")


def _parse_base58(address: str) -> ParsedAddress:
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid Base58Check address: {e}") from e

    if len(decoded) != 21:
        raise InvalidAddressError(f"Invalid address length: {len(decoded)}")

    version = decoded[0]
    payload = decoded[1:]

    for testnet in (False, True):
        if version == P2PKH_VERSION[testnet]:
            return ParsedAddress(address, ScriptType.P2PKH, testnet, payload)
        if version == P2SH_VERSION[testnet]:
            return ParsedAddress(address, ScriptType.P2SH, testnet, payload)

    raise InvalidAddressError(f"Unknown address version: {version}")


def parse_address(address: str) -> ParsedAddress:
    """
    Parse and checksum-verify an address.

    Supports:
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    - P2WPKH / P2WSH (bc1q..., tb1q...)
    - P2TR (bc1p..., tb1p...)
    """
    address = address.strip()
    if not address:
        raise InvalidAddressError("Empty address")

    if address.lower().startswith(("bc1", "tb1")):
        return _parse_segwit(address)
    return _parse_base58(address)


def validate_address(address: str, coin_type_index: int) -> ParsedAddress:
    """Validate format, checksum and network of ``address`` for a coin type."""
    testnet = is_testnet_coin_type(coin_type_index)
    parsed = parse_address(address)
    if parsed.testnet != testnet:
        raise InvalidAddressError("Wrong address type for coin type")
    return parsed


def address_to_scriptpubkey(address: str) -> bytes:
    """Convert a Bitcoin address to scriptPubKey."""
    return parse_address(address).scriptpubkey
