"""
Legacy (pre-segwit) transaction serialization and P2PKH signing.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace

from coincurve import PrivateKey

from hdengine.constants import SIGHASH_ALL


class TransactionSigningError(Exception):
    pass


@dataclass
class TxInput:
    txid: str  # display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    @property
    def txid_le(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1]

    def serialize(self, script: bytes | None = None) -> bytes:
        script = self.script_sig if script is None else script
        return (
            self.txid_le
            + self.vout.to_bytes(4, "little")
            + encode_varint(len(script))
            + script
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class TxOutput:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return self.value.to_bytes(8, "little") + encode_varint(len(self.script)) + self.script


@dataclass
class Transaction:
    version: int = 1
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    def serialize(self, input_scripts: list[bytes] | None = None) -> bytes:
        """Serialize, optionally overriding every input's script."""
        if input_scripts is None:
            input_scripts = [inp.script_sig for inp in self.inputs]

        parts = [self.version.to_bytes(4, "little"), encode_varint(len(self.inputs))]
        parts.extend(inp.serialize(script) for inp, script in zip(self.inputs, input_scripts))
        parts.append(encode_varint(len(self.outputs)))
        parts.extend(out.serialize() for out in self.outputs)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    @property
    def txid(self) -> str:
        return hash256(self.serialize())[::-1].hex()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        value = int.from_bytes(data[offset : offset + 2], "little")
        return value, offset + 2
    if first == 0xFE:
        value = int.from_bytes(data[offset : offset + 4], "little")
        return value, offset + 4
    value = int.from_bytes(data[offset : offset + 8], "little")
    return value, offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def push_data(data: bytes) -> bytes:
    """Minimal script push for data up to 75 bytes (signatures, pubkeys)."""
    if len(data) > 75:
        raise TransactionSigningError(f"Push of {len(data)} bytes not supported")
    return bytes([len(data)]) + data


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        offset = 0
        version = int.from_bytes(tx_bytes[offset : offset + 4], "little")
        offset += 4

        if tx_bytes[offset] == 0x00:
            raise TransactionSigningError("Segwit serialization not supported")

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid = tx_bytes[offset : offset + 32][::-1].hex()
            offset += 32

            vout = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len

            sequence = int.from_bytes(tx_bytes[offset : offset + 4], "little")
            offset += 4

            inputs.append(TxInput(txid, vout, script, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value = int.from_bytes(tx_bytes[offset : offset + 8], "little")
            offset += 8

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len

            outputs.append(TxOutput(value, script))

        if len(tx_bytes) != offset + 4:
            raise TransactionSigningError("Trailing or missing bytes after outputs")
        locktime = int.from_bytes(tx_bytes[offset : offset + 4], "little")
        return Transaction(version, inputs, outputs, locktime)

    except TransactionSigningError:
        raise
    except (IndexError, ValueError) as e:
        raise TransactionSigningError(f"Failed to parse transaction: {e}") from e


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    prev_script: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """
    Legacy signature hash.

    The input being signed carries the previous output's scriptPubKey, every
    other input an empty script; the serialization is followed by the 4-byte
    sighash type and double-SHA256'd.
    """
    if not 0 <= input_index < len(tx.inputs):
        raise TransactionSigningError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionSigningError(f"Unsupported sighash type: {sighash_type}")

    scripts = [prev_script if i == input_index else b"" for i in range(len(tx.inputs))]
    preimage = tx.serialize(scripts) + sighash_type.to_bytes(4, "little")
    return hash256(preimage)


def sign_p2pkh_input(
    tx: Transaction,
    input_index: int,
    prev_script: bytes,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a P2PKH input using coincurve.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        prev_script: scriptPubKey of the output being spent
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (only SIGHASH_ALL)

    Returns:
        DER-encoded low-S signature with sighash type byte appended
    """
    sighash = compute_sighash_legacy(tx, input_index, prev_script, sighash_type)

    # hasher=None: the sighash is already SHA256d
    signature = private_key.sign(sighash, hasher=None)

    return signature + bytes([sighash_type])


def create_p2pkh_script_sig(signature: bytes, pubkey_bytes: bytes) -> bytes:
    return push_data(signature) + push_data(pubkey_bytes)


def sign_transaction(
    tx: Transaction,
    prev_scripts: list[bytes],
    private_keys: list[PrivateKey],
) -> Transaction:
    """Return a copy of ``tx`` with every input's P2PKH scriptSig filled in."""
    if not len(tx.inputs) == len(prev_scripts) == len(private_keys):
        raise TransactionSigningError("Need one previous script and key per input")

    signed_inputs = []
    for index, (prev_script, key) in enumerate(zip(prev_scripts, private_keys)):
        signature = sign_p2pkh_input(tx, index, prev_script, key)
        script_sig = create_p2pkh_script_sig(signature, key.public_key.format(compressed=True))
        signed_inputs.append(replace(tx.inputs[index], script_sig=script_sig))

    return replace(tx, inputs=signed_inputs)
