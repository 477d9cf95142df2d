"""
Bitcoin and wallet policy constants.

The dust limit follows Bitcoin Core's standard P2PKH dust limit; change below
it is not worth creating an output for and is donated to the miner fee.
"""

from __future__ import annotations

# BIP-44 purpose field, always hardened
PURPOSE = 44

BITCOIN_INDEX = 0
BITCOIN_TESTNET_INDEX = 1

COIN_TYPE_NAMES: dict[int, str] = {
    BITCOIN_INDEX: "Bitcoin",
    BITCOIN_TESTNET_INDEX: "Bitcoin Testnet",
}

RECEIVE_CHAIN = 0
CHANGE_CHAIN = 1

HARDENED_OFFSET = 0x80000000

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Maximum consecutive unused addresses ahead of the last used one (BIP-44)
DEFAULT_GAP_LIMIT = 20

# A compressed-key P2PKH input is ~148 bytes, so 600 inputs stay below the
# 100k vbyte standardness limit for a single transaction.
DEFAULT_MAX_INPUTS = 600

# Legacy transaction size components (bytes)
TX_VERSION_SIZE = 4
TX_LOCKTIME_SIZE = 4
P2PKH_INPUT_SIZE = 148
P2PKH_OUTPUT_SIZE = 34

SIGHASH_ALL = 1
