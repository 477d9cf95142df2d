"""
hdengine - HD Bitcoin wallet engine

Encrypted seed vault, BIP32/44 account tree with gap-limit discipline,
UTXO tracking, Random-Improve coin selection and legacy P2PKH signing.
"""

__version__ = "0.1.0"

from hdengine.engine import CommandResult, WalletEngine, run_command
from hdengine.errors import ErrorCode, WalletError

__all__ = [
    "CommandResult",
    "ErrorCode",
    "WalletEngine",
    "WalletError",
    "run_command",
]
