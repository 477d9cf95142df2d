"""
Blockchain backend implementations.

Available backends:
- MempoolBackend: mempool.space / Esplora REST API (no setup required)
"""

from hdengine.backends.base import (
    UTXO,
    AddressTransaction,
    BlockchainBackend,
    TxEndpoint,
    call_with_retry,
)
from hdengine.backends.mempool import MempoolBackend

__all__ = [
    "AddressTransaction",
    "BlockchainBackend",
    "MempoolBackend",
    "TxEndpoint",
    "UTXO",
    "call_with_retry",
]
