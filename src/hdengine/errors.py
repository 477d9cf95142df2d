"""
Wallet error taxonomy.

Every failure surfaced by the engine is a ``WalletError`` subclass carrying a
member of the closed ``ErrorCode`` enumeration, so callers can branch on the
code instead of matching on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    WRONG_PASSWORD = "wrong_password_error"
    IO = "io_error"
    CORRUPT_DATA = "corrupt_data_error"
    NETWORK = "network_error"
    INVALID_ADDRESS = "invalid_address_error"
    BALANCE_INSUFFICIENT = "balance_insufficient"
    MAX_INPUT_COUNT_EXCEEDED = "max_input_count_exceeded"
    SEND_TX = "send_tx_error"
    CREATE_TX = "create_tx_error"
    INVALID_COIN_TYPE = "invalid_coin_type"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_MNEMONIC = "invalid_mnemonic"


class WalletError(Exception):
    """Base class for all wallet engine errors."""

    code: ErrorCode = ErrorCode.IO

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.value)
        self.message = message or self.code.value


class WrongPasswordError(WalletError):
    """Authentication of the encrypted wallet record failed."""

    code = ErrorCode.WRONG_PASSWORD


class WalletIOError(WalletError):
    """Wallet storage is missing, unreadable or unwritable."""

    code = ErrorCode.IO


class CorruptDataError(WalletError):
    """The persisted wallet record is malformed."""

    code = ErrorCode.CORRUPT_DATA


class NetworkError(WalletError):
    """The blockchain data provider is unreachable or timed out."""

    code = ErrorCode.NETWORK


class InvalidAddressError(WalletError):
    code = ErrorCode.INVALID_ADDRESS


class BalanceInsufficientError(WalletError):
    code = ErrorCode.BALANCE_INSUFFICIENT


class MaxInputCountExceededError(WalletError):
    code = ErrorCode.MAX_INPUT_COUNT_EXCEEDED


class SendTxError(WalletError):
    """The provider rejected the broadcast."""

    code = ErrorCode.SEND_TX


class TransactionBuildError(WalletError):
    """The transaction could not be constructed or signed."""

    code = ErrorCode.CREATE_TX


class InvalidCoinTypeError(WalletError):
    code = ErrorCode.INVALID_COIN_TYPE


class AccountNotFoundError(WalletError):
    code = ErrorCode.ACCOUNT_NOT_FOUND


class InvalidMnemonicError(WalletError):
    """The phrase or word count is not valid BIP39."""

    code = ErrorCode.INVALID_MNEMONIC
