"""
BIP39 mnemonic handling.
"""

from __future__ import annotations

import secrets

from mnemonic import Mnemonic

VALID_WORD_COUNTS = (12, 15, 18, 21, 24)

_wordlist = Mnemonic("english")


def generate_mnemonic(word_count: int = 24) -> str:
    """
    Generate a BIP39 mnemonic from secure entropy.

    Args:
        word_count: Number of words (12, 15, 18, 21 or 24)

    Returns:
        BIP39 mnemonic phrase
    """
    if word_count not in VALID_WORD_COUNTS:
        raise ValueError(f"word_count must be one of {VALID_WORD_COUNTS}")

    entropy = secrets.token_bytes(word_count * 4 // 3)
    return entropy_to_mnemonic(entropy)


def entropy_to_mnemonic(entropy: bytes) -> str:
    """Encode 16-32 bytes of entropy as a mnemonic."""
    if len(entropy) not in (16, 20, 24, 28, 32):
        raise ValueError(f"Entropy must be 16-32 bytes in steps of 4, got {len(entropy)}")
    return _wordlist.to_mnemonic(entropy)


def validate_mnemonic(mnemonic: str) -> bool:
    """Check word list membership and checksum."""
    return _wordlist.check(normalize_mnemonic(mnemonic))


def normalize_mnemonic(mnemonic: str) -> str:
    return " ".join(mnemonic.lower().split())


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to the 64-byte seed (PBKDF2-HMAC-SHA512, 2048 rounds).
    """
    return Mnemonic.to_seed(normalize_mnemonic(mnemonic), passphrase=passphrase)
