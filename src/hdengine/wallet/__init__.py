"""
HD wallet primitives: key derivation, addresses, coin selection, signing,
encrypted storage.
"""
