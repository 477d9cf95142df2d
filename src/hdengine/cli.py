"""
Wallet CLI - create the encrypted wallet, manage accounts and addresses, send payments.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import typer
from loguru import logger

from hdengine.config import get_settings
from hdengine.constants import BITCOIN_INDEX, COIN_TYPE_NAMES
from hdengine.engine import WalletEngine, run_command
from hdengine.errors import InvalidMnemonicError
from hdengine.wallet.mnemonic import validate_mnemonic

app = typer.Typer(
    name="hdengine",
    help="HD Bitcoin wallet",
    add_completion=False,
)

PASSWORD_OPTION = typer.Option(
    ..., "--password", "-p", envvar="HDENGINE_PASSWORD", prompt=True, hide_input=True
)
COIN_OPTION = typer.Option(BITCOIN_INDEX, "--coin", "-c", help="Coin type (0 mainnet, 1 testnet)")
ACCOUNT_OPTION = typer.Option(0, "--account", "-a", help="Account index")
LOG_LEVEL_OPTION = typer.Option(None, "--log-level", "-l")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _make_engine(log_level: str | None) -> WalletEngine:
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    return WalletEngine(settings.to_wallet_config())


async def _call(engine: WalletEngine, name: str, **kwargs: Any) -> Any:
    result = await run_command(engine, name, **kwargs)
    if not result.ok:
        logger.error(f"{result.error.value}: {result.message}")
        raise typer.Exit(1)
    return result.value


def _run(engine: WalletEngine, impl: Any) -> None:
    async def _wrapped() -> None:
        try:
            await impl
        finally:
            await engine.close()

    asyncio.run(_wrapped())


@app.command()
def generate(
    word_count: int = typer.Option(24, "--words", "-w", help="Number of words (12-24)"),
) -> None:
    """Generate a new BIP39 mnemonic phrase."""
    setup_logging()
    engine = WalletEngine()
    try:
        mnemonic = engine.generate_mnemonic(word_count)
    except InvalidMnemonicError as e:
        logger.error(f"Failed to generate mnemonic: {e}")
        raise typer.Exit(1)

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED MNEMONIC - WRITE THIS DOWN AND KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{mnemonic}\n")
    typer.echo("=" * 80 + "\n")


@app.command()
def create(
    mnemonic: str = typer.Option(
        ..., "--mnemonic", envvar="MNEMONIC", prompt=True, hide_input=True, help="BIP39 mnemonic"
    ),
    passphrase: str = typer.Option("", "--passphrase", help="Optional BIP39 passphrase"),
    password: str = typer.Option(
        ...,
        "--password",
        "-p",
        envvar="HDENGINE_PASSWORD",
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing wallet"),
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Create the encrypted wallet file from a mnemonic."""
    engine = _make_engine(log_level)

    if not validate_mnemonic(mnemonic):
        logger.error("Invalid mnemonic")
        raise typer.Exit(1)
    if engine.does_master_key_exist() and not force:
        logger.error(f"Wallet already exists at {engine.vault.path} (use --force to replace)")
        raise typer.Exit(1)

    async def _impl() -> None:
        await _call(
            engine, "create_master_key", mnemonic=mnemonic, passphrase=passphrase, password=password
        )
        typer.echo(f"Wallet created at {engine.vault.path}")

    _run(engine, _impl())


@app.command()
def change_password(
    old_password: str = typer.Option(..., "--old-password", prompt=True, hide_input=True),
    new_password: str = typer.Option(
        ..., "--new-password", prompt=True, hide_input=True, confirmation_prompt=True
    ),
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Re-encrypt the wallet under a new password."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(
            engine, "change_password", old_password=old_password, new_password=new_password
        )
        typer.echo("Password changed")

    _run(engine, _impl())


@app.command()
def new_account(
    coin: int = COIN_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Create the next account for a coin type."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        account = await _call(
            engine, "create_new_account", coin_type_index=coin, password=password
        )
        typer.echo(f"Account {account.index} ({COIN_TYPE_NAMES[coin]}): {account.xpub}")

    _run(engine, _impl())


@app.command()
def accounts(
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """List coin types and accounts."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(engine, "load_master_key", password=password)
        tree = await _call(engine, "get_accounts_overview")
        for coin_type in tree.coin_types.values():
            typer.echo(f"{coin_type.name} (m/{tree.purpose}'/{coin_type.index}')")
            for account in coin_type.accounts.values():
                typer.echo(
                    f"  account {account.index}: "
                    f"{account.receive.next_index} receive / "
                    f"{account.change.next_index} change addresses issued"
                )

    _run(engine, _impl())


@app.command()
def balance(
    coin: int = COIN_OPTION,
    account: int = ACCOUNT_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Show the balance of an account in satoshis."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(engine, "load_master_key", password=password)
        sats = await _call(
            engine, "get_account_balance", coin_type_index=coin, account_index=account
        )
        typer.echo(f"{sats} sats")

    _run(engine, _impl())


@app.command()
def history(
    coin: int = COIN_OPTION,
    account: int = ACCOUNT_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """List the transactions of an account."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(engine, "load_master_key", password=password)
        txs = await _call(
            engine, "get_simple_transactions", coin_type_index=coin, account_index=account
        )
        for tx in txs:
            status = f"block {tx.block_height}" if tx.confirmed else "unconfirmed"
            typer.echo(
                f"{tx.txid}  {tx.transaction_type.value:<8}  {tx.value:>12} sats  "
                f"fee {tx.fee}  {status}"
            )

    _run(engine, _impl())


@app.command()
def receive(
    coin: int = COIN_OPTION,
    account: int = ACCOUNT_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Hand out a new receive address."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        entry = await _call(
            engine,
            "get_new_receive_address",
            coin_type_index=coin,
            account_index=account,
            password=password,
        )
        typer.echo(entry.address)

    _run(engine, _impl())


@app.command()
def addresses(
    coin: int = COIN_OPTION,
    account: int = ACCOUNT_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """List handed-out receive addresses and whether they were used."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(engine, "load_master_key", password=password)
        entries = await _call(
            engine,
            "get_all_receive_addresses_marked",
            coin_type_index=coin,
            account_index=account,
        )
        for entry in entries:
            typer.echo(f"{entry.path}  {entry.address}  {'used' if entry.used else 'unused'}")

    _run(engine, _impl())


@app.command()
def fees(
    coin: int = COIN_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Show recommended fee rates (sat/vB)."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        estimates = await _call(engine, "get_recommended_fees", coin_type_index=coin)
        typer.echo(f"fastest:   {estimates.fastest}")
        typer.echo(f"half hour: {estimates.half_hour}")
        typer.echo(f"hour:      {estimates.hour}")
        typer.echo(f"economy:   {estimates.economy}")
        typer.echo(f"minimum:   {estimates.minimum}")

    _run(engine, _impl())


@app.command()
def validate(
    address: str = typer.Argument(..., help="Destination address"),
    coin: int = COIN_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Check that an address is valid for a coin type."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        await _call(engine, "validate_address", address=address, coin_type_index=coin)
        typer.echo("valid")

    _run(engine, _impl())


@app.command()
def send(
    address: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in satoshis"),
    fee_rate: int = typer.Option(..., "--fee-rate", "-f", help="Fee rate in sat/vB"),
    coin: int = COIN_OPTION,
    account: int = ACCOUNT_OPTION,
    password: str = PASSWORD_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Send a payment."""
    engine = _make_engine(log_level)

    async def _impl() -> None:
        total = await _call(
            engine,
            "send_transaction",
            coin_type_index=coin,
            account_index=account,
            address=address,
            amount=amount,
            fee_rate=fee_rate,
            password=password,
        )
        typer.echo(f"Sent {amount} sats ({total} sats including fee)")

    _run(engine, _impl())


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
