"""
Hathor Wallet CLI - Generate words, create wallets, list addresses and balances.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger

from htrwallet.config import WalletConfig
from htrwallet.constants import DEFAULT_SERVER
from htrwallet.errors import WalletError
from htrwallet.helpers import pretty_value
from htrwallet.wallet.models import NetworkType

app = typer.Typer(
    name="htr-wallet",
    help="Hathor Wallet Management",
    add_completion=False,
)

DEFAULT_DATA_FILE = Path.home() / ".htrwallet" / "wallet.json"


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def load_words(words: str | None, words_file: Path | None) -> str:
    if words_file:
        if not words_file.exists():
            logger.error(f"Words file not found: {words_file}")
            raise typer.Exit(1)
        words = words_file.read_text().strip()

    if not words:
        logger.error("Words required. Use --words, --words-file, or HTR_WORDS env var")
        raise typer.Exit(1)
    return words


@app.command()
def generate() -> None:
    """Generate new 24 wallet words."""
    from htrwallet.wallet.vault import generate_words

    setup_logging()

    words = generate_words()
    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED WORDS - WRITE THEM DOWN AND KEEP THEM SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{words}\n")
    typer.echo("=" * 80)
    typer.echo("\nThese words control your funds.")
    typer.echo("Store them securely offline - NEVER share them with anyone!")
    typer.echo("=" * 80 + "\n")


@app.command()
def addresses(
    words: str = typer.Option(None, "--words", envvar="HTR_WORDS", help="24 wallet words"),
    words_file: Path | None = typer.Option(None, "--words-file", "-f", help="Path to words file"),
    passphrase: str = typer.Option("", "--passphrase", envvar="HTR_PASSPHRASE"),
    network: NetworkType = typer.Option(NetworkType.MAINNET, "--network", "-n"),
    count: int = typer.Option(20, "--count", "-c", min=1, help="Number of addresses"),
    start: int = typer.Option(0, "--start", "-s", min=0, help="First address index"),
) -> None:
    """Derive wallet addresses from words without storing anything."""
    from htrwallet.wallet.address import derive_address
    from htrwallet.wallet.bip32 import account_key_from_mnemonic
    from htrwallet.wallet.vault import normalize_words, words_valid

    setup_logging()

    words = load_words(words, words_file)
    valid, message = words_valid(words)
    if not valid:
        logger.error(f"Invalid words: {message}")
        raise typer.Exit(1)

    xpub = account_key_from_mnemonic(normalize_words(words), passphrase).xpub
    for index in range(start, start + count):
        address = derive_address(xpub, index, network.value)
        print(f"{address.index:>5}  {address.value}")


@app.command()
def init(
    words: str = typer.Option(None, "--words", envvar="HTR_WORDS", help="24 wallet words"),
    words_file: Path | None = typer.Option(None, "--words-file", "-f", help="Path to words file"),
    passphrase: str = typer.Option("", "--passphrase", envvar="HTR_PASSPHRASE"),
    pin: str = typer.Option(..., "--pin", envvar="HTR_PIN", prompt=True, hide_input=True),
    password: str = typer.Option(
        ..., "--password", envvar="HTR_PASSWORD", prompt=True, hide_input=True
    ),
    network: NetworkType = typer.Option(NetworkType.MAINNET, "--network", "-n"),
    server: str = typer.Option(DEFAULT_SERVER, "--server", envvar="HTR_SERVER"),
    data_file: Path = typer.Option(DEFAULT_DATA_FILE, "--data-file", "-d"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Create a wallet from words, store it encrypted and sync its history."""
    setup_logging(log_level)

    words = load_words(words, words_file)
    config = WalletConfig(network=network, server=server, data_file=data_file)
    asyncio.run(_init_wallet(config, words, passphrase, pin, password))


async def _init_wallet(
    config: WalletConfig, words: str, passphrase: str, pin: str, password: str
) -> None:
    """Init wallet implementation."""
    from htrwallet.backends.fullnode import FullNodeBackend
    from htrwallet.storage import JsonFileStore
    from htrwallet.wallet.service import WalletService

    store = JsonFileStore(config.data_file)
    backend = FullNodeBackend(config.server, timeout=config.request_timeout)
    wallet = WalletService(store, backend, config=config)

    try:
        if wallet.loaded():
            logger.error(f"A wallet already exists in {config.data_file}")
            raise typer.Exit(1)

        await wallet.generate_wallet(words, passphrase, pin, password)
        wallet.mark_wallet_as_started()
        wallet.change_server(config.server)
        print(f"\nWallet stored in {config.data_file}")
        print(f"Receive address: {wallet.current_address()}")

    except WalletError as e:
        logger.error(f"Failed to create wallet: {e}")
        raise typer.Exit(1)

    finally:
        await wallet.aclose()


@app.command()
def balance(
    network: NetworkType = typer.Option(NetworkType.MAINNET, "--network", "-n"),
    server: str | None = typer.Option(None, "--server", envvar="HTR_SERVER"),
    data_file: Path = typer.Option(DEFAULT_DATA_FILE, "--data-file", "-d"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Sync a stored wallet and display its balance per token."""
    setup_logging(log_level)

    if not data_file.exists():
        logger.error(f"Wallet file not found: {data_file}. Run init first")
        raise typer.Exit(1)

    asyncio.run(_show_balance(network, server, data_file))


async def _show_balance(network: NetworkType, server: str | None, data_file: Path) -> None:
    """Show balance implementation."""
    from htrwallet.backends.fullnode import FullNodeBackend
    from htrwallet.storage import JsonFileStore
    from htrwallet.wallet.service import SERVER_KEY, WalletService

    store = JsonFileStore(data_file)
    config = WalletConfig(
        network=network,
        server=server or store.get(SERVER_KEY) or DEFAULT_SERVER,
        data_file=data_file,
    )
    backend = FullNodeBackend(config.server, timeout=config.request_timeout)
    wallet = WalletService(store, backend, config=config)

    try:
        await wallet.load_history()

        print(f"\nReceive address: {wallet.current_address()}")
        print("\nBalance by token:")
        for token in wallet.tokens():
            token_balance = wallet.balance(token.uid)
            locked = f"  ({pretty_value(token_balance.locked)} locked)" if token_balance.locked else ""
            print(f"  {token.symbol:>8}: {pretty_value(token_balance.available):>20}{locked}")

    except WalletError as e:
        logger.error(f"Failed to load balance: {e}")
        raise typer.Exit(1)

    finally:
        await wallet.aclose()


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
