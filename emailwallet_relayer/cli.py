"""
CLI entry point for the Email Wallet relayer.
"""

import asyncio
from pathlib import Path
from typing import Optional

import httpx
import structlog
import typer
import uvicorn
from dotenv import load_dotenv

from .config import Settings
from .models import RevealRequest

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="emailwallet-relayer",
    help="Email Wallet relayer: PSI discovery, claim admission and mailbox watcher",
    add_completion=False,
)


def _load_settings(config_path: Optional[Path]) -> Settings:
    return Settings(_env_file=config_path) if config_path else Settings()


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """
    Serve the PSI check and reveal endpoints.
    """
    settings = _load_settings(config_path)

    from .main import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


@app.command()
def find(
    email_addr: str = typer.Argument(..., help="Recipient email address"),
    id: str = typer.Argument(..., help="Unclaimed fund/state id (decimal or 0x hex)"),
    is_fund: bool = typer.Option(True, "--fund/--state", help="Kind of unclaimed entry"),
    reveal_randomness: Optional[str] = typer.Option(
        None,
        "--reveal",
        help="Commitment randomness; reveal to the matched relayer when given",
    ),
    skip_failed: Optional[bool] = typer.Option(
        None,
        "--skip-failed/--abort-on-failure",
        help="Skip relayers whose check fails (default from SKIP_FAILED_RELAYERS)",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """
    Find which relayer holds the commitment for an email address.
    """
    settings = _load_settings(config_path)

    from .blind_point import CircuitBlindPointService
    from .main import build_chain_client
    from .psi import PSIClient

    claim_id = int(id, 16) if id.lower().startswith("0x") else int(id)

    async def _find() -> Optional[str]:
        chain = build_chain_client(settings)
        blind_point = CircuitBlindPointService(
            circuits_dir=settings.circuits_dir_path,
            input_files_dir=settings.input_files_dir,
            timeout=settings.blind_point_timeout_seconds,
        )
        session = await PSIClient.create(
            chain,
            blind_point,
            email_addr,
            claim_id,
            is_fund,
            skip_failed_relayers=(
                settings.skip_failed_relayers if skip_failed is None else skip_failed
            ),
        )

        async with httpx.AsyncClient(timeout=30.0) as client:
            relayer = await session.find(client)
            if relayer and reveal_randomness:
                accepted = await PSIClient.reveal(
                    client,
                    relayer,
                    RevealRequest(
                        id=claim_id,
                        is_fund=is_fund,
                        randomness=reveal_randomness,
                        email_address=email_addr,
                    ),
                )
                typer.echo(accepted)
        return relayer

    typer.echo(f"Searching relayers for {email_addr} (id {claim_id})...")
    relayer = asyncio.run(_find())

    if relayer is None:
        typer.echo("No relayer holds a commitment for this address.")
        raise typer.Exit(code=1)

    typer.echo(f"✓ Relayer: {relayer}")


@app.command()
def watch(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """
    Watch the relayer mailbox and report new messages.
    """
    settings = _load_settings(config_path)

    from .imap_client import ImapClient

    async def _watch() -> None:
        client = await ImapClient.connect(
            settings.imap_config(),
            idle_timeout=settings.imap_idle_timeout,
            max_retries=settings.imap_max_retries,
            retry_delay=settings.imap_retry_delay_seconds,
        )
        try:
            async for email in client.watch():
                typer.echo(f"✓ UID {email.uid}: {len(email.raw_bytes)} bytes")
        finally:
            await client.logout()

    typer.echo(f"Watching {settings.imap_domain_name} as {settings.imap_user_id}. Press Ctrl+C to stop.")
    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        typer.echo("\nStopping watcher...")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from emailwallet_relayer import __version__
    typer.echo(f"emailwallet-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
