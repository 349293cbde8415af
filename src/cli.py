"""Click CLI for running the gateway and checking webhook signatures."""

from __future__ import annotations

import sys
from typing import BinaryIO

import click

from src.webhook.signature import sign as sign_body
from src.webhook.signature import verify as verify_body


@click.group()
def cli() -> None:
    """WhatsApp API gateway."""


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address.")
@click.option("--port", default=3000, show_default=True, type=int, help="Bind port.")
@click.option("--log-level", default="info", show_default=True, help="Uvicorn log level.")
def serve(host: str, port: int, log_level: str) -> None:
    """Run the HTTP API (configuration is read from the environment)."""
    import uvicorn

    uvicorn.run(
        "src.api.app:create_app_from_env",
        factory=True,
        host=host,
        port=port,
        log_level=log_level,
    )


@cli.command()
@click.option("--secret", envvar="WEBHOOK_SECRET", required=True, help="Signing secret.")
@click.argument("payload", type=click.File("rb"))
def sign(secret: str, payload: BinaryIO) -> None:
    """Print the X-Webhook-Signature value for a raw payload file ('-' for stdin)."""
    click.echo(sign_body(secret, payload.read()))


@cli.command()
@click.option("--secret", envvar="WEBHOOK_SECRET", required=True, help="Signing secret.")
@click.option("--signature", required=True, help="Received 'sha256=<hex>' header value.")
@click.argument("payload", type=click.File("rb"))
def verify(secret: str, signature: str, payload: BinaryIO) -> None:
    """Check a received webhook body against its signature header."""
    if verify_body(secret, payload.read(), signature):
        click.echo("Signature valid")
        return
    click.echo("Signature mismatch", err=True)
    sys.exit(1)


if __name__ == "__main__":
    cli()
