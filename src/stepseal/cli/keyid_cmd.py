"""stepseal keyid - print the key ID policies use for a key."""
from __future__ import annotations

from pathlib import Path

import click

from stepseal.cryptoutil import key_id, load_private_key, load_public_key


@click.command("keyid")
@click.argument("key_file", type=click.Path(exists=True, dir_okay=False))
def keyid_command(key_file: str) -> None:
    """Print the key ID (SHA-256 of the PEM public key) of KEY_FILE.

    KEY_FILE may hold a public key, an unencrypted private key or a
    certificate.
    """
    pem = Path(key_file).read_bytes()
    try:
        if b"PRIVATE KEY" in pem:
            public_key = load_private_key(pem).public_key()
        else:
            public_key = load_public_key(pem)
    except (ValueError, TypeError) as e:
        click.echo(f"Error: cannot read key from {key_file}: {e}", err=True)
        raise SystemExit(2)
    click.echo(key_id(public_key))


__all__ = ["keyid_command"]
