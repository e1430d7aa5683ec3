"""stepseal sign - wrap a payload in a signed envelope.

Signs the DSSE pre-authentication encoding of the payload file with a PEM
private key (Ed25519, ECDSA or RSA) and writes the envelope as JSON. With
--certificate the signature takes the keyless path: the certificate (and any
--intermediate) is embedded and the key ID is left to the certificate.

Usage:
    stepseal sign policy.json --key signer.pem -o policy.signed.json
    stepseal sign statement.json --type collection --key build.pem
    stepseal sign policy.json --key leaf.pem --certificate leaf.crt --intermediate ca.crt
    stepseal sign policy.json --generate-key keys/signer.pem
"""
from __future__ import annotations

from pathlib import Path

import click
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from stepseal.cryptoutil import key_id as compute_key_id, load_private_key, public_key_pem
from stepseal.envelope import INTOTO_PAYLOAD_TYPE, POLICY_PAYLOAD_TYPE, sign_envelope

PAYLOAD_TYPES = {
    "policy": POLICY_PAYLOAD_TYPE,
    "collection": INTOTO_PAYLOAD_TYPE,
}


def _generate_key(key_path: Path) -> None:
    private_key = Ed25519PrivateKey.generate()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    pub_path = key_path.with_suffix(".pub")
    pub_path.write_bytes(public_key_pem(private_key.public_key()))
    click.echo("Generated key pair:", err=True)
    click.echo(f"  Private: {key_path}", err=True)
    click.echo(f"  Public:  {pub_path}", err=True)
    click.echo(f"  Key ID:  {compute_key_id(private_key.public_key())}", err=True)


@click.command("sign")
@click.argument("payload", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", "-k", "key_file", default=None, type=click.Path(),
              help="Private key (PEM)")
@click.option("--generate-key", "generate_key", default=None, type=click.Path(),
              help="Generate an Ed25519 key at this path first and sign with it")
@click.option("--type", "-t", "payload_type", default="policy", show_default=True,
              help="Payload type: 'policy', 'collection' or a full URI")
@click.option("--certificate", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Signing certificate (PEM) for keyless-style signatures")
@click.option("--intermediate", "intermediates", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Intermediate certificate (PEM); repeatable")
@click.option("--key-id", default=None, help="Key ID to record (default: computed from the key)")
@click.option("--output", "-o", default=None, type=click.Path(),
              help="Write the envelope here instead of stdout")
def sign_command(
    payload: str,
    key_file: str | None,
    generate_key: str | None,
    payload_type: str,
    certificate: str | None,
    intermediates: tuple[str, ...],
    key_id: str | None,
    output: str | None,
) -> None:
    """Sign PAYLOAD and emit a DSSE envelope.

    \b
    Examples:
        stepseal sign policy.json -k signer.pem -o policy.signed.json
        stepseal sign statement.json -t collection -k build.pem
    """
    if generate_key:
        key_path = Path(generate_key)
        _generate_key(key_path)
    elif key_file:
        key_path = Path(key_file)
    else:
        click.echo("Error: pass --key or --generate-key", err=True)
        raise SystemExit(2)

    if not key_path.exists():
        click.echo(f"Error: no signing key at {key_path}", err=True)
        raise SystemExit(2)

    try:
        private_key = load_private_key(key_path.read_bytes())
    except (ValueError, TypeError) as e:
        click.echo(f"Error: cannot load {key_path}: {e}", err=True)
        raise SystemExit(2)

    kwargs = {}
    if certificate:
        kwargs["certificate"] = Path(certificate).read_bytes()
        kwargs["intermediates"] = [Path(p).read_bytes() for p in intermediates]
        kwargs["key_id"] = key_id or ""
    elif key_id:
        kwargs["key_id"] = key_id

    envelope = sign_envelope(
        Path(payload).read_bytes(),
        PAYLOAD_TYPES.get(payload_type, payload_type),
        private_key,
        **kwargs,
    )
    encoded = envelope.encode()
    if output:
        Path(output).write_bytes(encoded + b"\n")
        click.echo(f"Signed: {output}", err=True)
    else:
        click.echo(encoded.decode("utf-8"))


__all__ = ["sign_command"]
