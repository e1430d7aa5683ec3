"""stepseal CLI - Supply-chain attestation verification.

Commands:
    verify  - Verify attestations for an artifact against a signed policy
    sign    - Wrap a policy or collection in a signed envelope
    keyid   - Print the key ID of a public key, private key or certificate
"""
from __future__ import annotations

import click

from stepseal import __version__

from .keyid_cmd import keyid_command
from .sign_cmd import sign_command
from .verify_cmd import verify_command


@click.group()
@click.version_option(version=__version__, prog_name="stepseal")
def cli() -> None:
    """stepseal - Attestation and policy verification

    \b
    Quick start:
      stepseal keyid policy-signer.pub           Key ID to pin
      stepseal sign policy.json -k signer.pem    Sign a policy
      stepseal verify -p policy.signed.json \\
          --policy-key signer.pub -a build.json --artifact-file app.tar
    """


cli.add_command(verify_command, name="verify")
cli.add_command(sign_command, name="sign")
cli.add_command(keyid_command, name="keyid")


def main() -> None:
    cli()


__all__ = ["cli", "main"]
