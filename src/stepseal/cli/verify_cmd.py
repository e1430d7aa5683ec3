"""stepseal verify - decide whether an artifact's attestations satisfy a policy.

The policy envelope is checked against pinned trust given on the command
line (--policy-key / --policy-ca / --policy-tsa); only then are its own keys
and roots used for the attestations.

Exit codes:
    0  accepted
    1  rejected
    2  usage or input error

Usage:
    stepseal verify -p policy.signed.json --policy-key signer.pub \\
        -a build.json -a package.json --artifact-file dist/app.tar
    stepseal verify -p policy.signed.json --policy-key signer.pub \\
        -d attestations/ --artifact-digest sha256:ab12... --json
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import NoReturn, Optional

import click

from stepseal.config import EngineSettings, load_config
from stepseal.digests import digest_file, parse_digest_ref
from stepseal.orchestrator import StepState, Verdict, VerificationOrchestrator
from stepseal.policy import CertConstraints
from stepseal.sources import DirectorySource, collect_envelopes, read_envelope_files
from stepseal.trust import TrustRoot, TrustStore

logger = logging.getLogger(__name__)

EXIT_ACCEPTED = 0
EXIT_REJECTED = 1
EXIT_USAGE = 2

_STATE_STYLES = {
    StepState.ACCEPTED: "green",
    StepState.LINKED: "green",
    StepState.TYPES_CHECKED: "yellow",
    StepState.REJECTED: "red",
    StepState.PENDING: "dim",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING),
                        format="%(levelname)s %(name)s: %(message)s")


def _usage_error(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(EXIT_USAGE)


def _policy_trust(keys: tuple[str, ...], cas: tuple[str, ...], tsas: tuple[str, ...]) -> TrustStore:
    try:
        return TrustStore.from_pem_keys(
            [Path(k).read_bytes() for k in keys],
            keyless_roots={Path(c).stem: TrustRoot.from_pem(Path(c).stem, Path(c).read_bytes()) for c in cas},
            timestamp_roots={Path(t).stem: TrustRoot.from_pem(Path(t).stem, Path(t).read_bytes()) for t in tsas},
        )
    except (ValueError, TypeError) as e:
        _usage_error(f"cannot load pinned policy trust: {e}")


def _artifact_digest(artifact_file: Optional[str], artifact_digest: Optional[str]) -> Optional[dict]:
    if artifact_file and artifact_digest:
        _usage_error("use either --artifact-file or --artifact-digest")
    if artifact_file:
        return digest_file(Path(artifact_file))
    if artifact_digest:
        try:
            return parse_digest_ref(artifact_digest)
        except ValueError as e:
            _usage_error(str(e))
    return None


def _print_rich_verdict(verdict: Verdict) -> None:
    from rich.box import ROUNDED
    from rich.console import Console
    from rich.table import Table

    console = Console()

    if verdict.steps:
        table = Table(
            title="STEPS",
            box=ROUNDED,
            border_style="cyan",
            show_header=True,
            header_style="bold",
        )
        table.add_column("Step", style="white", min_width=12)
        table.add_column("State", min_width=14)
        table.add_column("Accepted by", min_width=16)
        table.add_column("Reasons", min_width=30)

        for step in verdict.steps:
            style = _STATE_STYLES.get(step.state, "white")
            signers = ", ".join(
                c.identity.describe() for c in step.candidates if c.accepted and c.identity is not None
            )
            table.add_row(
                step.name,
                f"[{style}]{step.state.value}[/{style}]",
                signers or "-",
                "\n".join(f"{r.code.value}: {r.detail}" if r.detail else r.code.value for r in step.reasons) or "-",
            )
        console.print()
        console.print(table)

    run_level = [r for r in verdict.reasons if r.step is None]
    for reason in run_level:
        console.print(f"  [red]✗[/red] {reason.code.value}: {reason.detail}")
    for item in verdict.skipped:
        console.print(f"  [dim]skipped {item.name}: {item.detail}[/dim]")

    console.print()
    if verdict.accepted:
        console.print("  [green bold]ACCEPTED[/green bold]")
    else:
        suffix = ", run aborted" if verdict.aborted else ""
        console.print(f"  [red bold]REJECTED[/red bold] ({len(verdict.reasons)} reason(s){suffix})")
    console.print()


@click.command("verify")
@click.option("--policy", "-p", "policy_file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Signed policy envelope (JSON)")
@click.option("--policy-key", "policy_keys", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Pinned public key of the policy signer (PEM); repeatable")
@click.option("--policy-ca", "policy_cas", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Pinned CA certificate for a keyless policy signer (PEM); repeatable")
@click.option("--policy-tsa", "policy_tsas", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Pinned timestamp authority certificate for the policy signature (PEM); repeatable")
@click.option("--policy-email", "policy_emails", multiple=True,
              help="Glob the keyless policy signer's email must match; repeatable")
@click.option("--policy-uri", "policy_uris", multiple=True,
              help="Glob the keyless policy signer's SAN URI must match; repeatable")
@click.option("--attestation", "-a", "attestations", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Attestation envelope file; repeatable")
@click.option("--directory", "-d", default=None, type=click.Path(exists=True, file_okay=False),
              help="Directory of envelope files (*.json)")
@click.option("--artifact-file", "-f", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Artifact to bind the attestations to (hashed with sha256)")
@click.option("--artifact-digest", default=None, help="Artifact digest as alg:hex")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Config file (default: ~/.stepseal/config.yaml)")
@click.option("--workers", type=int, default=None, help="Worker threads (overrides config)")
@click.option("--timeout", type=float, default=None, help="Seconds before the run is abandoned")
@click.option("--json", "output_json", is_flag=True, help="Output the verdict as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def verify_command(
    policy_file: str,
    policy_keys: tuple[str, ...],
    policy_cas: tuple[str, ...],
    policy_tsas: tuple[str, ...],
    policy_emails: tuple[str, ...],
    policy_uris: tuple[str, ...],
    attestations: tuple[str, ...],
    directory: Optional[str],
    artifact_file: Optional[str],
    artifact_digest: Optional[str],
    config_path: Optional[str],
    workers: Optional[int],
    timeout: Optional[float],
    output_json: bool,
    verbose: bool,
) -> None:
    """Verify attestations against a signed policy.

    \b
    Examples:
        stepseal verify -p policy.signed.json --policy-key signer.pub -a build.json
        stepseal verify -p policy.signed.json --policy-ca root.pem --policy-tsa tsa.pem \\
            --policy-email '*@example.com' -d attestations/ -f app.tar --json
    """
    config = load_config(Path(config_path) if config_path else None, workspace=Path.cwd())
    _configure_logging("DEBUG" if verbose else config["log_level"])
    if workers is not None:
        config["max_workers"] = max(1, workers)
    if timeout is not None:
        config["timeout_seconds"] = timeout
    settings = EngineSettings.from_config(config)

    if not (policy_keys or policy_cas):
        _usage_error("pin the policy signer with --policy-key or --policy-ca")
    if policy_cas and not (policy_emails or policy_uris):
        _usage_error("a policy signer pinned with --policy-ca needs --policy-email or --policy-uri")
    if not (attestations or directory):
        _usage_error("give attestations with --attestation or --directory")

    trust = _policy_trust(policy_keys, policy_cas, policy_tsas)
    constraints = None
    if policy_emails or policy_uris:
        constraints = CertConstraints(emails=policy_emails, uris=policy_uris)
    subject = _artifact_digest(artifact_file, artifact_digest)

    inputs: list = list(read_envelope_files(attestations))
    if directory:
        source = DirectorySource(directory)
        found = collect_envelopes(source, subject) if subject else source.load()
        inputs.extend(found)
    logger.debug("%d envelope input(s)", len(inputs))

    verdict = VerificationOrchestrator(settings).verify(
        Path(policy_file).read_bytes(),
        trust,
        inputs,
        artifact_digest=subject,
        policy_constraints=constraints,
    )

    if output_json:
        click.echo(json.dumps(verdict.to_dict(), indent=2))
    else:
        _print_rich_verdict(verdict)
    raise SystemExit(EXIT_ACCEPTED if verdict.accepted else EXIT_REJECTED)


__all__ = ["verify_command"]
