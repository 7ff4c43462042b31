"""Human-readable verification instructions for published attestations."""

import os
import sys
from pathlib import Path

from jinja2 import Environment

from publisher.attestation import PROVENANCE_PREDICATE_TYPE, SBOM_PREDICATE_TYPE

# Issuer of the OIDC tokens cosign exchanges for a keyless signing certificate
GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"

SUMMARY_TEMPLATE = """\
### Attestation Verification
Subject: `{{ locator }}`
- Verify Provenance
```
{{ verify_command }}
```
- Verify SBOM
```
{{ verify_command_sbom }}
```
"""


def _identity_args(signer_repository: str | None) -> list[str]:
    if not signer_repository:
        return ["--certificate-identity-regexp '.+'", f"--certificate-oidc-issuer {GITHUB_OIDC_ISSUER}"]

    server = os.environ.get("GITHUB_SERVER_URL", "https://github.com")
    return [
        f"--certificate-identity-regexp '^{server}/{signer_repository}/'",
        f"--certificate-oidc-issuer {GITHUB_OIDC_ISSUER}",
    ]


def verification_command(
    reference: str,
    predicate_type: str,
    key: str | None = None,
    signer_repository: str | None = None,
) -> str:
    """Build a 'cosign verify-attestation' command for a digest-qualified reference.

    With a key the signature is checked against it; otherwise the keyless
    certificate must come from a workflow of signer_repository.
    """
    parts = ["cosign verify-attestation", f"--type {predicate_type}"]
    if key:
        parts.append(f"--key {key}")
    else:
        parts.extend(_identity_args(signer_repository))
    parts.append(reference)
    parts.append("| jq")
    return " ".join(parts)


def report(
    registry: str,
    digest: str,
    repository: str | None = None,
    signer_repository: str | None = None,
    key: str | None = None,
) -> str:
    """Render verification instructions for the provenance and SBOM attestations.

    The two commands differ only in the predicate type.
    """
    reference = f"{registry}@{digest}"
    signer = signer_repository or repository

    env = Environment(keep_trailing_newline=True)
    tpl = env.from_string(SUMMARY_TEMPLATE)
    return tpl.render(
        locator=f"oci://{reference}",
        verify_command=verification_command(reference, PROVENANCE_PREDICATE_TYPE, key, signer),
        verify_command_sbom=verification_command(reference, SBOM_PREDICATE_TYPE, key, signer),
    )


def write_summary(text: str, summary_path: Path | None = None) -> bool:
    """Append text to the step summary file (GITHUB_STEP_SUMMARY by default).

    Failures only produce a warning; returns False if nothing was written.
    """
    if summary_path is None:
        env_path = os.environ.get("GITHUB_STEP_SUMMARY")
        if not env_path:
            return False
        summary_path = Path(env_path)

    try:
        with open(summary_path, "a") as f:
            f.write(text)
    except OSError as e:
        print(f"Warning: Could not write summary to {summary_path}: {e}", file=sys.stderr)
        return False

    return True
