"""Provenance and SBOM attestations signed and pushed with cosign."""

import os
import subprocess
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from publisher.building import DIGEST_PATTERN, get_tool_path
from publisher.config import BuildRequest, get_signing_key
from publisher.errors import AttestationError

PROVENANCE_PREDICATE_TYPE = "https://slsa.dev/provenance/v1"
SBOM_PREDICATE_TYPE = "https://spdx.dev/Document/v2.3"
BUILD_TYPE = "https://github.com/image-publisher/build/v1"


class AttestationRecord(BaseModel):
    """A signed statement published for an image digest"""
    subject_name: str
    subject_digest: str
    predicate_type: str
    pushed: bool


class BuildDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    build_type: str = Field(BUILD_TYPE, alias="buildType")
    external_parameters: dict[str, Any] = Field(default_factory=dict, alias="externalParameters")
    internal_parameters: dict[str, Any] = Field(default_factory=dict, alias="internalParameters")


class RunDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    builder: dict[str, str]
    metadata: dict[str, str] = Field(default_factory=dict)


class ProvenancePredicate(BaseModel):
    """SLSA v1 provenance predicate"""
    model_config = ConfigDict(populate_by_name=True)

    build_definition: BuildDefinition = Field(alias="buildDefinition")
    run_details: RunDetails = Field(alias="runDetails")


def get_cosign_path() -> Path:
    """Get the path to the cosign binary."""
    return get_tool_path("cosign")


def _builder_id() -> str:
    server = os.environ.get("GITHUB_SERVER_URL", "https://github.com")
    repository = os.environ.get("GITHUB_REPOSITORY")
    workflow_ref = os.environ.get("GITHUB_WORKFLOW_REF")
    if workflow_ref:
        return f"{server}/{workflow_ref}"
    if repository:
        return f"{server}/{repository}"
    return "image-publisher"


def build_provenance_predicate(request: BuildRequest | None = None) -> ProvenancePredicate:
    """Build the provenance predicate describing how the image was produced."""
    external = {}
    if request is not None:
        external = {
            "context": str(request.context),
            "dockerfile": str(request.dockerfile),
            "platforms": list(request.target_platforms),
            "tags": list(request.raw_tags),
            # Names only, values may hold secrets
            "buildArgs": sorted(request.build_args),
        }

    internal = {}
    for key in ("GITHUB_SHA", "GITHUB_REF", "GITHUB_EVENT_NAME"):
        if os.environ.get(key):
            internal[key.lower().removeprefix("github_")] = os.environ[key]

    metadata = {"startedOn": datetime.now(tz=timezone.utc).isoformat()}
    if os.environ.get("GITHUB_RUN_ID"):
        metadata["invocationId"] = os.environ["GITHUB_RUN_ID"]

    return ProvenancePredicate(
        build_definition=BuildDefinition(external_parameters=external, internal_parameters=internal),
        run_details=RunDetails(builder={"id": _builder_id()}, metadata=metadata),
    )


def require_digest(subject_digest: str | None) -> str:
    """Reject anything that is not a content digest (tags are mutable)."""
    if not subject_digest or not DIGEST_PATTERN.match(subject_digest):
        raise AttestationError(
            f"Attestation subject must be an image digest (sha256:<hex>), got {subject_digest!r}",
            digest=subject_digest,
        )
    return subject_digest


def publish_attestation(subject_name: str, subject_digest: str, predicate_path: Path, predicate_type: str) -> AttestationRecord:
    """Sign a predicate for subject_name@subject_digest and push it to the registry.

    Raises:
        AttestationError: If cosign is missing or fails
    """
    require_digest(subject_digest)
    subject_ref = f"{subject_name}@{subject_digest}"

    try:
        cosign = get_cosign_path()
    except RuntimeError as e:
        raise AttestationError(str(e), digest=subject_digest) from e

    cmd = [
        str(cosign),
        "attest",
        "--yes",
        "--type", predicate_type,
        "--predicate", str(predicate_path),
    ]
    key = get_signing_key()
    if key:
        cmd.extend(["--key", key])
    cmd.append(subject_ref)

    print(f"Attesting {subject_ref} ({predicate_type})...")
    result = subprocess.run(cmd, capture_output=True, text=True)

    if result.returncode != 0:
        print(result.stderr, file=sys.stderr)
        raise AttestationError(
            f"Failed to publish {predicate_type} attestation for {subject_ref}",
            digest=subject_digest,
        )

    print(f"Attestation pushed: {subject_ref}")
    return AttestationRecord(
        subject_name=subject_name,
        subject_digest=subject_digest,
        predicate_type=predicate_type,
        pushed=True,
    )


def attest_provenance(subject_name: str, subject_digest: str, request: BuildRequest | None = None) -> AttestationRecord:
    """Publish a build provenance attestation for a pushed image digest."""
    require_digest(subject_digest)
    predicate = build_provenance_predicate(request)

    with tempfile.TemporaryDirectory() as tmpdir:
        predicate_path = Path(tmpdir) / "provenance.json"
        predicate_path.write_text(predicate.model_dump_json(by_alias=True, indent=2))
        return publish_attestation(subject_name, subject_digest, predicate_path, PROVENANCE_PREDICATE_TYPE)


def attest_sbom(subject_name: str, subject_digest: str, sbom_path: Path) -> AttestationRecord:
    """Publish an SBOM attestation for a pushed image digest."""
    require_digest(subject_digest)
    if not sbom_path.exists():
        raise AttestationError(f"SBOM document not found: {sbom_path}", digest=subject_digest)

    return publish_attestation(subject_name, subject_digest, sbom_path, SBOM_PREDICATE_TYPE)
