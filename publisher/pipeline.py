"""Build, scan, publish and attest pipeline."""

import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from publisher import attestation, building, reporting, sbom, scanning
from publisher.attestation import AttestationRecord
from publisher.building import BuildArtifact
from publisher.caching import CacheSpec, push_cache_spec, validate_cache_spec, verification_cache_spec
from publisher.config import (
    BuildRequest,
    get_cache_dir,
    get_cache_ref,
    get_sbom_format,
    get_sbom_output,
    get_signer_repository,
    get_verification_key,
    get_verify_repository,
)
from publisher.errors import AttestationError, CredentialLeakError
from publisher.outputs import debug, write_outputs
from publisher.tags import TagSet, attestation_artifact_name, normalize


class BuildState(str, Enum):
    IDLE = "idle"
    VERIFICATION_BUILD = "verification-build"
    CREDENTIAL_SCAN = "credential-scan"
    PUSH_BUILD = "push-build"
    COMPLETE = "complete"
    FAILED = "failed"


# One-way transitions; FAILED and COMPLETE are terminal
TRANSITIONS = {
    BuildState.IDLE: {BuildState.VERIFICATION_BUILD, BuildState.FAILED},
    BuildState.VERIFICATION_BUILD: {BuildState.CREDENTIAL_SCAN, BuildState.FAILED},
    BuildState.CREDENTIAL_SCAN: {BuildState.PUSH_BUILD, BuildState.COMPLETE, BuildState.FAILED},
    BuildState.PUSH_BUILD: {BuildState.COMPLETE, BuildState.FAILED},
    BuildState.COMPLETE: set(),
    BuildState.FAILED: set(),
}


@dataclass
class Toolchain:
    """External collaborators of the pipeline.

    Defaults drive the real tools; tests swap in fakes.
    """
    prepare: Callable[[BuildRequest], None] = building.prepare_engine
    validate_cache: Callable[[CacheSpec], None] = validate_cache_spec
    verification_build: Callable[[BuildRequest, TagSet, CacheSpec], BuildArtifact] = building.run_verification_build
    push_build: Callable[[BuildRequest, TagSet, CacheSpec], BuildArtifact] = building.run_push_build
    scan: Callable[[str], int] = scanning.scan
    generate_sbom: Callable[[str, Path, str], Path] = sbom.generate_sbom
    store_sbom: Callable[[Path, str], Path] = sbom.store_artifact
    attest_provenance: Callable[..., AttestationRecord] = attestation.attest_provenance
    attest_sbom: Callable[[str, str, Path], AttestationRecord] = attestation.attest_sbom
    report: Callable[..., str] = reporting.report
    write_summary: Callable[[str], bool] = reporting.write_summary
    write_outputs: Callable[[dict], None] = write_outputs


class BuildOrchestrator:
    """Runs the verification build, the credential gate and the push build in order."""

    def __init__(
        self,
        request: BuildRequest,
        tag_set: TagSet,
        verification_cache: CacheSpec,
        push_cache: CacheSpec,
        toolchain: Toolchain | None = None,
    ):
        self.request = request
        self.tag_set = tag_set
        self.verification_cache = verification_cache
        self.push_cache = push_cache
        self.toolchain = toolchain or Toolchain()
        self.state = BuildState.IDLE
        self.history = [BuildState.IDLE]
        self.scan_count: int | None = None

    def _transition(self, new_state: BuildState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid build state transition: {self.state.value} -> {new_state.value}")
        debug(f"build state {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def run(self) -> BuildArtifact:
        """Run all build phases.

        Returns:
            BuildArtifact with image_id from the verification build and, when
            pushing is enabled, the digest from the push build

        Raises:
            BuildError: If either build fails
            CredentialLeakError: If the verification image contains credentials
        """
        try:
            return self._run()
        except Exception:
            if self.state not in (BuildState.COMPLETE, BuildState.FAILED):
                self._transition(BuildState.FAILED)
            raise

    def _run(self) -> BuildArtifact:
        self._transition(BuildState.VERIFICATION_BUILD)
        verification = self.toolchain.verification_build(self.request, self.tag_set, self.verification_cache)

        self._transition(BuildState.CREDENTIAL_SCAN)
        self.scan_count = self.toolchain.scan(verification.image_id)
        if self.scan_count >= 1:
            raise CredentialLeakError(self.scan_count)

        if not self.request.push_enabled:
            print("Push disabled, skipping push build")
            self._transition(BuildState.COMPLETE)
            return verification

        self._enter_push_build()
        pushed = self.toolchain.push_build(self.request, self.tag_set, self.push_cache)

        self._transition(BuildState.COMPLETE)
        return BuildArtifact(image_id=verification.image_id, digest=pushed.digest)

    def _enter_push_build(self) -> None:
        # Pushing requires a completed scan with no findings
        if self.state != BuildState.CREDENTIAL_SCAN or self.scan_count != 0:
            raise RuntimeError("Push build requires a completed credential scan without findings")
        self._transition(BuildState.PUSH_BUILD)


@dataclass
class AttestationResult:
    """Outcome of the attestation stage for one digest"""
    artifact_name: str
    sbom_path: Path
    records: list[AttestationRecord] = field(default_factory=list)
    report: str | None = None


@dataclass
class PipelineResult:
    tag_set: TagSet
    artifact: BuildArtifact
    attestation: AttestationResult | None = None

    def outputs(self) -> dict[str, str | None]:
        return {
            "app-name": self.tag_set.short_name,
            "full-image-name": self.tag_set.primary,
            "processed-tags": self.tag_set.as_csv(),
            "image-id": self.artifact.image_id,
            "digest": self.artifact.digest,
            "attestation-artifact-name": self.attestation.artifact_name if self.attestation else None,
        }


def attest_existing(
    registry: str,
    digest: str,
    primary_tag: str,
    request: BuildRequest | None = None,
    summary: bool = True,
    toolchain: Toolchain | None = None,
) -> AttestationResult:
    """Generate the SBOM and publish provenance and SBOM attestations for a pushed digest.

    Usable on its own to re-attest an image whose earlier attestation failed.

    Raises:
        AttestationError: If SBOM generation or publishing fails
    """
    toolchain = toolchain or Toolchain()
    attestation.require_digest(digest)

    sbom_format = get_sbom_format()
    artifact_name = attestation_artifact_name(primary_tag)
    result = AttestationResult(artifact_name=artifact_name, sbom_path=get_sbom_output())

    result.records.append(toolchain.attest_provenance(registry, digest, request))

    try:
        result.sbom_path = toolchain.generate_sbom(f"{registry}@{digest}", result.sbom_path, sbom_format)
        if sbom_format == "spdx-json":
            contents = sbom.summarize(result.sbom_path)
            if contents:
                print(f"SBOM contains {contents}")
        toolchain.store_sbom(result.sbom_path, sbom.get_artifact_name(primary_tag, sbom_format))
    except AttestationError as e:
        # Tie SBOM failures to the published digest so it can be re-attested
        raise AttestationError(str(e), digest=digest) from e

    result.records.append(toolchain.attest_sbom(registry, digest, result.sbom_path))

    # Reporting is best-effort and never fails the pipeline
    try:
        result.report = toolchain.report(
            registry, digest, get_verify_repository(), get_signer_repository(), get_verification_key()
        )
        if summary:
            toolchain.write_summary(result.report)
    except Exception as e:
        print(f"Warning: Could not write verification report: {e}", file=sys.stderr)

    return result


def run_pipeline(request: BuildRequest, toolchain: Toolchain | None = None) -> PipelineResult:
    """Run the full pipeline for a request.

    Stages run strictly in order and the first failure aborts the run.

    Raises:
        PublishError: Any fatal pipeline error
    """
    toolchain = toolchain or Toolchain()

    tag_set = normalize(request.raw_tags, request.registry)
    debug(f"processed_tags={' '.join(tag_set.entries)}")
    debug(f"first_tag={tag_set.primary}")

    cache_dir = get_cache_dir()
    cache_ref = get_cache_ref(request.registry)
    verification_cache = verification_cache_spec(cache_ref, cache_dir)
    push_cache = push_cache_spec(cache_ref, cache_dir)

    toolchain.validate_cache(verification_cache)
    if request.push_enabled:
        toolchain.validate_cache(push_cache)

    toolchain.prepare(request)

    orchestrator = BuildOrchestrator(request, tag_set, verification_cache, push_cache, toolchain)
    artifact = orchestrator.run()
    result = PipelineResult(tag_set=tag_set, artifact=artifact)

    # Written before attesting; a failed attestation still leaves the digest in the outputs
    toolchain.write_outputs(result.outputs())

    if artifact.digest is None:
        return result

    result.attestation = attest_existing(
        registry=request.registry,
        digest=artifact.digest,
        primary_tag=tag_set.primary,
        request=request,
        summary=request.summary_enabled,
        toolchain=toolchain,
    )
    toolchain.write_outputs({"attestation-artifact-name": result.attestation.artifact_name})
    return result

