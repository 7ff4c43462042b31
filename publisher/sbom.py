"""SBOM (Software Bill of Materials) generation using syft."""

import json
import shutil
import subprocess
import sys
from pathlib import Path

from publisher.building import get_tool_path
from publisher.errors import AttestationError
from publisher.tags import attestation_artifact_name

ARTIFACT_DIR = Path("dist") / "sbom"

# Map format to file extension
EXT_MAP = {
    "spdx-json": "spdx.json",
    "spdx": "spdx",
    "cyclonedx-json": "cyclonedx.json",
    "cyclonedx": "cyclonedx.xml",
    "json": "syft.json",
}


def get_artifact_name(primary_tag: str, format: str = "spdx-json") -> str:
    """Get the artifact file name for an SBOM (e.g., 'sbom-app-v1.0.spdx.json')."""
    ext = EXT_MAP.get(format, f"{format}.json")
    return f"sbom-{attestation_artifact_name(primary_tag)}.{ext}"


def generate_sbom(image_ref: str, output_path: Path, format: str = "spdx-json") -> Path:
    """Generate an SBOM for a published image.

    Args:
        image_ref: Digest-qualified reference (e.g., 'ghcr.io/org/app@sha256:...')
        output_path: Where to write the document
        format: Output format (spdx-json, cyclonedx-json, json, etc.)

    Returns:
        Path to the SBOM document
    """
    if "@" not in image_ref:
        raise AttestationError(f"SBOM source must be digest-qualified, got '{image_ref}'")

    try:
        syft = get_syft_path()
    except RuntimeError as e:
        raise AttestationError(str(e)) from e

    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        str(syft),
        "scan",
        f"registry:{image_ref}",
        "-o", f"{format}={output_path}",
    ]

    print(f"Generating SBOM ({format}) for {image_ref}...")
    print(f"Running: {' '.join(cmd)}")

    result = subprocess.run(cmd)

    if result.returncode != 0 or not output_path.exists():
        raise AttestationError(f"syft failed to generate SBOM for {image_ref} (exit code {result.returncode})")

    print(f"SBOM saved to: {output_path}")
    return output_path


def get_syft_path() -> Path:
    """Get the path to the syft binary."""
    return get_tool_path("syft")


def store_artifact(sbom_path: Path, artifact_name: str) -> Path:
    """Copy the SBOM to its named artifact location, replacing any previous run."""
    artifact_path = ARTIFACT_DIR / artifact_name
    try:
        ARTIFACT_DIR.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(sbom_path, artifact_path)
    except OSError as e:
        raise AttestationError(f"Could not store SBOM artifact {artifact_path}: {e}") from e
    print(f"SBOM artifact: {artifact_path}")
    return artifact_path


def parse_spdx(sbom_path: Path) -> dict:
    """Parse SPDX JSON and extract package information."""
    with open(sbom_path) as f:
        data = json.load(f)

    packages = []
    for pkg in data.get("packages", []):
        # The image itself is described as a package too; skip it
        if pkg.get("primaryPackagePurpose") == "CONTAINER":
            continue

        purl = ""
        for ref in pkg.get("externalRefs", []):
            if ref.get("referenceType") == "purl":
                purl = ref.get("referenceLocator", "")
                break

        packages.append({
            "name": pkg.get("name", ""),
            "version": pkg.get("versionInfo", ""),
            "license": pkg.get("licenseConcluded") or pkg.get("licenseDeclared") or "NOASSERTION",
            "purl": purl,
        })

    packages.sort(key=lambda p: p["name"].lower())

    return {
        "spdx_version": data.get("spdxVersion", ""),
        "name": data.get("name", ""),
        "packages": packages,
        "total": len(packages),
    }


def summarize(sbom_path: Path) -> str | None:
    """One-line package summary of an SPDX document, None if it can't be parsed."""
    try:
        data = parse_spdx(sbom_path)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Warning: Could not parse SBOM: {e}", file=sys.stderr)
        return None

    return f"{data['total']} packages ({data['spdx_version'] or 'unknown SPDX version'})"
