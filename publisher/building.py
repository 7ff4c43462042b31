"""Wrapper for the docker buildx build engine."""

import json
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import docker
from docker.errors import DockerException
from pydantic import dataclasses

from publisher.caching import CacheSpec
from publisher.config import BuildRequest
from publisher.errors import BuildError
from publisher.tags import TagSet

BUILDER_NAME = "image-publisher"
BUILDER_DRIVER = "docker-container"
BINFMT_IMAGE = "tonistiigi/binfmt"

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


@dataclasses.dataclass(frozen=True)
class BuildArtifact:
    """Result of a build phase.

    image_id is only set by the verification build and only exists in the
    local engine. digest is only set by the push build and is the
    registry-resolvable identity used for attestations.
    """
    image_id: str | None = None
    digest: str | None = None


def get_docker_client() -> docker.DockerClient:
    """Get Docker client for the host daemon."""
    return docker.from_env()


def get_bin_path() -> Path:
    """Get the path to the bundled bin directory for the current platform."""
    system = platform.system().lower()
    machine = platform.machine().lower()

    if system == "darwin" and machine == "arm64":
        platform_dir = "darwin-arm64"
    elif system == "linux" and machine in ("x86_64", "amd64"):
        platform_dir = "linux-amd64"
    elif system == "linux" and machine in ("arm64", "aarch64"):
        platform_dir = "linux-arm64"
    else:
        raise RuntimeError(f"Unsupported platform: {system}-{machine}")

    return Path(__file__).parent.parent / "bin" / platform_dir


def get_tool_path(name: str) -> Path:
    """Get the path to an external tool, preferring the bundled binary over PATH."""
    try:
        bundled = get_bin_path() / name
    except RuntimeError:
        bundled = None

    if bundled is not None and bundled.exists():
        return bundled

    found = shutil.which(name)
    if found is None:
        raise RuntimeError(f"{name} binary not found in {bundled or 'bin/'} or on PATH")
    return Path(found)


def get_native_platform() -> str:
    """Detect the native platform for the current system."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "linux/amd64"
    elif machine in ("arm64", "aarch64"):
        return "linux/arm64"
    else:
        raise RuntimeError(f"Unsupported architecture: {machine}")


def needs_emulation(platforms: tuple[str, ...] | list[str]) -> bool:
    """Check if building any of the platforms requires QEMU emulation.

    An unrecognized host architecture counts as needing emulation.
    """
    try:
        native = get_native_platform()
    except RuntimeError:
        return True
    return any(plat != native for plat in platforms)


def is_binfmt_installed() -> bool:
    """Check if binfmt handlers are registered for cross-platform builds."""
    binfmt_misc = Path("/proc/sys/fs/binfmt_misc")
    if not binfmt_misc.exists():
        return False

    for entry in binfmt_misc.iterdir():
        if entry.name.startswith("qemu-"):
            return True

    return False


def ensure_binfmt() -> bool:
    """Ensure binfmt handlers are installed for cross-platform builds.

    Runs the binfmt setup container if needed (requires privileged).
    Returns True if emulation is available, False otherwise.
    """
    if is_binfmt_installed():
        return True

    print("Setting up QEMU emulation for cross-platform builds...")
    try:
        client = get_docker_client()
        client.containers.run(
            BINFMT_IMAGE,
            command=["--install", "all"],
            privileged=True,
            remove=True,
        )
        print("QEMU emulation configured successfully")
        return True
    except DockerException as e:
        print(f"Warning: Failed to setup binfmt emulation: {e}", file=sys.stderr)
        print("Cross-platform builds may not work. Run manually:", file=sys.stderr)
        print(f"  docker run --privileged --rm {BINFMT_IMAGE} --install all", file=sys.stderr)
        return False


def ensure_builder() -> None:
    """Ensure a buildx builder that can export cache to local and registry targets exists.

    The default 'docker' driver cannot export cache, so a dedicated
    docker-container builder is created on first use.
    """
    docker_bin = str(get_tool_path("docker"))

    inspect = subprocess.run(
        [docker_bin, "buildx", "inspect", BUILDER_NAME],
        capture_output=True,
        text=True,
    )
    if inspect.returncode == 0:
        return

    print(f"Creating buildx builder '{BUILDER_NAME}' ({BUILDER_DRIVER} driver)...")
    create = subprocess.run(
        [docker_bin, "buildx", "create", "--name", BUILDER_NAME, "--driver", BUILDER_DRIVER, "--bootstrap"],
        capture_output=True,
        text=True,
    )
    if create.returncode != 0:
        raise BuildError(f"Failed to create buildx builder: {create.stderr.strip()}")


def build_command(
    request: BuildRequest,
    tag_set: TagSet,
    platforms: tuple[str, ...],
    cache: CacheSpec,
    output_args: list[str],
) -> list[str]:
    """Assemble a 'docker buildx build' invocation."""
    cmd = [
        str(get_tool_path("docker")), "buildx", "build",
        "--builder", BUILDER_NAME,
        "--platform", ",".join(platforms),
        "--file", str(request.dockerfile),
    ]

    for tag in tag_set.entries:
        cmd.extend(["--tag", tag])

    for key, value in request.build_args.items():
        cmd.extend(["--build-arg", f"{key}={value}"])

    cmd.extend(cache.to_buildx_args())
    cmd.extend(output_args)
    cmd.append(str(request.context))
    return cmd


def _run_engine(cmd: list[str], summary: bool) -> None:
    env = dict(os.environ)
    env["DOCKER_BUILD_SUMMARY"] = "true" if summary else "false"

    print(f"Running: {' '.join(cmd)}", flush=True)
    try:
        result = subprocess.run(cmd, env=env)
    except OSError as e:
        raise BuildError(f"Could not start build engine: {e}") from e

    if result.returncode != 0:
        raise BuildError(f"Build engine exited with code {result.returncode}")


def run_verification_build(request: BuildRequest, tag_set: TagSet, cache: CacheSpec) -> BuildArtifact:
    """Build for the test platform only and load the result into the local engine.

    Returns:
        BuildArtifact with the local image id set
    """
    print(f"Building {tag_set.primary} for {request.test_platform} (verification)...")

    with tempfile.TemporaryDirectory() as tmpdir:
        iid_file = Path(tmpdir) / "iid"
        cmd = build_command(
            request,
            tag_set,
            (request.test_platform,),
            cache,
            ["--load", "--iidfile", str(iid_file)],
        )
        _run_engine(cmd, summary=False)

        if not iid_file.exists() or not iid_file.read_text().strip():
            raise BuildError("Verification build did not report an image id")
        image_id = iid_file.read_text().strip()

    print(f"Verification image loaded: {image_id}")
    return BuildArtifact(image_id=image_id)


def read_metadata_digest(metadata_file: Path) -> str:
    """Read the pushed image digest from a buildx --metadata-file."""
    try:
        metadata = json.loads(metadata_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise BuildError(f"Could not read build metadata: {e}") from e

    digest = metadata.get("containerimage.digest")
    if not digest or not DIGEST_PATTERN.match(digest):
        raise BuildError(f"Build metadata has no valid image digest: {digest!r}")
    return digest


def run_push_build(request: BuildRequest, tag_set: TagSet, cache: CacheSpec) -> BuildArtifact:
    """Build for all target platforms and push to the registry.

    Build engine provenance is disabled; provenance is attested separately
    against the returned digest.

    Returns:
        BuildArtifact with the pushed digest set
    """
    platforms = request.target_platforms
    print(f"Building {tag_set.primary} for platforms: {', '.join(platforms)}")

    with tempfile.TemporaryDirectory() as tmpdir:
        metadata_file = Path(tmpdir) / "metadata.json"
        output_args = [
            f"--push={'true' if request.push_enabled else 'false'}",
            "--provenance=false",
            "--metadata-file", str(metadata_file),
        ]
        cmd = build_command(request, tag_set, platforms, cache, output_args)
        _run_engine(cmd, summary=request.summary_enabled)
        digest = read_metadata_digest(metadata_file)

    print(f"Pushed {tag_set.as_csv()} ({digest})")
    return BuildArtifact(digest=digest)


def prepare_engine(request: BuildRequest) -> None:
    """Set up emulation and the buildx builder before the first build."""
    platforms = (request.test_platform, *request.target_platforms)
    if needs_emulation(platforms) and not ensure_binfmt():
        print("Warning: Emulation setup failed, non-native platforms may not build", file=sys.stderr)

    ensure_builder()
