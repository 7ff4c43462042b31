"""Credential leak scan over the exported filesystem of a built image."""

import fnmatch
import io
import posixpath
import tarfile
from collections.abc import Iterable, Iterator

import docker
from docker.errors import DockerException

from publisher.building import get_docker_client
from publisher.errors import BuildError

# Written by workload-identity auth actions into the workspace
CREDENTIAL_PATTERN = "gha-creds-*.json"


class _ChunkReader(io.RawIOBase):
    """Adapts an iterator of byte chunks to a readable stream for tarfile."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks: Iterator[bytes] = iter(chunks)
        self._buffer = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size


def is_credential_file(path: str) -> bool:
    return fnmatch.fnmatchcase(posixpath.basename(path.rstrip("/")), CREDENTIAL_PATTERN)


def find_credential_files(chunks: Iterable[bytes]) -> list[str]:
    """List credential files in a filesystem tar stream.

    Args:
        chunks: Tar archive as an iterable of byte chunks (e.g., container export)

    Returns:
        Paths of all matching entries, in archive order
    """
    found = []
    stream = io.BufferedReader(_ChunkReader(chunks), buffer_size=1024 * 1024)
    with tarfile.open(fileobj=stream, mode="r|") as archive:
        for member in archive:
            if is_credential_file(member.name):
                found.append(member.name)
    return found


def export_filesystem(image_id: str, client: docker.DockerClient | None = None) -> list[str]:
    """Export the flattened filesystem of an image and return credential file paths.

    The export reflects the final filesystem, so it is taken through a
    throwaway container that is never started.
    """
    try:
        client = client or get_docker_client()
        # Command is required by create but never executed
        container = client.containers.create(image_id, command=["true"])
    except DockerException as e:
        raise BuildError(f"Could not create container from {image_id}: {e}") from e

    try:
        return find_credential_files(container.export())
    except (DockerException, tarfile.TarError) as e:
        raise BuildError(f"Could not export filesystem of {image_id}: {e}") from e
    finally:
        container.remove(force=True)


def scan(image_id: str, client: docker.DockerClient | None = None) -> int:
    """Count credential files in an image.

    A nonzero count is a finding, not an error; callers decide whether to stop.
    """
    print(f"Scanning {image_id} for oidc credentials...")
    paths = export_filesystem(image_id, client)
    for path in paths:
        print(f"  Found: {path}")
    return len(paths)
