"""Build cache policy for the verification and push builds."""

import os
import re
import socket
from enum import Enum
from pathlib import Path

from pydantic import dataclasses

from publisher.errors import CacheConfigError

# Known cloud registries - skip socket check, they use HTTPS
CLOUD_REGISTRIES = [
    "ghcr.io",
    "docker.io",
    "registry.hub.docker.com",
    "gcr.io",
    "us.gcr.io",
    "eu.gcr.io",
    "asia.gcr.io",
    "pkg.dev",
    "azurecr.io",
    "ecr.aws",
    "amazonaws.com",
    "quay.io",
]

# Registry for references without a host component (e.g., 'myorg/app')
DEFAULT_REGISTRY = "docker.io"

# [host[:port]/]path[:tag] with lowercase repository path components
_REFERENCE_PATTERN = re.compile(
    r"^(?:(?P<host>[a-zA-Z0-9.-]+(?::\d+)?)/)?(?P<path>[a-z0-9._/-]+)(?::(?P<tag>[\w][\w.-]{0,127}))?$"
)


class CacheKind(str, Enum):
    REGISTRY = "registry"
    LOCAL = "local"


class CacheMode(str, Enum):
    NORMAL = "normal"
    MAX = "max"


@dataclasses.dataclass(frozen=True)
class CacheSource:
    """Where a build reads its layer cache from"""
    kind: CacheKind
    locator: str

    def to_arg(self) -> str:
        if self.kind == CacheKind.REGISTRY:
            return f"type=registry,ref={self.locator}"
        return f"type=local,src={self.locator}"


@dataclasses.dataclass(frozen=True)
class CacheDestination:
    """Where a build writes its layer cache to"""
    kind: CacheKind
    locator: str
    mode: CacheMode = CacheMode.NORMAL

    def to_arg(self) -> str:
        if self.kind == CacheKind.REGISTRY:
            arg = f"type=registry,ref={self.locator}"
        else:
            arg = f"type=local,dest={self.locator}"
        # max exports all intermediate layers, not just the final stage
        if self.mode == CacheMode.MAX:
            arg += ",mode=max"
        return arg


@dataclasses.dataclass(frozen=True)
class CacheSpec:
    """Cache read/write policy for a single build phase"""
    read_from: CacheSource
    write_to: CacheDestination

    def to_buildx_args(self) -> list[str]:
        return [
            "--cache-from", self.read_from.to_arg(),
            "--cache-to", self.write_to.to_arg(),
        ]


def verification_cache_spec(cache_ref: str, cache_dir: Path) -> CacheSpec:
    """Phase 1: read the registry cache, seed the local cache directory."""
    return CacheSpec(
        read_from=CacheSource(CacheKind.REGISTRY, cache_ref),
        write_to=CacheDestination(CacheKind.LOCAL, str(cache_dir)),
    )


def push_cache_spec(cache_ref: str, cache_dir: Path) -> CacheSpec:
    """Phase 2: read the local cache seeded by phase 1, write everything back to the registry."""
    return CacheSpec(
        read_from=CacheSource(CacheKind.LOCAL, str(cache_dir)),
        write_to=CacheDestination(CacheKind.REGISTRY, cache_ref, CacheMode.MAX),
    )


def is_cloud_registry(host: str) -> bool:
    """Check if host matches or ends with a known cloud registry."""
    for cloud_reg in CLOUD_REGISTRIES:
        if host == cloud_reg or host.endswith(f".{cloud_reg}"):
            return True
    return False


def registry_host(reference: str) -> str:
    """Get the registry host of an image reference.

    The first path segment is a host only if it looks like one (contains '.'
    or ':', or is 'localhost'); otherwise the reference lives on Docker Hub.

    Examples:
        'ghcr.io/org/app:buildcache' -> 'ghcr.io'
        'localhost:5000/app' -> 'localhost:5000'
        'myorg/app:buildcache' -> 'docker.io'
    """
    first, sep, _ = reference.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


def check_registry_connection(reference: str) -> bool:
    """Check if the registry hosting a reference is reachable."""
    host = registry_host(reference)

    if is_cloud_registry(host):
        return True

    if ":" in host:
        host, port_str = host.rsplit(":", 1)
        port = int(port_str)
    else:
        port = 443

    try:
        conn = socket.create_connection((host, port), timeout=2)
        conn.close()
        return True
    except OSError:
        return False


def _nearest_existing(path: Path) -> Path:
    current = path.absolute()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


def _validate_local(locator: str, write: bool) -> None:
    path = Path(locator)
    if path.exists() and not path.is_dir():
        raise CacheConfigError(f"Local cache path is not a directory: {path}")

    if path.exists():
        mode = os.R_OK | os.X_OK | (os.W_OK if write else 0)
        if not os.access(path, mode):
            raise CacheConfigError(f"Local cache directory is not accessible: {path}")
        return

    # Not created yet: the first existing ancestor must let us create it
    ancestor = _nearest_existing(path)
    if not ancestor.is_dir() or not os.access(ancestor, os.W_OK | os.X_OK):
        raise CacheConfigError(f"Cannot create local cache directory {path} (no write access to {ancestor})")


def _validate_registry(locator: str) -> None:
    if not _REFERENCE_PATTERN.match(locator):
        raise CacheConfigError(f"Invalid registry cache reference: {locator}")
    if not check_registry_connection(locator):
        raise CacheConfigError(f"Registry cache not reachable: {locator}")


def validate_cache_spec(spec: CacheSpec) -> None:
    """Check that both cache locations of a phase are usable.

    Raises:
        CacheConfigError: If a locator is malformed or unreachable
    """
    if spec.read_from.kind == CacheKind.REGISTRY:
        _validate_registry(spec.read_from.locator)
    else:
        _validate_local(spec.read_from.locator, write=False)

    if spec.write_to.kind == CacheKind.REGISTRY:
        _validate_registry(spec.write_to.locator)
    else:
        _validate_local(spec.write_to.locator, write=True)
