"""Tag normalization: raw tag list + registry -> fully qualified tag set."""

from collections.abc import Sequence

from pydantic import dataclasses

from publisher.errors import MalformedInputError


@dataclasses.dataclass(frozen=True)
class TagSet:
    """Fully qualified tags in input order"""
    entries: tuple[str, ...]
    registry: str

    @property
    def primary(self) -> str:
        """Canonical reference for later stages, always the first entry"""
        return self.entries[0]

    @property
    def short_name(self) -> str:
        """Final path segment of the registry (e.g., 'ghcr.io/org/app' -> 'app')"""
        return self.registry.rsplit("/", 1)[-1]

    def as_csv(self) -> str:
        return ",".join(self.entries)


def normalize(raw_tags: Sequence[str], registry: str) -> TagSet:
    """Qualify each raw tag with the registry.

    A tag containing ':' is assumed to be already qualified and is passed
    through verbatim; anything else becomes '<registry>:<tag>'. Order is
    preserved and duplicates are kept.

    Examples:
        ['latest', 'v1.0'], 'ghcr.io/org/app'
            -> ['ghcr.io/org/app:latest', 'ghcr.io/org/app:v1.0']
        ['myregistry.io/app:sha-abc123'], 'ghcr.io/org/app'
            -> ['myregistry.io/app:sha-abc123']
    """
    if not registry:
        raise MalformedInputError("Registry is required to qualify tags")
    if not raw_tags:
        raise MalformedInputError("Tag list is empty")

    entries = []
    for tag in raw_tags:
        if not tag:
            raise MalformedInputError("Tag list contains an empty tag")
        if ":" in tag:
            entries.append(tag)
        else:
            entries.append(f"{registry}:{tag}")

    return TagSet(entries=tuple(entries), registry=registry)


def attestation_artifact_name(image_ref: str) -> str:
    """Derive a stable artifact base name from an image reference.

    Takes the final path segment and joins its name and tag with '-'
    (e.g., 'ghcr.io/org/app:v1.0' -> 'app-v1.0'). A segment without a tag
    yields '<name>-<name>'.
    """
    basename = image_ref.rsplit("/", 1)[-1]
    name = basename.rsplit(":", 1)[0]
    tag = basename.rsplit(":", 1)[-1]
    return f"{name}-{tag}"
