"""Error taxonomy for the publish pipeline."""


class PublishError(Exception):
    """Base class for all fatal pipeline errors."""
    pass


class MalformedInputError(PublishError):
    """Raised when pipeline inputs (tags, registry, platforms, build-args) are invalid."""
    pass


class BuildError(PublishError):
    """Raised when the build engine fails during either build phase."""
    pass


class CacheConfigError(PublishError):
    """Raised when a cache location is not reachable before a build starts."""
    pass


class CredentialLeakError(PublishError):
    """Raised when a built image contains workload-identity credential files."""

    def __init__(self, count: int, paths: list[str] | None = None):
        self.count = count
        self.paths = paths or []
        super().__init__(
            f"Found {count} oidc credential file(s) in image filesystem\n"
            "Add the following line to your .dockerignore file\n"
            "gha-creds-*.json"
        )


class AttestationError(PublishError):
    """Raised when SBOM generation or attestation publishing fails.

    The image has already been pushed at this point, so ``digest`` identifies a
    published but unattested image that can be re-attested without rebuilding.
    """

    def __init__(self, message: str, digest: str | None = None):
        self.digest = digest
        super().__init__(message)
