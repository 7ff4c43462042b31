"""Pipeline inputs and configuration loading from .image-publisher.yml."""

import os
import re
import sys
from dataclasses import field
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError, dataclasses

from publisher.errors import MalformedInputError

_config_cache: "PublisherConfig | None" = None

CONFIG_FILE = ".image-publisher.yml"

DEFAULT_PLATFORM = "linux/amd64"
DEFAULT_TAGS = "latest"
DEFAULT_CACHE_DIR = "cache"
DEFAULT_CACHE_REF_SUFFIX = "buildcache"
DEFAULT_SBOM_OUTPUT = "sbom.spdx.json"
DEFAULT_SBOM_FORMAT = "spdx-json"

# Shorthands expanded to full buildx platforms; anything else of the form
# os/arch[/variant] is passed through as given
PLATFORM_ALIASES = {
    "amd64": "linux/amd64",
    "arm64": "linux/arm64",
    "arm": "linux/arm/v7",
    "386": "linux/386",
    "ppc64le": "linux/ppc64le",
    "s390x": "linux/s390x",
    "riscv64": "linux/riscv64",
    "linux/arm64/v8": "linux/arm64",
}

_PLATFORM_PATTERN = re.compile(r"^[a-z0-9]+/[a-z0-9_]+(/[a-z0-9]+)?$")

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def expand_env_vars(value: str | None) -> str | None:
    """Expand ${VAR} references in a string value.

    Supports:
    - Pure env var: ${VAR}
    - Multiple env vars: ${USER}/${REPO}
    - Mixed content: ghcr.io/${GITHUB_REPOSITORY}

    Returns None if the value is None or any referenced env var is undefined.
    """
    if value is None:
        return None

    if not value:
        return value

    pattern = r'\$\{([^}]+)\}'
    matches = list(re.finditer(pattern, value))

    if not matches:
        return value

    result = value
    for match in reversed(matches):  # Reverse to preserve positions during replacement
        env_value = os.environ.get(match.group(1))
        if env_value is None:
            return None
        result = result[:match.start()] + env_value + result[match.end():]

    return result


# --- Input parsing ---

def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated input, trimming whitespace and dropping empty items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_bool(value: str | bool | None, default: bool) -> bool:
    """Parse a boolean input as passed by CI systems ('true', 'false', '1', ...)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value

    text = value.strip().lower()
    if not text:
        return default
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise MalformedInputError(f"Invalid boolean value '{value}', expected true or false")


def parse_build_args(value: str | None) -> dict[str, str]:
    """Parse comma-separated KEY=VALUE build-args into a mapping.

    Later duplicates win, the same way repeated --build-arg flags behave.
    """
    build_args = {}
    for item in split_csv(value):
        if "=" not in item:
            raise MalformedInputError(f"Invalid build-arg '{item}', expected KEY=VALUE")
        key, arg_value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise MalformedInputError(f"Invalid build-arg '{item}', name is empty")
        build_args[key] = arg_value
    return build_args


def normalize_platform(plat: str) -> str:
    """Normalize platform string to full form (e.g., 'amd64' -> 'linux/amd64')."""
    if plat in PLATFORM_ALIASES:
        return PLATFORM_ALIASES[plat]
    if not _PLATFORM_PATTERN.match(plat):
        raise MalformedInputError(
            f"Invalid platform: {plat}. Expected os/arch[/variant] or one of {sorted(PLATFORM_ALIASES)}"
        )
    return plat


def normalize_platforms(value: str | None) -> tuple[str, ...]:
    """Normalize a comma-separated platform list, keeping first-seen order."""
    platforms = []
    for plat in split_csv(value) or [DEFAULT_PLATFORM]:
        normalized = normalize_platform(plat)
        if normalized not in platforms:
            platforms.append(normalized)
    return tuple(platforms)


@dataclasses.dataclass(frozen=True)
class BuildRequest:
    """Immutable set of inputs for a single pipeline run."""
    context: Path
    dockerfile: Path
    registry: str
    raw_tags: tuple[str, ...]
    test_platform: str = DEFAULT_PLATFORM
    target_platforms: tuple[str, ...] = (DEFAULT_PLATFORM,)
    build_args: dict[str, str] = field(default_factory=dict)
    push_enabled: bool = True
    summary_enabled: bool = True
    pr_comment_enabled: bool = True

    @classmethod
    def from_inputs(
        cls,
        context: str | None,
        dockerfile: str | None,
        registry: str | None,
        tags: str | None = DEFAULT_TAGS,
        test_platform: str | None = DEFAULT_PLATFORM,
        platforms: str | None = DEFAULT_PLATFORM,
        build_args: str | None = None,
        push: str | bool | None = True,
        summary: str | bool | None = True,
        pr_comment: str | bool | None = True,
    ) -> "BuildRequest":
        """Create a request from raw string inputs, applying defaults."""
        if not context or not context.strip():
            raise MalformedInputError("Build context is required")
        if not registry or not registry.strip():
            raise MalformedInputError("Registry is required")

        context_path = Path(context.strip())
        # Same default as `docker build`: <context>/Dockerfile
        dockerfile_path = Path(dockerfile.strip()) if dockerfile and dockerfile.strip() else context_path / "Dockerfile"

        raw_tags = split_csv(DEFAULT_TAGS if tags is None else tags)
        if not raw_tags:
            raise MalformedInputError("At least one tag is required")

        return cls(
            context=context_path,
            dockerfile=dockerfile_path,
            registry=registry.strip(),
            raw_tags=tuple(raw_tags),
            test_platform=normalize_platform((test_platform or DEFAULT_PLATFORM).strip()),
            target_platforms=normalize_platforms(platforms),
            build_args=parse_build_args(build_args),
            push_enabled=parse_bool(push, True),
            summary_enabled=parse_bool(summary, True),
            pr_comment_enabled=parse_bool(pr_comment, True),
        )


# --- Project configuration file ---

class CacheSettings(BaseModel):
    """Build cache locations"""
    dir: str = DEFAULT_CACHE_DIR
    ref_suffix: str = DEFAULT_CACHE_REF_SUFFIX


class SigningSettings(BaseModel):
    """Attestation signing; no key means keyless signing"""
    key: str | None = None


class VerifySettings(BaseModel):
    """Identity used in the verification commands of the report"""
    repository: str | None = None
    signer_repository: str | None = None
    key: str | None = None


class SbomSettings(BaseModel):
    output: str = DEFAULT_SBOM_OUTPUT
    format: str = DEFAULT_SBOM_FORMAT


class PublisherConfig(BaseModel):
    """Root configuration from .image-publisher.yml"""
    cache: CacheSettings = CacheSettings()
    signing: SigningSettings = SigningSettings()
    verify: VerifySettings = VerifySettings()
    sbom: SbomSettings = SbomSettings()


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config_cache
    _config_cache = None


def load_config() -> PublisherConfig:
    """Load .image-publisher.yml from current directory.

    Returns defaults if the file doesn't exist, is empty or is invalid.
    Result is cached for the duration of the process.
    """
    global _config_cache

    if _config_cache is not None:
        return _config_cache

    config_path = Path.cwd() / CONFIG_FILE

    if not config_path.exists():
        _config_cache = PublisherConfig()
        return _config_cache

    try:
        content = config_path.read_text()
        _config_cache = PublisherConfig.model_validate(yaml.safe_load(content) or {})
    except (ValidationError, yaml.YAMLError) as e:
        print(f"Warning: Ignoring invalid {CONFIG_FILE}: {e}", file=sys.stderr)
        _config_cache = PublisherConfig()

    return _config_cache


def get_cache_dir() -> Path:
    """Get the local build cache directory shared by both build phases."""
    return Path(expand_env_vars(load_config().cache.dir) or DEFAULT_CACHE_DIR)


def get_cache_ref(registry: str) -> str:
    """Get the registry build cache reference (e.g., 'ghcr.io/org/app:buildcache')."""
    suffix = expand_env_vars(load_config().cache.ref_suffix) or DEFAULT_CACHE_REF_SUFFIX
    return f"{registry}:{suffix}"


def get_signing_key() -> str | None:
    """Get the cosign key reference, None for keyless signing."""
    return expand_env_vars(load_config().signing.key)


def get_verify_repository() -> str | None:
    """Get the repository the attestations were produced from."""
    return expand_env_vars(load_config().verify.repository) or os.environ.get("GITHUB_REPOSITORY")


def get_signer_repository() -> str | None:
    """Get the repository whose workflow signed the attestations.

    Defaults to the verify repository when not configured.
    """
    return expand_env_vars(load_config().verify.signer_repository) or get_verify_repository()


def get_verification_key() -> str | None:
    """Get the key reference verifiers check signatures against, None for keyless.

    Defaults to the signing key; a local private key file 'x.key' maps to its
    public half 'x.pub'. KMS and env references are used as given.
    """
    configured = expand_env_vars(load_config().verify.key)
    if configured:
        return configured

    signing_key = get_signing_key()
    if signing_key and "://" not in signing_key and signing_key.endswith(".key"):
        return signing_key.removesuffix(".key") + ".pub"
    return signing_key


def get_sbom_output() -> Path:
    return Path(expand_env_vars(load_config().sbom.output) or DEFAULT_SBOM_OUTPUT)


def get_sbom_format() -> str:
    return load_config().sbom.format
