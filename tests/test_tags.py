import pytest
from publisher.errors import MalformedInputError
from publisher.tags import TagSet, attestation_artifact_name, normalize


def test_normalize_plain_tags():
    """Test plain tags are qualified with the registry"""
    tag_set = normalize(["latest", "v1.0"], "ghcr.io/org/app")

    assert tag_set.entries == ("ghcr.io/org/app:latest", "ghcr.io/org/app:v1.0")
    assert tag_set.primary == "ghcr.io/org/app:latest"
    assert tag_set.short_name == "app"


def test_normalize_prequalified_tag_passthrough():
    """Test tags containing a colon are passed through verbatim"""
    tag_set = normalize(["myregistry.io/app:sha-abc123"], "ghcr.io/org/app")

    assert tag_set.entries == ("myregistry.io/app:sha-abc123",)
    assert tag_set.primary == "myregistry.io/app:sha-abc123"


def test_normalize_all_prequalified_keeps_order():
    """Test all pre-qualified input comes back identical and in order"""
    raw = ["b.io/x:2", "a.io/y:1", "c.io/z:3"]
    tag_set = normalize(raw, "ghcr.io/org/app")

    assert list(tag_set.entries) == raw


def test_normalize_mixed_tags():
    """Test mixed plain and pre-qualified tags keep input order"""
    tag_set = normalize(["v2", "docker.io/org/app:v2", "stable"], "ghcr.io/org/app")

    assert tag_set.entries == (
        "ghcr.io/org/app:v2",
        "docker.io/org/app:v2",
        "ghcr.io/org/app:stable",
    )


def test_normalize_keeps_duplicates():
    """Test duplicate effective tags are not removed"""
    tag_set = normalize(["latest", "ghcr.io/org/app:latest"], "ghcr.io/org/app")

    assert tag_set.entries == ("ghcr.io/org/app:latest", "ghcr.io/org/app:latest")


def test_normalize_digest_like_tag_passes_through():
    """Test a 'sha256:...' tag is treated as pre-qualified, not as a digest"""
    tag_set = normalize(["sha256:abcdef"], "ghcr.io/org/app")

    assert tag_set.entries == ("sha256:abcdef",)


def test_normalize_empty_tag_list():
    """Test empty tag list is rejected"""
    with pytest.raises(MalformedInputError):
        normalize([], "ghcr.io/org/app")


def test_normalize_empty_registry():
    """Test empty registry is rejected"""
    with pytest.raises(MalformedInputError):
        normalize(["latest"], "")


def test_normalize_empty_tag_entry():
    """Test an empty tag inside the list is rejected"""
    with pytest.raises(MalformedInputError):
        normalize(["latest", ""], "ghcr.io/org/app")


@pytest.mark.parametrize("registry,expected", [
    ("ghcr.io/org/app", "app"),
    ("docker.io/my-repo", "my-repo"),
    ("localhost:5000/team/sub/service", "service"),
])
def test_short_name_is_last_path_segment(registry, expected):
    """Test short name equals the final path segment of the registry"""
    assert normalize(["latest"], registry).short_name == expected


def test_as_csv():
    tag_set = TagSet(entries=("r.io/a:1", "r.io/a:2"), registry="r.io/a")
    assert tag_set.as_csv() == "r.io/a:1,r.io/a:2"


@pytest.mark.parametrize("image_ref,expected", [
    ("ghcr.io/org/app:latest", "app-latest"),
    ("ghcr.io/org/app:v1.0", "app-v1.0"),
    ("localhost:5000/app:sha-abc", "app-sha-abc"),
    ("ghcr.io/org/app", "app-app"),
])
def test_attestation_artifact_name(image_ref, expected):
    """Test artifact name joins final segment name and tag"""
    assert attestation_artifact_name(image_ref) == expected
