import os
from pathlib import Path
from unittest.mock import patch
import pytest
from publisher.config import (
    BuildRequest,
    clear_config_cache,
    expand_env_vars,
    get_cache_dir,
    get_cache_ref,
    get_signer_repository,
    get_signing_key,
    get_verification_key,
    get_verify_repository,
    load_config,
    normalize_platforms,
    parse_bool,
    parse_build_args,
    split_csv,
)
from publisher.errors import MalformedInputError


class TestExpandEnvVars:
    def test_no_env_vars(self):
        """Literal string returned unchanged."""
        assert expand_env_vars("ghcr.io/org/app") == "ghcr.io/org/app"

    def test_single_env_var(self):
        """Single ${VAR} is expanded."""
        with patch.dict(os.environ, {"COSIGN_KEY_REF": "env://COSIGN_KEY"}):
            assert expand_env_vars("${COSIGN_KEY_REF}") == "env://COSIGN_KEY"

    def test_mixed_content(self):
        """Env vars inside literal text are expanded."""
        with patch.dict(os.environ, {"OWNER": "org", "REPO": "app"}):
            assert expand_env_vars("${OWNER}/${REPO}") == "org/app"

    def test_missing_env_var_returns_none(self):
        """Missing env var returns None."""
        with patch.dict(os.environ, {}, clear=True):
            assert expand_env_vars("${MISSING_VAR}") is None

    def test_none_input(self):
        """None input returns None."""
        assert expand_env_vars(None) is None


class TestInputParsing:
    def test_split_csv_trims_and_drops_empty(self):
        assert split_csv(" latest, v1.0,,") == ["latest", "v1.0"]

    def test_split_csv_empty(self):
        assert split_csv("") == []
        assert split_csv(None) == []

    @pytest.mark.parametrize("value,expected", [
        ("true", True), ("True", True), ("1", True), ("yes", True),
        ("false", False), ("FALSE", False), ("0", False), ("no", False),
        (True, True), (False, False),
    ])
    def test_parse_bool(self, value, expected):
        assert parse_bool(value, default=not expected) is expected

    def test_parse_bool_default(self):
        assert parse_bool(None, True) is True
        assert parse_bool("", False) is False

    def test_parse_bool_invalid(self):
        with pytest.raises(MalformedInputError):
            parse_bool("maybe", True)

    def test_parse_build_args(self):
        """Values may contain '=' and later duplicates win."""
        assert parse_build_args("A=1,B=x=y,A=2") == {"A": "2", "B": "x=y"}

    def test_parse_build_args_empty_value(self):
        assert parse_build_args("EMPTY=") == {"EMPTY": ""}

    def test_parse_build_args_missing_equals(self):
        with pytest.raises(MalformedInputError):
            parse_build_args("A=1,BROKEN")

    def test_normalize_platforms_aliases_and_dedupe(self):
        assert normalize_platforms("amd64,linux/arm64,linux/amd64") == ("linux/amd64", "linux/arm64")

    def test_normalize_platforms_default(self):
        assert normalize_platforms("") == ("linux/amd64",)

    @pytest.mark.parametrize("plat", ["windows/amd64", "linux/amd64/v3", "linux/mips64le", "linux/arm/v6"])
    def test_normalize_platforms_passes_full_platforms_through(self, plat):
        assert normalize_platforms(plat) == (plat,)

    def test_normalize_platforms_arm64_variant(self):
        assert normalize_platforms("linux/arm64/v8,arm64") == ("linux/arm64",)

    @pytest.mark.parametrize("plat", ["linux", "Linux/AMD64", "linux/amd64/v3/extra", "mips64le", "linux amd64"])
    def test_normalize_platforms_malformed(self, plat):
        with pytest.raises(MalformedInputError):
            normalize_platforms(plat)

    def test_build_request_with_uncommon_platforms(self):
        request = BuildRequest.from_inputs(
            context=".",
            dockerfile=None,
            registry="ghcr.io/org/app",
            platforms="windows/amd64,linux/amd64/v3",
        )
        assert request.target_platforms == ("windows/amd64", "linux/amd64/v3")


class TestBuildRequest:
    def test_defaults(self):
        """Test request defaults match the documented input defaults"""
        request = BuildRequest.from_inputs(context="app", dockerfile=None, registry="ghcr.io/org/app")

        assert request.context == Path("app")
        assert request.dockerfile == Path("app") / "Dockerfile"
        assert request.raw_tags == ("latest",)
        assert request.test_platform == "linux/amd64"
        assert request.target_platforms == ("linux/amd64",)
        assert request.build_args == {}
        assert request.push_enabled is True
        assert request.summary_enabled is True
        assert request.pr_comment_enabled is True

    def test_full_inputs(self):
        request = BuildRequest.from_inputs(
            context=".",
            dockerfile="docker/Dockerfile",
            registry="ghcr.io/org/app",
            tags="latest,v1.0",
            test_platform="amd64",
            platforms="linux/amd64,linux/arm64",
            build_args="VERSION=1.0,COMMIT=abc",
            push="false",
            summary="false",
        )

        assert request.dockerfile == Path("docker/Dockerfile")
        assert request.raw_tags == ("latest", "v1.0")
        assert request.target_platforms == ("linux/amd64", "linux/arm64")
        assert request.build_args == {"VERSION": "1.0", "COMMIT": "abc"}
        assert request.push_enabled is False
        assert request.summary_enabled is False

    def test_is_immutable(self):
        request = BuildRequest.from_inputs(context=".", dockerfile=None, registry="ghcr.io/org/app")
        with pytest.raises(Exception):
            request.registry = "docker.io/other"

    def test_missing_registry(self):
        with pytest.raises(MalformedInputError):
            BuildRequest.from_inputs(context=".", dockerfile=None, registry=" ")

    def test_missing_context(self):
        with pytest.raises(MalformedInputError):
            BuildRequest.from_inputs(context="", dockerfile=None, registry="ghcr.io/org/app")

    def test_empty_tags(self):
        with pytest.raises(MalformedInputError):
            BuildRequest.from_inputs(context=".", dockerfile=None, registry="ghcr.io/org/app", tags=" , ")


class TestProjectConfig:
    def setup_method(self):
        clear_config_cache()

    def teardown_method(self):
        clear_config_cache()

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        """Without config, defaults are used."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("GITHUB_REPOSITORY", raising=False)

        assert get_cache_dir() == Path("cache")
        assert get_cache_ref("ghcr.io/org/app") == "ghcr.io/org/app:buildcache"
        assert get_signing_key() is None
        assert get_verify_repository() is None

    def test_custom_config(self, tmp_path, monkeypatch):
        config_file = tmp_path / ".image-publisher.yml"
        config_file.write_text(
            "cache:\n"
            "  dir: .buildx-cache\n"
            "  ref_suffix: cache-main\n"
            "signing:\n"
            "  key: ${COSIGN_KEY_REF}\n"
            "verify:\n"
            "  repository: org/app\n"
            "  signer_repository: org/workflows\n"
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("COSIGN_KEY_REF", "env://COSIGN_PRIVATE_KEY")

        assert get_cache_dir() == Path(".buildx-cache")
        assert get_cache_ref("ghcr.io/org/app") == "ghcr.io/org/app:cache-main"
        assert get_signing_key() == "env://COSIGN_PRIVATE_KEY"
        assert get_verify_repository() == "org/app"
        assert get_signer_repository() == "org/workflows"

    def test_verification_key_from_local_signing_key(self, tmp_path, monkeypatch):
        (tmp_path / ".image-publisher.yml").write_text("signing:\n  key: keys/cosign.key\n")
        monkeypatch.chdir(tmp_path)

        assert get_verification_key() == "keys/cosign.pub"

    def test_verification_key_kms_reference_unchanged(self, tmp_path, monkeypatch):
        (tmp_path / ".image-publisher.yml").write_text("signing:\n  key: awskms:///alias/signing.key\n")
        monkeypatch.chdir(tmp_path)

        assert get_verification_key() == "awskms:///alias/signing.key"

    def test_verification_key_configured(self, tmp_path, monkeypatch):
        (tmp_path / ".image-publisher.yml").write_text(
            "signing:\n  key: cosign.key\nverify:\n  key: https://example.com/cosign.pub\n"
        )
        monkeypatch.chdir(tmp_path)

        assert get_verification_key() == "https://example.com/cosign.pub"

    def test_verification_key_keyless(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert get_verification_key() is None

    def test_verify_repository_falls_back_to_env(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("GITHUB_REPOSITORY", "org/from-env")

        assert get_verify_repository() == "org/from-env"
        assert get_signer_repository() == "org/from-env"

    def test_invalid_config_uses_defaults(self, tmp_path, monkeypatch, capsys):
        (tmp_path / ".image-publisher.yml").write_text("cache: [unclosed\n")
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config.cache.dir == "cache"
        assert "Warning" in capsys.readouterr().err

    def test_config_is_cached(self, tmp_path, monkeypatch):
        config_file = tmp_path / ".image-publisher.yml"
        config_file.write_text("cache:\n  dir: first\n")
        monkeypatch.chdir(tmp_path)

        assert get_cache_dir() == Path("first")
        config_file.write_text("cache:\n  dir: second\n")
        assert get_cache_dir() == Path("first")
