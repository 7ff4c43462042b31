"""Unified CLI for image publisher."""

import sys

from publisher.config import DEFAULT_PLATFORM, DEFAULT_TAGS, BuildRequest, parse_bool, split_csv
from publisher.errors import CredentialLeakError, MalformedInputError, PublishError
from publisher.outputs import error, write_outputs
from publisher.pipeline import attest_existing, run_pipeline
from publisher.scanning import scan
from publisher.tags import normalize

PUBLISH_OPTIONS = (
    "context", "dockerfile", "registry", "tags", "platforms", "test-platform",
    "build-args", "push", "summary", "pr-comment",
)


def print_usage() -> None:
    """Print main usage information."""
    print("Usage: image-publisher <command> [args]", file=sys.stderr)
    print()
    print("Commands:")
    print("  publish             Build, scan, push and attest an image")
    print("  tags                Normalize tags and print outputs")
    print("  scan <image>        Scan a local image for leaked oidc credentials")
    print("  attest              Attest an already published digest (SBOM + provenance)")
    print()
    print("Publish options:")
    print("  --context PATH      Build context (required)")
    print("  --dockerfile PATH   Dockerfile (default: <context>/Dockerfile)")
    print("  --registry REF      Image repository, e.g. ghcr.io/org/app (required)")
    print(f"  --tags LIST         Comma-separated tags (default: {DEFAULT_TAGS})")
    print(f"  --platforms LIST    Comma-separated target platforms (default: {DEFAULT_PLATFORM})")
    print(f"  --test-platform P   Platform of the verification build (default: {DEFAULT_PLATFORM})")
    print("  --build-args LIST   Comma-separated KEY=VALUE build-args")
    print("  --push BOOL         Push and attest the image (default: true)")
    print("  --summary BOOL      Write the verification summary (default: true)")
    print("  --pr-comment BOOL   Accepted for compatibility, currently unused")
    print()
    print("Tags options:")
    print("  --registry REF      Image repository (required)")
    print(f"  --tags LIST         Comma-separated tags (default: {DEFAULT_TAGS})")
    print()
    print("Attest options:")
    print("  --registry REF      Image repository (required)")
    print("  --digest DIGEST     Published digest, sha256:<hex> (required)")
    print("  --tag TAG           Primary tag, used to name the SBOM artifact (default: latest)")
    print("  --summary BOOL      Write the verification summary (default: true)")
    print()
    print("Examples:")
    print("  image-publisher publish --context . --registry ghcr.io/org/app --tags latest,v1.0")
    print("  image-publisher publish --context . --registry ghcr.io/org/app --platforms amd64,arm64")
    print("  image-publisher tags --registry ghcr.io/org/app --tags latest,ghcr.io/org/app:sha-abc123")
    print("  image-publisher scan ghcr.io/org/app:latest")
    print("  image-publisher attest --registry ghcr.io/org/app --digest sha256:... --tag v1.0")


def parse_options(args: list[str], allowed: tuple[str, ...]) -> tuple[dict[str, str], list[str]] | None:
    """Parse '--name value' and '--name=value' options.

    Returns (options, positionals), or None after printing an error.
    """
    opts = {}
    positionals = []

    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--"):
            name, sep, value = arg[2:].partition("=")
            if name not in allowed:
                print(f"Unknown argument: {arg}", file=sys.stderr)
                return None
            if not sep:
                if i + 1 >= len(args):
                    print(f"Missing value for --{name}", file=sys.stderr)
                    return None
                value = args[i + 1]
                i += 1
            opts[name] = value
        else:
            positionals.append(arg)
        i += 1

    return opts, positionals


def cmd_publish(args: list[str]) -> int:
    """Run the full build and publish pipeline."""
    parsed = parse_options(args, PUBLISH_OPTIONS)
    if parsed is None:
        return 1
    opts, _ = parsed

    try:
        request = BuildRequest.from_inputs(
            context=opts.get("context"),
            dockerfile=opts.get("dockerfile"),
            registry=opts.get("registry"),
            tags=opts.get("tags", DEFAULT_TAGS),
            test_platform=opts.get("test-platform", DEFAULT_PLATFORM),
            platforms=opts.get("platforms", DEFAULT_PLATFORM),
            build_args=opts.get("build-args"),
            push=opts.get("push", "true"),
            summary=opts.get("summary", "true"),
            pr_comment=opts.get("pr-comment", "true"),
        )
        result = run_pipeline(request)
    except (PublishError, RuntimeError) as e:
        error(str(e))
        return 1

    if result.artifact.digest:
        print(f"Published {result.tag_set.primary} ({result.artifact.digest})")
    else:
        print(f"Built and verified {result.tag_set.primary} (not pushed)")
    return 0


def cmd_tags(args: list[str]) -> int:
    """Normalize tags and emit the tag outputs."""
    parsed = parse_options(args, ("registry", "tags"))
    if parsed is None:
        return 1
    opts, _ = parsed

    try:
        tag_set = normalize(split_csv(opts.get("tags", DEFAULT_TAGS)), opts.get("registry", ""))
    except MalformedInputError as e:
        error(str(e))
        return 1

    write_outputs({
        "app-name": tag_set.short_name,
        "full-image-name": tag_set.primary,
        "processed-tags": tag_set.as_csv(),
    })
    return 0


def cmd_scan(args: list[str]) -> int:
    """Scan local images for credential files."""
    parsed = parse_options(args, ())
    if parsed is None:
        return 1
    _, images = parsed

    if not images:
        print("Error: scan requires an image reference or id", file=sys.stderr)
        return 1

    exit_code = 0
    for image in images:
        try:
            count = scan(image)
        except (PublishError, RuntimeError) as e:
            error(str(e))
            return 1
        if count >= 1:
            error(str(CredentialLeakError(count)))
            exit_code = 1
        else:
            print(f"  No credentials found in {image}")

    return exit_code


def cmd_attest(args: list[str]) -> int:
    """Attest an already published digest."""
    parsed = parse_options(args, ("registry", "digest", "tag", "summary"))
    if parsed is None:
        return 1
    opts, _ = parsed

    registry = opts.get("registry")
    digest = opts.get("digest")
    if not registry or not digest:
        print("Error: --registry and --digest are required", file=sys.stderr)
        return 1

    try:
        summary = parse_bool(opts.get("summary"), True)
        primary_tag = normalize([opts.get("tag", DEFAULT_TAGS)], registry).primary
        result = attest_existing(registry, digest, primary_tag, summary=summary)
    except (PublishError, RuntimeError) as e:
        error(str(e))
        return 1

    write_outputs({"digest": digest, "attestation-artifact-name": result.artifact_name})
    return 0


def main():
    if len(sys.argv) < 2:
        print_usage()
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]

    if command in ("--help", "-h"):
        print_usage()
        sys.exit(0)
    elif command == "publish":
        sys.exit(cmd_publish(args))
    elif command == "tags":
        sys.exit(cmd_tags(args))
    elif command == "scan":
        sys.exit(cmd_scan(args))
    elif command == "attest":
        sys.exit(cmd_attest(args))
    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        print_usage()
        sys.exit(1)


if __name__ == "__main__":
    main()
