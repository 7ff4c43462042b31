"""Step outputs and CI annotations."""

import os
import sys
from pathlib import Path


def is_github_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS") == "true"


def debug(message: str) -> None:
    """Print a debug line; only visible as an annotation when running in GitHub Actions."""
    if is_github_actions():
        print(f"::debug::{message}")


def error(message: str) -> None:
    """Print an error, as a CI annotation when running in GitHub Actions."""
    if is_github_actions():
        # Annotations are single-line; escape newlines the way the runner expects
        print(f"::error::{message.replace(chr(10), '%0A')}", file=sys.stderr)
    else:
        print(f"Error: {message}", file=sys.stderr)


def write_outputs(outputs: dict[str, str | None], output_path: Path | None = None) -> None:
    """Print outputs and append them to GITHUB_OUTPUT when available.

    Keys with a None value are skipped.
    """
    if output_path is None and os.environ.get("GITHUB_OUTPUT"):
        output_path = Path(os.environ["GITHUB_OUTPUT"])

    lines = [f"{key}={value}" for key, value in outputs.items() if value is not None]
    for line in lines:
        print(line)

    if output_path is not None and lines:
        with open(output_path, "a") as f:
            f.write("\n".join(lines) + "\n")
