"""Dev task entry points declared in pyproject.toml (e.g. `uv run test`)."""

import subprocess
import sys

SOURCES = ["controlplane", "tests"]


def _run(args: list[str]) -> None:
    sys.exit(subprocess.run(args).returncode)


def lint() -> None:
    """ruff check on the package and tests."""
    _run([sys.executable, "-m", "ruff", "check", *SOURCES])


def format() -> None:
    _run([sys.executable, "-m", "ruff", "format", *SOURCES])


def type_check() -> None:
    _run([sys.executable, "-m", "pyright", "controlplane"])


def test() -> None:
    """pytest with branch coverage of the controller package."""
    _run(
        [
            sys.executable,
            "-m",
            "pytest",
            "tests/",
            "--cov=controlplane",
            "--cov-branch",
            "--cov-report=term-missing",
        ]
    )
