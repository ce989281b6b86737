#!/usr/bin/env python3
"""
Linting script for the recorder.
Runs ruff, isort and black over the project, fixing issues in place by default.

Usage:
    python lint.py            # fix
    python lint.py --check    # report only, non-zero exit on problems
    python lint.py ear/pcm.py # restrict to given paths
"""

import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent

DEFAULT_TARGETS = ["ear", "cogs", "scripts", "tests", "lint.py", "main.py"]


def build_operations(targets: list[str], check_only: bool) -> list[tuple[list[str], str]]:
    """Commands to run, in order, paired with a label for the summary."""
    if check_only:
        return [
            (["ruff", "check", *targets], "ruff lint"),
            (["isort", "--check-only", *targets], "isort import order"),
            (["black", "--check", *targets], "black formatting"),
        ]
    return [
        (["ruff", "check", "--fix", *targets], "ruff auto-fix"),
        (["isort", *targets], "isort import sorting"),
        (["black", *targets], "black formatting"),
    ]


def run_command(command: list[str], description: str) -> bool:
    print(f"\n{'=' * 80}")
    print(f"{description}: {' '.join(command)}")
    print(f"{'=' * 80}\n")

    try:
        result = subprocess.run(command, cwd=PROJECT_ROOT)
    except FileNotFoundError:
        print(f"❌ {command[0]} is not installed (pip install -e '.[dev]')")
        return False

    print(f"\n{'✅' if result.returncode == 0 else '❌'} {description}\n")
    return result.returncode == 0


def main(argv: list[str]) -> int:
    check_only = "--check" in argv
    targets = [arg for arg in argv if not arg.startswith("--")] or DEFAULT_TARGETS

    operations = build_operations(targets, check_only)
    results = [run_command(command, description) for command, description in operations]

    print(f"\n{'=' * 80}\nSUMMARY\n{'=' * 80}")
    for (_, description), passed in zip(operations, results):
        print(f"{'PASSED' if passed else 'FAILED'}: {description}")

    if all(results):
        return 0

    if check_only:
        print("\nRun 'python lint.py' without --check to auto-fix.")
    return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
