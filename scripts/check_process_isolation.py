#!/usr/bin/env python3
"""Process isolation validation script.

Only ``core/executor.py`` may spawn child processes, and nothing may go
through a host shell. Remote paths are interpolated into device shell
commands, so a host shell in between would add a second, unquoted layer of
interpretation.

Exit codes:
    0: clean
    1: at least one violation
"""

from __future__ import annotations

import re
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Final, NamedTuple

RED: Final[str] = "\033[91m"
GREEN: Final[str] = "\033[92m"
RESET: Final[str] = "\033[0m"

PACKAGE_DIR: Final[Path] = Path(__file__).resolve().parent.parent / "src" / "report_fetch"
CHECKED_SUBPACKAGES: Final[tuple[str, ...]] = ("core", "types", "utils")
EXECUTOR_MODULE: Final[Path] = Path("core") / "executor.py"

HOST_SHELL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"shell\s*=\s*True|create_subprocess_shell|\bos\.system\(|\bos\.popen\("
)
PROCESS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?:import\s+subprocess\b|from\s+subprocess\s+import\b)|create_subprocess_exec\("
)


class Violation(NamedTuple):
    path: Path
    line: int
    reason: str
    source: str


def find_violations(path: Path, relative: Path) -> Iterator[Violation]:
    """Yield every violation in one module."""
    may_spawn = relative == EXECUTOR_MODULE
    for number, text in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        code = text.strip()
        if code.startswith("#"):
            continue
        if HOST_SHELL_PATTERN.search(code):
            yield Violation(relative, number, "host shell execution", code)
        if not may_spawn and PROCESS_PATTERN.search(text):
            yield Violation(relative, number, "process creation outside the executor", code)


def iter_modules() -> Iterator[tuple[Path, Path]]:
    for subpackage in CHECKED_SUBPACKAGES:
        for path in sorted((PACKAGE_DIR / subpackage).rglob("*.py")):
            if "__pycache__" not in path.parts:
                yield path, path.relative_to(PACKAGE_DIR)


def main() -> int:
    if not PACKAGE_DIR.is_dir():
        print(f"{RED}Package directory not found: {PACKAGE_DIR}{RESET}", file=sys.stderr)
        return 1

    violations = [violation for path, relative in iter_modules() for violation in find_violations(path, relative)]
    if not violations:
        print(f"{GREEN}✓ Process isolation holds in {', '.join(CHECKED_SUBPACKAGES)}{RESET}")
        return 0

    print(f"{RED}✗ {len(violations)} process isolation violation(s):{RESET}")
    for violation in violations:
        print(f"  {violation.path}:{violation.line}: {violation.reason}: {violation.source}")
    print("\nSpawn bridge processes only through CommandExecutor, with an argument list.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
