"""
Dependency categorizer: decides whether a new package belongs in
dependencies or devDependencies, based on its name and on which
files import it.

Priority:
  1. @types/*                         → dev
  2. Known dev tooling (jest, eslint…) → dev
  3. No importing files known         → prod
  4. Any non-test importer            → prod
  5. Only test importers              → dev
"""

from __future__ import annotations

import re
from typing import Iterable, Literal

Category = Literal["prod", "dev"]

_TEST_PATTERNS = [
    re.compile(r"\.(test|spec)\.(ts|js|tsx|jsx|mts|cts|mjs|cjs)$"),
    re.compile(r"-(test|spec)\.(ts|js|tsx|jsx)$"),
    re.compile(r"(^|/)(__tests__|tests?|specs?)/"),
]

KNOWN_DEV_PACKAGES = frozenset({
    "vitest", "jest", "mocha", "chai", "jasmine",
    "eslint", "prettier", "husky", "lint-staged",
    "typescript", "ts-node", "ts-jest", "tsx",
    "webpack", "vite", "rollup", "esbuild",
    "nodemon", "concurrently",
})


def is_test_file(path: str) -> bool:
    path = path.replace("\\", "/")
    return any(p.search(path) for p in _TEST_PATTERNS)


def categorize_package(name: str, importing_files: Iterable[str] = ()) -> Category:
    if name.startswith("@types/") or name in KNOWN_DEV_PACKAGES:
        return "dev"
    files = list(importing_files)
    if not files:
        return "prod"
    return "prod" if any(not is_test_file(f) for f in files) else "dev"


def categorize_packages(entries: dict[str, list[str]]) -> dict[Category, list[str]]:
    """Split `{package: importing files}` into prod and dev lists, preserving order."""
    result: dict[Category, list[str]] = {"prod": [], "dev": []}
    for name, files in entries.items():
        result[categorize_package(name, files)].append(name)
    return result
