"""
Import Classifier — static import checks for generated JS/TS code.

Pulls module specifiers out of ES imports, CommonJS requires and
dynamic imports (ignoring anything inside comments), then sorts them
into relative, builtin, installed, or missing. Missing packages get a
suggested fix, and a built-in alternative where one is known.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from changegate.agents.coder import FileChange
    from changegate.consent.manager import ConsentManager


NODE_BUILTINS = frozenset({
    "assert", "async_hooks", "buffer", "child_process", "cluster",
    "console", "constants", "crypto", "dgram", "diagnostics_channel",
    "dns", "domain", "events", "fs", "http", "http2", "https",
    "inspector", "module", "net", "os", "path", "perf_hooks",
    "process", "punycode", "querystring", "readline", "repl",
    "stream", "string_decoder", "timers", "tls", "trace_events",
    "tty", "url", "util", "v8", "vm", "wasi", "worker_threads", "zlib",
})

BUILTIN_PREFIX = "node:"

JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts")


class AlternativeInfo(BaseModel):
    module: str
    description: str
    example: str
    min_runtime_version: str | None = None


def _alt(module: str, description: str, example: str, min_version: str | None = None) -> AlternativeInfo:
    return AlternativeInfo(module=module, description=description, example=example, min_runtime_version=min_version)


_HTTP = _alt(
    "fetch", "Global fetch API for HTTP requests",
    "const res = await fetch(url); const data = await res.json()", "18.0.0",
)
_COLOR = _alt(
    "node:util", "util.styleText for terminal colors, or plain ANSI escape codes",
    "import { styleText } from 'node:util'; styleText('red', 'error')", "20.12.0",
)
_DATE = _alt(
    "Intl.DateTimeFormat", "Native Date with Intl.DateTimeFormat",
    "new Intl.DateTimeFormat('en-US', { dateStyle: 'medium' }).format(new Date())",
)
_NATIVE = _alt(
    "Array/Object methods", "Native Array and Object methods plus structuredClone",
    "const copy = structuredClone(obj); const uniq = [...new Set(items)]", "17.0.0",
)

SUBSTITUTION_MAP: dict[str, AlternativeInfo] = {
    "axios": _HTTP,
    "node-fetch": _HTTP,
    "got": _HTTP,
    "request": _HTTP,
    "superagent": _HTTP,
    "cross-fetch": _HTTP,
    "uuid": _alt(
        "node:crypto", "crypto.randomUUID() generates RFC 4122 v4 UUIDs",
        "import { randomUUID } from 'node:crypto'; const id = randomUUID()", "14.17.0",
    ),
    "nanoid": _alt(
        "node:crypto", "crypto.randomBytes for random identifiers",
        "import { randomBytes } from 'node:crypto'; const id = randomBytes(16).toString('hex')",
    ),
    "lodash": _NATIVE,
    "underscore": _NATIVE,
    "fs-extra": _alt(
        "node:fs/promises", "fs.promises with recursive options",
        "import { mkdir, cp } from 'node:fs/promises'; await mkdir(dir, { recursive: true })", "16.7.0",
    ),
    "mkdirp": _alt(
        "node:fs", "fs.mkdirSync with recursive: true",
        "import { mkdirSync } from 'node:fs'; mkdirSync(dir, { recursive: true })", "10.12.0",
    ),
    "rimraf": _alt(
        "node:fs", "fs.rmSync with recursive and force",
        "import { rmSync } from 'node:fs'; rmSync(dir, { recursive: true, force: true })", "14.14.0",
    ),
    "glob": _alt(
        "node:fs/promises", "fs.promises.glob, or readdir with recursive: true",
        "import { readdir } from 'node:fs/promises'; await readdir(dir, { recursive: true })", "20.1.0",
    ),
    "chalk": _COLOR,
    "colors": _COLOR,
    "kleur": _COLOR,
    "moment": _DATE,
    "dayjs": _DATE,
    "path-exists": _alt(
        "node:fs", "fs.existsSync",
        "import { existsSync } from 'node:fs'; existsSync(path)",
    ),
    "dotenv": _alt(
        "process.loadEnvFile", "Built-in .env loading",
        "process.loadEnvFile('.env')", "20.12.0",
    ),
    "minimist": _alt(
        "node:util", "util.parseArgs for command-line flags",
        "import { parseArgs } from 'node:util'; const { values } = parseArgs({ options: { verbose: { type: 'boolean' } } })",
        "18.3.0",
    ),
    "yargs": _alt(
        "node:util", "util.parseArgs for command-line flags",
        "import { parseArgs } from 'node:util'; const { values } = parseArgs({ options: { port: { type: 'string' } } })",
        "18.3.0",
    ),
}


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------

class ImportValidationResult(BaseModel):
    valid: bool
    missing_packages: list[str] = Field(default_factory=list)
    suggested_fixes: list[str] = Field(default_factory=list)
    alternatives: dict[str, AlternativeInfo] = Field(default_factory=dict)
    importers: dict[str, list[str]] = Field(default_factory=dict)  # package → files importing it
    approved_packages: list[str] | None = None
    rejected_packages: list[str] | None = None
    substitutions: dict[str, str] | None = None
    rejection_reasons: dict[str, str] | None = None


class ImportValidationError(Exception):
    """Raised by callers that treat missing imports as fatal."""

    def __init__(self, missing_packages: list[str], suggested_fixes: list[str]):
        super().__init__(f"Forbidden imports detected: {', '.join(missing_packages)}")
        self.missing_packages = missing_packages
        self.suggested_fixes = suggested_fixes


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"//.*$", re.MULTILINE)

_SPECIFIER_PATTERNS = (
    # import x from 'pkg' / import { a } from 'pkg' / import 'pkg'
    re.compile(r"""\bimport\s+(?:[\w*{}\s,$]*?\s*from\s*)?['"]([^'"]+)['"]"""),
    # export { a } from 'pkg' / export * from 'pkg'
    re.compile(r"""\bexport\s+(?:[\w*{}\s,$]+?)\s*from\s*['"]([^'"]+)['"]"""),
    re.compile(r"""\brequire\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"""\bimport\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
)


def strip_comments(code: str) -> str:
    # A "//" inside a string literal is treated as a comment too.
    code = _BLOCK_COMMENT.sub("", code)
    return _LINE_COMMENT.sub("", code)


def extract_specifiers(code: str) -> list[str]:
    """Return module specifiers in first-seen order, without duplicates."""
    stripped = strip_comments(code)
    found: list[tuple[int, str]] = []
    for pattern in _SPECIFIER_PATTERNS:
        found.extend((m.start(), m.group(1)) for m in pattern.finditer(stripped))

    seen: dict[str, None] = {}
    for _, spec in sorted(found):
        seen.setdefault(spec, None)
    return list(seen)


def package_name(specifier: str) -> str:
    """`@scope/name/sub` → `@scope/name`; `pkg/sub` → `pkg`."""
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return parts[0]


def is_js_file(path: str) -> bool:
    return path.endswith(JS_EXTENSIONS)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class ImportValidator:
    """
    Classifies imports against the project's installed packages.

    `allow()` widens the installed set for the lifetime of the validator,
    e.g. after a package was installed or accepted mid-run.
    """

    def __init__(
        self,
        dependencies: Iterable[str] = (),
        dev_dependencies: Iterable[str] = (),
        builtins: Iterable[str] = NODE_BUILTINS,
    ):
        self.allowed: set[str] = set(dependencies) | set(dev_dependencies)
        self.builtins = frozenset(builtins)

    def allow(self, packages: Iterable[str]) -> None:
        self.allowed.update(packages)

    def get_alternative(self, name: str) -> AlternativeInfo | None:
        return SUBSTITUTION_MAP.get(name)

    def is_builtin(self, specifier: str) -> bool:
        if specifier.startswith(BUILTIN_PREFIX):
            return True
        return specifier.split("/")[0] in self.builtins

    def missing_from(self, code: str, extra_allowed: Iterable[str] = ()) -> list[str]:
        allowed = self.allowed | set(extra_allowed)
        missing: list[str] = []
        for spec in extract_specifiers(code):
            if spec.startswith((".", "/")) or self.is_builtin(spec):
                continue
            name = package_name(spec)
            if name in allowed or name in missing:
                continue
            missing.append(name)
        return missing

    def _result(self, missing: list[str], importers: dict[str, list[str]] | None = None) -> ImportValidationResult:
        fixes: list[str] = []
        alternatives: dict[str, AlternativeInfo] = {}
        for name in missing:
            alt = self.get_alternative(name)
            if alt:
                alternatives[name] = alt
                fixes.append(f"{name}: Use {alt.module}. {alt.description}. Example: {alt.example}")
            else:
                fixes.append(
                    f"{name}: Remove this import or implement the functionality manually without third-party code"
                )
        return ImportValidationResult(
            valid=not missing,
            missing_packages=missing,
            suggested_fixes=fixes,
            alternatives=alternatives,
            importers=importers or {},
        )

    def validate(self, code: str, extra_allowed: Iterable[str] = ()) -> ImportValidationResult:
        return self._result(self.missing_from(code, extra_allowed))

    def validate_changes(
        self, changes: Iterable["FileChange"], extra_allowed: Iterable[str] = ()
    ) -> ImportValidationResult:
        """Validate every JS/TS file of a change set as one result."""
        extra = list(extra_allowed)
        missing: list[str] = []
        importers: dict[str, list[str]] = {}
        for change in changes:
            if change.delete or not is_js_file(change.path):
                continue
            for name in self.missing_from(change.content, extra):
                importers.setdefault(name, []).append(change.path)
                if name not in missing:
                    missing.append(name)
        return self._result(missing, importers)

    async def gate(self, result: ImportValidationResult, consent: "ConsentManager") -> ImportValidationResult:
        """Route a failed validation through the consent gate.

        Substituted packages are not approved: they land in both
        `rejected_packages` and `substitutions`.
        """
        if result.valid:
            return result.model_copy(update={
                "approved_packages": [], "rejected_packages": [], "substitutions": {},
            })

        batch = await consent.check_batch_approval_with_alternatives(
            result.missing_packages,
            alternatives=result.alternatives,
            file_context=result.importers,
        )
        rejected = [p for p in result.missing_packages if p not in batch.approved]
        return result.model_copy(update={
            "valid": not rejected,
            "approved_packages": list(batch.approved),
            "rejected_packages": rejected,
            "substitutions": dict(batch.alternatives),
            "rejection_reasons": dict(batch.reasons),
        })

    async def validate_with_consent(self, code: str, consent: "ConsentManager") -> ImportValidationResult:
        return await self.gate(self.validate(code), consent)

    async def validate_changes_with_consent(
        self, changes: Iterable["FileChange"], consent: "ConsentManager", extra_allowed: Iterable[str] = ()
    ) -> ImportValidationResult:
        return await self.gate(self.validate_changes(changes, extra_allowed), consent)
