"""
Dependency Registry Checker.

Confirms a package name is well-formed and exists on the npm registry
before anything is installed. Lookups never raise: every failure is
reported as `exists=False` with an error string.
"""

from __future__ import annotations

import asyncio
import re
from typing import Iterable
from urllib.parse import quote

import httpx
from loguru import logger
from pydantic import BaseModel

DEFAULT_REGISTRY = "https://registry.npmjs.org"
ABBREVIATED_METADATA = "application/vnd.npm.install-v1+json"

_URL_SAFE = re.compile(r"^[A-Za-z0-9\-_.!~*'()]+$")
_SCOPED = re.compile(r"^@([^/]+)/([^/]+)$")
_BLACKLIST = {"node_modules", "favicon.ico"}


class NameValidation(BaseModel):
    valid: bool
    error: str | None = None


class RegistryLookup(BaseModel):
    exists: bool
    error: str | None = None


def validate_package_name(name: str) -> NameValidation:
    """Check a name against npm's rules for existing packages."""
    def invalid(message: str) -> NameValidation:
        return NameValidation(valid=False, error=message)

    if not name:
        return invalid("name length must be greater than zero")
    if name.startswith("."):
        return invalid("name cannot start with a period")
    if name.startswith("_"):
        return invalid("name cannot start with an underscore")
    if name.strip() != name:
        return invalid("name cannot contain leading or trailing spaces")
    if name.lower() in _BLACKLIST:
        return invalid(f"{name} is not a valid package name")

    if _URL_SAFE.match(name):
        return NameValidation(valid=True)

    scoped = _SCOPED.match(name)
    if scoped:
        scope, pkg = scoped.groups()
        if pkg.startswith((".", "_")):
            return invalid("name cannot start with a period or underscore after the scope")
        if _URL_SAFE.match(scope) and _URL_SAFE.match(pkg):
            return NameValidation(valid=True)

    return invalid("name can only contain URL-friendly characters")


class PackageRegistry:
    """
    Read-only npm registry client.

    `transport` lets tests substitute an `httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_REGISTRY,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        log=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.log = log or logger.bind(scope="registry")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"Accept": ABBREVIATED_METADATA, "User-Agent": "changegate"},
        )

    async def _lookup(self, client: httpx.AsyncClient, name: str) -> RegistryLookup:
        check = validate_package_name(name)
        if not check.valid:
            return RegistryLookup(exists=False, error=check.error or "Invalid package name")

        url = f"{self.base_url}/{quote(name, safe='')}"
        try:
            response = await client.get(url)
        except httpx.TimeoutException:
            return RegistryLookup(exists=False, error=f"Registry request timeout ({self.timeout:g}s)")
        except httpx.TransportError as e:
            return RegistryLookup(exists=False, error=f"Network error: {e}")

        if response.status_code == 200:
            return RegistryLookup(exists=True)
        if response.status_code == 404:
            return RegistryLookup(exists=False, error=f'Package "{name}" not found on npm registry')
        return RegistryLookup(exists=False, error=f"Registry error: HTTP {response.status_code}")

    async def exists(self, name: str) -> RegistryLookup:
        async with self._client() as client:
            result = await self._lookup(client, name)
        self.log.debug(f"[REGISTRY] {name}: exists={result.exists} {result.error or ''}".rstrip())
        return result

    async def exists_batch(self, names: Iterable[str]) -> dict[str, RegistryLookup]:
        """Look up several packages concurrently."""
        names = list(names)
        async with self._client() as client:
            results = await asyncio.gather(*(self._lookup(client, n) for n in names))
        return dict(zip(names, results))
