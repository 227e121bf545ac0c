import httpx
import pytest

from changegate.tools.registry import PackageRegistry, validate_package_name


def _registry(handler) -> PackageRegistry:
    return PackageRegistry(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize("name", ["express", "@types/node", "Lodash.Merge", "left_pad", "http"])
def test_valid_names(name):
    assert validate_package_name(name).valid


@pytest.mark.parametrize("name", ["", ".hidden", "_private", " express", "node_modules", "a/b", "@scope/.x", "bad name"])
def test_invalid_names(name):
    check = validate_package_name(name)
    assert not check.valid
    assert check.error


@pytest.mark.asyncio
async def test_existing_package():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["accept"] = request.headers["accept"]
        return httpx.Response(200, json={"name": "@types/node"})

    result = await _registry(handler).exists("@types/node")

    assert result.exists
    assert result.error is None
    assert seen["url"] == "https://registry.npmjs.org/%40types%2Fnode"
    assert seen["accept"] == "application/vnd.npm.install-v1+json"


@pytest.mark.asyncio
async def test_missing_package():
    result = await _registry(lambda r: httpx.Response(404)).exists("no-such-pkg-xyz")

    assert not result.exists
    assert result.error == 'Package "no-such-pkg-xyz" not found on npm registry'


@pytest.mark.asyncio
async def test_registry_error_status():
    result = await _registry(lambda r: httpx.Response(503)).exists("express")
    assert result.error == "Registry error: HTTP 503"


@pytest.mark.asyncio
async def test_timeout_and_network_errors_do_not_raise():
    def timeout(request):
        raise httpx.ConnectTimeout("slow", request=request)

    def offline(request):
        raise httpx.ConnectError("refused", request=request)

    slow = await _registry(timeout).exists("express")
    down = await _registry(offline).exists("express")

    assert not slow.exists and slow.error == "Registry request timeout (5s)"
    assert not down.exists and down.error.startswith("Network error:")


@pytest.mark.asyncio
async def test_invalid_name_is_not_requested():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    result = await _registry(handler).exists("_private")

    assert not result.exists
    assert calls == []


@pytest.mark.asyncio
async def test_exists_batch():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if request.url.path.endswith("/zod") else 404)

    results = await _registry(handler).exists_batch(["zod", "nope-nope"])

    assert results["zod"].exists
    assert not results["nope-nope"].exists
