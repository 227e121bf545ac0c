import pytest

from changegate.tools.categorizer import categorize_package, categorize_packages, is_test_file


@pytest.mark.parametrize("path", [
    "src/app.test.ts",
    "src/app.spec.js",
    "lib/util-test.js",
    "__tests__/app.ts",
    "test/helpers.ts",
    "packages/core/tests/setup.ts",
])
def test_test_files(path):
    assert is_test_file(path)


@pytest.mark.parametrize("path", ["src/app.ts", "src/testing.ts", "src/contest/index.ts"])
def test_non_test_files(path):
    assert not is_test_file(path)


def test_type_packages_and_tooling_are_dev():
    assert categorize_package("@types/node", ["src/index.ts"]) == "dev"
    assert categorize_package("vitest", ["src/index.ts"]) == "dev"


def test_importers_decide_the_rest():
    assert categorize_package("zod") == "prod"
    assert categorize_package("nock", ["src/api.test.ts"]) == "dev"
    assert categorize_package("zod", ["src/api.test.ts", "src/api.ts"]) == "prod"


def test_categorize_packages_preserves_order():
    groups = categorize_packages({
        "zod": ["src/a.ts"],
        "@types/express": [],
        "express": [],
        "supertest": ["test/app.ts"],
    })
    assert groups == {"prod": ["zod", "express"], "dev": ["@types/express", "supertest"]}
