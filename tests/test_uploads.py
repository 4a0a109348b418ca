"""Upload store tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from portal.circuit_breaker import CircuitBreaker
from portal.errors import NotFoundError, UpstreamError, ValidationError
from portal.uploads import CloudinaryUploadStore, LocalUploadStore, check_upload, sanitize_filename


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("report.pdf", "report.pdf"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\My Paper (final).pdf", "My_Paper_final_.pdf"),
        ("", "upload"),
        ("...", "upload"),
    ],
)
def test_sanitize_filename(name: str, expected: str) -> None:
    assert sanitize_filename(name) == expected


async def test_identical_names_get_distinct_locators(uploads: LocalUploadStore) -> None:
    locators = await asyncio.gather(*(uploads.store(b"data", "paper.pdf", "application/pdf") for _ in range(10)))

    assert len(set(locators)) == 10
    assert all(loc.endswith("-paper.pdf") for loc in locators)


async def test_resolve_is_composed_from_the_given_base(uploads: LocalUploadStore) -> None:
    locator = await uploads.store(b"data", "paper.pdf", "application/pdf")

    assert uploads.resolve(locator, "https://a.example.org/") == f"https://a.example.org/uploads/{locator}"
    assert uploads.resolve(locator, "http://localhost:8000") == f"http://localhost:8000/uploads/{locator}"


async def test_long_names_still_resolve(uploads: LocalUploadStore) -> None:
    locator = await uploads.store(b"data", "a" * 110 + ".pdf", "application/pdf")

    assert len(locator) <= 120
    assert locator.endswith("a.pdf")
    assert uploads.open(locator).read_bytes() == b"data"
    assert uploads.resolve(locator, "https://a.example.org") == f"https://a.example.org/uploads/{locator}"


async def test_resolve_missing_blob_raises_not_found(uploads: LocalUploadStore) -> None:
    with pytest.raises(NotFoundError):
        uploads.resolve("123-missing.pdf", "https://a.example.org")
    with pytest.raises(NotFoundError):
        uploads.open("../db.json")


async def test_delete_removes_blob(uploads: LocalUploadStore) -> None:
    locator = await uploads.store(b"data", "paper.pdf", "application/pdf")
    await uploads.delete(locator)

    with pytest.raises(NotFoundError):
        uploads.open(locator)


def test_check_upload_rules() -> None:
    check_upload(b"%PDF", "application/pdf", 100)
    check_upload(b"\x89PNG", "image/png", 100)

    with pytest.raises(ValidationError):
        check_upload(b"", "application/pdf", 100)
    with pytest.raises(ValidationError):
        check_upload(b"x" * 101, "application/pdf", 100)
    with pytest.raises(ValidationError):
        check_upload(b"MZ", "application/x-msdownload", 100)


def _cloudinary(settings, handler) -> CloudinaryUploadStore:
    settings.cloudinary_cloud_name = "demo"
    settings.cloudinary_api_key = "key"
    settings.cloudinary_api_secret = "secret"
    settings.upload_retry_backoff = 0
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker("uploads-test", max_failures=10, call_timeout=5)
    return CloudinaryUploadStore(settings, breaker, client=client)


async def test_cloudinary_upload_returns_delivery_locator(settings) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(
            200,
            json={"secure_url": "https://res.cloudinary.com/demo/raw/upload/v17/perrin-papers/paper_ab12.pdf"},
        )

    store = _cloudinary(settings, handler)
    locator = await store.store(b"%PDF", "paper.pdf", "application/pdf")

    assert seen["url"] == "https://api.cloudinary.com/v1_1/demo/auto/upload"
    assert b'name="signature"' in seen["body"]
    assert locator == "raw/upload/v17/perrin-papers/paper_ab12.pdf"
    assert store.resolve(locator, "ignored") == f"https://res.cloudinary.com/demo/{locator}"
    await store.close()


async def test_cloudinary_failure_surfaces_upstream_error_after_retries(settings) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, json={"error": {"message": "bad gateway"}})

    store = _cloudinary(settings, handler)
    with pytest.raises(UpstreamError):
        await store.store(b"%PDF", "paper.pdf", "application/pdf")

    assert len(calls) == settings.upload_retries + 1
    await store.close()


def test_cloudinary_public_id_parsing() -> None:
    assert CloudinaryUploadStore._public_id("raw/upload/v17/folder/a.pdf") == ("raw", "folder/a.pdf")
    assert CloudinaryUploadStore._public_id("image/upload/v3/folder/pic.png") == ("image", "folder/pic")
    with pytest.raises(NotFoundError):
        CloudinaryUploadStore._public_id("nonsense")
