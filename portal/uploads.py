import asyncio
import hashlib
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Optional

import httpx

from portal.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from portal.config import Settings
from portal.errors import NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_NAME_LENGTH = 120


def sanitize_filename(name: str) -> str:
    """Reduce a user-supplied name to a safe basename."""
    base = re.split(r"[\\/]", name or "")[-1]
    safe = _UNSAFE_CHARS.sub("_", base).strip("._")
    if not safe:
        safe = "upload"
    return safe[-_MAX_NAME_LENGTH:]


def unique_name(suggested_name: str) -> str:
    """High-resolution timestamp plus a random tag keeps concurrent uploads apart.

    The whole locator stays within the sanitized-name limit so it survives
    ``sanitize_filename`` unchanged.
    """
    prefix = f"{time.time_ns()}-{uuid.uuid4().hex[:8]}-"
    return prefix + sanitize_filename(suggested_name)[-(_MAX_NAME_LENGTH - len(prefix)):]


def check_upload(content: bytes, content_type: Optional[str], max_bytes: int) -> None:
    """Reject empty, oversized or unsupported uploads before they reach a store."""
    if not content:
        raise ValidationError("No file uploaded")
    if len(content) > max_bytes:
        raise ValidationError("File too large")
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype not in ALLOWED_CONTENT_TYPES and not ctype.startswith("image/"):
        raise ValidationError("Unsupported file type")


class UploadStore:
    """Persists binary blobs and turns locators into URLs at request time."""

    async def store(self, content: bytes, suggested_name: str, content_type: str) -> str:
        raise NotImplementedError

    def resolve(self, locator: str, base_url: str) -> str:
        raise NotImplementedError

    async def delete(self, locator: str) -> None:
        raise NotImplementedError

    def open(self, locator: str) -> Path:
        raise NotFoundError("File not found")

    async def close(self) -> None:
        return None


class LocalUploadStore(UploadStore):
    """Blobs on the local disk or a mounted volume, served under /uploads."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, locator: str) -> Path:
        if locator != sanitize_filename(locator) or locator in ("", ".", ".."):
            raise NotFoundError("File not found")
        return self.root / locator

    async def store(self, content: bytes, suggested_name: str, content_type: str) -> str:
        locator = unique_name(suggested_name)
        path = self.root / locator
        await asyncio.to_thread(self._write, path, content)
        logger.info(f"Stored upload {locator} ({len(content)} bytes)")
        return locator

    def _write(self, path: Path, content: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    def open(self, locator: str) -> Path:
        path = self._path(locator)
        if not path.is_file():
            raise NotFoundError("File not found")
        return path

    def resolve(self, locator: str, base_url: str) -> str:
        self.open(locator)
        return f"{base_url.rstrip('/')}/uploads/{locator}"

    async def delete(self, locator: str) -> None:
        path = self._path(locator)
        await asyncio.to_thread(path.unlink, True)


class CloudinaryUploadStore(UploadStore):
    """Blobs on Cloudinary; uploads are signed and guarded by a circuit breaker."""

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: CircuitBreaker,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.cloud_name = settings.cloudinary_cloud_name
        self.api_key = settings.cloudinary_api_key
        self.api_secret = settings.cloudinary_api_secret
        self.folder = settings.cloudinary_folder
        self.api_url = settings.cloudinary_api_url.rstrip("/")
        self.delivery_url = settings.cloudinary_delivery_url.rstrip("/")
        self.retries = settings.upload_retries
        self.backoff = settings.upload_retry_backoff
        self.circuit_breaker = circuit_breaker
        self.client = client or httpx.AsyncClient(timeout=settings.cb_call_timeout)

    def _sign(self, params: dict[str, str]) -> str:
        payload = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1(f"{payload}{self.api_secret}".encode("utf-8")).hexdigest()

    async def store(self, content: bytes, suggested_name: str, content_type: str) -> str:
        attempt = 0
        while True:
            try:
                result = await self.circuit_breaker.call(self._upload, content, suggested_name, content_type)
                return self._locator_from(result)
            except CircuitBreakerOpenError as e:
                raise UpstreamError("Media host unavailable, try again later") from e
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                if attempt >= self.retries:
                    raise UpstreamError(f"Media host upload failed: {e}") from e
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(f"Media host upload failed ({e}), retry {attempt}/{self.retries} in {delay}s")
                await asyncio.sleep(delay)

    async def _upload(self, content: bytes, suggested_name: str, content_type: str) -> dict:
        params = {
            "folder": self.folder,
            "timestamp": str(int(time.time())),
            "unique_filename": "true",
            "use_filename": "true",
        }
        data = dict(params, api_key=self.api_key, signature=self._sign(params))
        files = {"file": (sanitize_filename(suggested_name), content, content_type)}
        resp = await self.client.post(f"{self.api_url}/{self.cloud_name}/auto/upload", data=data, files=files)
        resp.raise_for_status()
        return resp.json()

    def _locator_from(self, result: dict) -> str:
        secure_url = result.get("secure_url") or ""
        prefix = f"{self.delivery_url}/{self.cloud_name}/"
        if not secure_url.startswith(prefix):
            raise UpstreamError("Media host returned an unexpected URL")
        return secure_url[len(prefix):]

    def resolve(self, locator: str, base_url: str) -> str:
        # Remote blobs are not probed; the locator is trusted as returned by the host.
        return f"{self.delivery_url}/{self.cloud_name}/{locator}"

    async def delete(self, locator: str) -> None:
        resource_type, public_id = self._public_id(locator)
        params = {"public_id": public_id, "timestamp": str(int(time.time()))}
        data = dict(params, api_key=self.api_key, signature=self._sign(params))
        try:
            resp = await self.circuit_breaker.call(
                self.client.post, f"{self.api_url}/{self.cloud_name}/{resource_type}/destroy", data=data
            )
            resp.raise_for_status()
        except (CircuitBreakerOpenError, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Media host delete failed: {e}") from e

    @staticmethod
    def _public_id(locator: str) -> tuple[str, str]:
        # <resource_type>/upload/v<version>/<public_id>[.<format>]
        parts = locator.split("/")
        if len(parts) < 3 or parts[1] != "upload":
            raise NotFoundError("File not found")
        resource_type, rest = parts[0], parts[2:]
        if rest and re.fullmatch(r"v\d+", rest[0]):
            rest = rest[1:]
        public_id = "/".join(rest)
        if resource_type != "raw":
            # Image and video public ids carry no extension
            public_id = public_id.rsplit(".", 1)[0]
        return resource_type, public_id

    async def close(self) -> None:
        await self.client.aclose()


def create_upload_store(settings: Settings, circuit_breaker: CircuitBreaker) -> UploadStore:
    if settings.upload_backend == "cloudinary":
        if not (settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret):
            raise RuntimeError("Cloudinary upload backend selected but credentials are missing")
        logger.info(f"Using Cloudinary upload store (cloud: {settings.cloudinary_cloud_name})")
        return CloudinaryUploadStore(settings, circuit_breaker)
    logger.info(f"Using local upload store at {settings.uploads_dir}")
    return LocalUploadStore(settings.uploads_dir)
