import asyncio
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TypeVar

from portal.config import Settings
from portal.errors import CorruptStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PORTAL_DEFAULTS: dict[str, Any] = {
    "papers": [],
    "profiles": {},
    "accessRequests": [],
    "auditLog": [],
}

CHAT_DEFAULTS: dict[str, Any] = {
    "messages": [],
    "users": [],
}


class JsonDocumentStore:
    """A whole-document JSON file used as a database.

    Every mutation reads the full document, applies a transform and writes the
    full document back. Writes go through a temp file and ``os.replace`` so the
    file on disk is always a complete, parseable document.

    With ``locking`` enabled (the default) one writer runs at a time. Without
    it concurrent ``mutate`` calls may interleave and the last writer wins.
    """

    def __init__(self, path: Path, defaults: dict[str, Any], locking: bool = True):
        self.path = Path(path)
        self.defaults = defaults
        self.locking = locking
        self._lock = asyncio.Lock()

    def _default_document(self) -> dict[str, Any]:
        return copy.deepcopy(self.defaults)

    def _read_sync(self) -> dict[str, Any]:
        if not self.path.exists():
            document = self._default_document()
            self._write_sync(document)
            logger.info(f"Initialized new document at {self.path}")
            return document

        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except UnicodeDecodeError as e:
            raise CorruptStoreError(f"{self.path.name} is not valid UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise CorruptStoreError(f"{self.path.name} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise CorruptStoreError(f"{self.path.name} does not contain a JSON object")

        for key, value in self.defaults.items():
            # Older files may predate some collections
            if key not in document:
                document[key] = copy.deepcopy(value)
            elif not isinstance(document[key], type(value)):
                raise CorruptStoreError(
                    f"{self.path.name}: {key!r} should be a {type(value).__name__}, "
                    f"got {type(document[key]).__name__}"
                )
        return document

    def _write_sync(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def initialize(self) -> None:
        """Create the document if missing; raise CorruptStoreError if unreadable."""
        await self.read()

    async def read(self) -> dict[str, Any]:
        """Return a fresh copy of the whole document."""
        return await asyncio.to_thread(self._read_sync)

    async def mutate(self, fn: Callable[[dict[str, Any]], T]) -> T:
        """Load, apply ``fn`` to the document, write it back and return fn's result.

        ``fn`` receives a private copy of the document and may change it in
        place. If ``fn`` raises, nothing is written.
        """
        if self.locking:
            async with self._lock:
                return await self._mutate(fn)
        return await self._mutate(fn)

    async def _mutate(self, fn: Callable[[dict[str, Any]], T]) -> T:
        document = await asyncio.to_thread(self._read_sync)
        result = fn(document)
        await asyncio.to_thread(self._write_sync, document)
        return result


def create_portal_store(settings: Settings) -> JsonDocumentStore:
    """Store holding papers, profiles, access requests and the audit log."""
    return JsonDocumentStore(settings.db_file, PORTAL_DEFAULTS, locking=settings.store_locking)


def create_chat_store(settings: Settings) -> JsonDocumentStore:
    """Store holding chat messages and the last presence snapshot."""
    return JsonDocumentStore(settings.chat_file, CHAT_DEFAULTS, locking=settings.store_locking)
