import logging
import uuid
from pathlib import PurePosixPath
from typing import Any, Optional

from portal.database import JsonDocumentStore
from portal.errors import NotFoundError, UploadFailedError, UpstreamError, ValidationError
from portal.metrics import PAPER_STATUS_CHANGES
from portal.schemas import AuditEntry, Paper, PaperStatus, now_iso
from portal.uploads import UploadStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "description", "category", "abstract")

# Fields kept by the normalize maintenance pass
ESSENTIAL_FIELDS = (
    "id", "title", "description", "category", "abstract", "author",
    "date", "status", "fileName", "submittedBy", "updatedAt",
)


def _find_index(papers: list[dict], paper_id: str) -> int:
    for index, record in enumerate(papers):
        if record.get("id") == paper_id:
            return index
    return -1


def _coerce_status(value: Any) -> str:
    try:
        return PaperStatus(value).value
    except ValueError:
        allowed = ", ".join(s.value for s in PaperStatus)
        raise ValidationError(f"status must be one of: {allowed}")


def _require_confirmation(confirm: bool, operation: str) -> None:
    if not confirm:
        raise ValidationError(f"{operation} is destructive and requires confirm=true")


class PaperService:
    """Submission and approval workflow over the ``papers`` collection.

    Status is a total any-to-any transition function: admins may approve,
    reject or reset a paper from any state. Every transition is recorded in
    the ``auditLog`` collection.
    """

    def __init__(self, store: JsonDocumentStore, uploads: UploadStore):
        self.store = store
        self.uploads = uploads

    def _with_url(self, record: dict, base_url: str) -> Paper:
        paper = Paper.model_validate(record)
        try:
            paper.url = self.uploads.resolve(paper.fileName, base_url)
        except NotFoundError:
            logger.warning(f"Paper {paper.id} points at missing file {paper.fileName}")
            paper.url = None
        return paper

    async def submit(
        self,
        author_identity: str,
        metadata: dict[str, Any],
        file_name: Optional[str],
        content: Optional[bytes],
        content_type: str = "application/pdf",
    ) -> Paper:
        missing = [f for f in REQUIRED_FIELDS if not str(metadata.get(f) or "").strip()]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not content:
            raise ValidationError("No file uploaded")

        try:
            locator = await self.uploads.store(content, file_name or "paper.pdf", content_type)
        except UpstreamError as e:
            raise UploadFailedError(e.message) from e

        def append(document: dict) -> dict:
            profile = document["profiles"].get(author_identity) or {}
            author = str(metadata.get("author") or "").strip() or profile.get("name") or author_identity
            paper = Paper(
                id=uuid.uuid4().hex,
                title=metadata["title"].strip(),
                description=metadata["description"].strip(),
                category=metadata["category"].strip(),
                abstract=metadata["abstract"].strip(),
                author=author,
                date=now_iso(),
                status=PaperStatus.PENDING,
                fileName=locator,
                submittedBy=author_identity,
            )
            record = paper.to_record()
            document["papers"].append(record)
            return record

        try:
            record = await self.store.mutate(append)
        except Exception:
            logger.error(f"Could not record paper for upload {locator}, removing blob")
            try:
                await self.uploads.delete(locator)
            except Exception as cleanup_error:
                logger.error(f"Orphaned upload {locator}: {cleanup_error}")
            raise

        logger.info(f"Paper {record['id']} submitted by {author_identity}: {record['title']!r}")
        return Paper.model_validate(record)

    async def list_public(self, base_url: str) -> list[Paper]:
        document = await self.store.read()
        return [
            self._with_url(record, base_url)
            for record in document["papers"]
            if record.get("status") == PaperStatus.APPROVED.value
        ]

    async def list_for_admin(self, base_url: str) -> list[Paper]:
        document = await self.store.read()
        return [self._with_url(record, base_url) for record in document["papers"]]

    async def get(self, paper_id: str, base_url: str, is_admin: bool = False) -> Paper:
        document = await self.store.read()
        index = _find_index(document["papers"], paper_id)
        if index == -1:
            raise NotFoundError("Paper not found")
        record = document["papers"][index]
        # Unpublished papers are hidden, not forbidden
        if not is_admin and record.get("status") != PaperStatus.APPROVED.value:
            raise NotFoundError("Paper not found")
        return self._with_url(record, base_url)

    async def set_status(self, paper_id: str, new_status: Any, actor: str) -> Paper:
        status = _coerce_status(new_status)

        def apply(document: dict) -> tuple[dict, Optional[str]]:
            papers = document["papers"]
            index = _find_index(papers, paper_id)
            if index == -1:
                raise NotFoundError("Paper not found")
            previous = papers[index].get("status")
            at = now_iso()
            papers[index] = dict(papers[index], status=status, updatedAt=at)
            entry = AuditEntry(paperId=paper_id, fromStatus=previous, toStatus=status, actor=actor, at=at)
            document["auditLog"].append(entry.model_dump())
            return papers[index], previous

        record, previous = await self.store.mutate(apply)
        PAPER_STATUS_CHANGES.labels(from_status=str(previous), to_status=status).inc()
        logger.info(f"Paper {paper_id} status {previous} -> {status} by {actor}")
        return Paper.model_validate(record)

    async def audit_log(self, paper_id: Optional[str] = None) -> list[AuditEntry]:
        document = await self.store.read()
        entries = [AuditEntry.model_validate(e) for e in document["auditLog"]]
        if paper_id is not None:
            entries = [e for e in entries if e.paperId == paper_id]
        return entries

    # Maintenance operations: admin-only and destructive

    async def delete(self, paper_id: str, actor: str, confirm: bool = False) -> Paper:
        _require_confirmation(confirm, "Deleting a paper")

        def remove(document: dict) -> dict:
            index = _find_index(document["papers"], paper_id)
            if index == -1:
                raise NotFoundError("Paper not found")
            return document["papers"].pop(index)

        record = await self.store.mutate(remove)
        logger.warning(f"Paper {paper_id} deleted by {actor}")
        try:
            await self.uploads.delete(record["fileName"])
        except (NotFoundError, UpstreamError) as e:
            logger.error(f"Could not delete file {record['fileName']} for paper {paper_id}: {e.message}")
        return Paper.model_validate(record)

    async def normalize(self, actor: str, confirm: bool = False) -> int:
        """Strip records to their essential fields and reduce fileName to a basename."""
        _require_confirmation(confirm, "Normalizing papers")

        def rewrite(document: dict) -> int:
            cleaned = []
            for record in document["papers"]:
                kept = {key: record[key] for key in ESSENTIAL_FIELDS if key in record}
                file_name = str(kept.get("fileName") or record.get("fileUrl") or record.get("url") or "")
                kept["fileName"] = PurePosixPath(file_name.replace("\\", "/")).name
                cleaned.append(kept)
            document["papers"] = cleaned
            return len(cleaned)

        count = await self.store.mutate(rewrite)
        logger.warning(f"Papers normalized by {actor}: {count} records rewritten")
        return count

    async def reset(self, actor: str, confirm: bool = False) -> int:
        """Truncate the papers collection. Uploaded files are left in place."""
        _require_confirmation(confirm, "Resetting papers")

        def truncate(document: dict) -> int:
            count = len(document["papers"])
            document["papers"] = []
            return count

        count = await self.store.mutate(truncate)
        logger.warning(f"Papers reset by {actor}: {count} records removed")
        return count
