import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from portal.auth import BootstrapCredentials
from portal.database import JsonDocumentStore
from portal.errors import InvalidCredentialsError, NotFoundError, UpstreamError, ValidationError
from portal.mailer import Mailer
from portal.metrics import ACCESS_APPROVALS
from portal.schemas import AccessRequest, AccessStatus, now_iso

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def generate_pin() -> str:
    """Six-digit PIN drawn uniformly from [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class AccessRequestService:
    """Access requests, PIN issuance on approval and PIN verification."""

    def __init__(
        self,
        store: JsonDocumentStore,
        mailer: Mailer,
        bootstrap: BootstrapCredentials,
        signin_url: str = "",
        pin_ttl_days: Optional[int] = None,
    ):
        self.store = store
        self.mailer = mailer
        self.bootstrap = bootstrap
        self.signin_url = signin_url
        self.pin_ttl = timedelta(days=pin_ttl_days) if pin_ttl_days else None

    async def request(self, name: str, email: str, department: str = "", reason: str = "") -> AccessRequest:
        name = (name or "").strip()
        email = (email or "").strip()
        if not name:
            raise ValidationError("name is required")
        if not _EMAIL_RE.match(email):
            raise ValidationError("A valid email is required")

        access_request = AccessRequest(
            id=uuid.uuid4().hex,
            name=name,
            email=email,
            department=(department or "").strip(),
            reason=(reason or "").strip(),
            status=AccessStatus.PENDING,
            createdAt=now_iso(),
        )

        def append(document: dict) -> None:
            # Duplicate requests from one email are kept side by side
            document["accessRequests"].append(access_request.to_record())

        await self.store.mutate(append)
        logger.info(f"Access request {access_request.id} from {email} ({access_request.department})")
        return access_request

    async def status_for(self, email: str) -> AccessRequest:
        """Newest request for ``email``."""
        document = await self.store.read()
        matches = [r for r in document["accessRequests"] if r.get("email") == email]
        if not matches:
            raise NotFoundError("Request not found")
        newest = max(matches, key=lambda r: r.get("createdAt") or "")
        return AccessRequest.model_validate(newest)

    async def list_for_admin(self) -> list[AccessRequest]:
        document = await self.store.read()
        records = sorted(document["accessRequests"], key=lambda r: r.get("createdAt") or "", reverse=True)
        return [AccessRequest.model_validate(r) for r in records]

    def _active(self, record: dict, now: datetime) -> bool:
        if record.get("status") != AccessStatus.APPROVED.value or not record.get("pin"):
            return False
        if self.pin_ttl is None:
            return True
        approved_at = _parse_time(record.get("approvedAt"))
        return approved_at is not None and now - approved_at <= self.pin_ttl

    def _fresh_pin(self, records: list[dict]) -> str:
        now = datetime.now(timezone.utc)
        taken = {r["pin"] for r in records if self._active(r, now)}
        while True:
            pin = generate_pin()
            if pin not in taken and not self.bootstrap.is_reserved_pin(pin):
                return pin

    async def approve(self, request_id: str, actor: str = "admin") -> AccessRequest:
        """Approve, mint a PIN, persist, then mail the PIN.

        Mail failure is logged and does not undo the approval.
        """
        def apply(document: dict) -> dict:
            records = document["accessRequests"]
            for index, record in enumerate(records):
                if record.get("id") == request_id:
                    updated = dict(
                        record,
                        status=AccessStatus.APPROVED.value,
                        pin=self._fresh_pin(records),
                        approvedAt=now_iso(),
                    )
                    records[index] = updated
                    return updated
            raise NotFoundError("Request not found")

        record = await self.store.mutate(apply)
        approved = AccessRequest.model_validate(record)
        logger.info(f"Access request {request_id} for {approved.email} approved by {actor}")

        email_sent = await self._send_pin(approved)
        ACCESS_APPROVALS.labels(email_sent=str(email_sent).lower()).inc()
        return approved

    async def _send_pin(self, approved: AccessRequest) -> bool:
        subject = "Your Perrin Institute Access Request Has Been Approved"
        text = f"Your access request has been approved. Your PIN is: {approved.pin}"
        html = (
            "<h2>Welcome to Perrin Institute!</h2>"
            "<p>Your access request has been approved.</p>"
            f"<p>Your PIN is: <strong>{approved.pin}</strong></p>"
        )
        if self.signin_url:
            text += f"\nYou can now log in at {self.signin_url}"
            html += f'<p>You can now log in at <a href="{self.signin_url}">{self.signin_url}</a></p>'
        try:
            await self.mailer.send(approved.email, subject, text, html)
            return True
        except UpstreamError as e:
            logger.error(f"Failed to send approval email to {approved.email}: {e.message}")
            return False

    async def verify_pin(self, pin: str) -> str:
        """Return the email the PIN was issued to."""
        pin = (pin or "").strip()
        bootstrap_identity = self.bootstrap.match_pin(pin)
        if bootstrap_identity is not None:
            return bootstrap_identity.email

        if not pin:
            raise InvalidCredentialsError("Invalid PIN")
        document = await self.store.read()
        now = datetime.now(timezone.utc)
        for record in document["accessRequests"]:
            if self._active(record, now) and secrets.compare_digest(record["pin"].encode("utf-8"), pin.encode("utf-8")):
                return record["email"]
        raise InvalidCredentialsError("Invalid PIN")
