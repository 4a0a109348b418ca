import logging
from typing import Any

from portal.database import JsonDocumentStore
from portal.errors import ValidationError
from portal.schemas import Profile, now_iso

logger = logging.getLogger(__name__)


class ProfileService:
    """Free-form staff profiles keyed by email."""

    def __init__(self, store: JsonDocumentStore):
        self.store = store

    async def get(self, email: str) -> Profile:
        document = await self.store.read()
        record = document["profiles"].get(email)
        if record is None:
            return Profile(name="", email=email, phone="", bio="")
        return Profile.model_validate(record)

    async def update(self, email: str, changes: dict[str, Any]) -> Profile:
        """Shallow-merge ``changes`` over the stored profile."""
        if not isinstance(changes, dict):
            raise ValidationError("Profile must be an object")

        def merge(document: dict) -> dict:
            existing = document["profiles"].get(email) or {}
            merged = {**existing, **changes}
            merged["email"] = email
            # An update without an image keeps the stored one
            merged["image"] = changes.get("image") or existing.get("image")
            merged["updatedAt"] = now_iso()
            document["profiles"][email] = merged
            return merged

        record = await self.store.mutate(merge)
        logger.info(f"Profile updated for {email}")
        return Profile.model_validate(record)
