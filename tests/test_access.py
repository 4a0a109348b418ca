"""Access request and PIN tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import FailingMailer
from portal.access import AccessRequestService, generate_pin
from portal.errors import InvalidCredentialsError, NotFoundError, ValidationError


def test_generated_pins_are_six_digits() -> None:
    pins = [generate_pin() for _ in range(500)]
    assert all(len(p) == 6 and p.isdigit() and 100000 <= int(p) <= 999999 for p in pins)


async def test_request_creates_pending_record_without_pin(access_service: AccessRequestService) -> None:
    created = await access_service.request("Alice", "a@b.com", "Research", "Need access")

    assert created.status == "pending"
    assert created.pin is None
    stored = (await access_service.store.read())["accessRequests"]
    assert stored[0]["email"] == "a@b.com"
    assert "pin" not in stored[0]


@pytest.mark.parametrize(("name", "email"), [("", "a@b.com"), ("Alice", ""), ("Alice", "not-an-email")])
async def test_request_validates_fields(access_service: AccessRequestService, name: str, email: str) -> None:
    with pytest.raises(ValidationError):
        await access_service.request(name, email)


async def test_duplicate_requests_coexist(access_service: AccessRequestService) -> None:
    await access_service.request("Alice", "a@b.com")
    second = await access_service.request("Alice", "a@b.com", reason="again")

    records = await access_service.list_for_admin()
    assert len(records) == 2
    assert (await access_service.status_for("a@b.com")).id == second.id


async def test_status_for_unknown_email(access_service: AccessRequestService) -> None:
    with pytest.raises(NotFoundError):
        await access_service.status_for("nobody@b.com")


async def test_approve_mints_pin_and_mails_it(access_service: AccessRequestService, mailer) -> None:
    created = await access_service.request("Alice", "a@b.com", "Research", "Need access")

    approved = await access_service.approve(created.id, actor="employee@perrin.org")

    assert approved.status == "approved"
    assert len(approved.pin) == 6 and approved.pin.isdigit()
    assert approved.approvedAt is not None
    assert mailer.sent[0]["to"] == "a@b.com"
    assert approved.pin in mailer.sent[0]["text"]
    assert await access_service.verify_pin(approved.pin) == "a@b.com"


async def test_approve_unknown_request(access_service: AccessRequestService) -> None:
    with pytest.raises(NotFoundError):
        await access_service.approve("missing")


async def test_mail_failure_keeps_the_approval(portal_store, bootstrap) -> None:
    service = AccessRequestService(portal_store, FailingMailer(), bootstrap)
    created = await service.request("Bob", "bob@b.com")

    approved = await service.approve(created.id)

    stored = (await portal_store.read())["accessRequests"][0]
    assert stored["status"] == "approved"
    assert stored["pin"] == approved.pin
    assert await service.verify_pin(approved.pin) == "bob@b.com"


async def test_verify_pin_rejects_pending_and_unknown_pins(access_service: AccessRequestService) -> None:
    await access_service.request("Alice", "a@b.com")
    # Hand-crafted pending record carrying a pin must still not authenticate
    await access_service.store.mutate(
        lambda doc: doc["accessRequests"].append({"id": "x", "name": "X", "email": "x@b.com", "status": "pending", "pin": "123456"})
    )

    for pin in ["123456", "999999", "", "abcdef"]:
        with pytest.raises(InvalidCredentialsError):
            await access_service.verify_pin(pin)


async def test_bootstrap_pin_is_explicit_and_can_be_disabled(access_service: AccessRequestService) -> None:
    assert await access_service.verify_pin("000000") == "employee@perrin.org"

    access_service.bootstrap.enabled = False
    with pytest.raises(InvalidCredentialsError):
        await access_service.verify_pin("000000")


async def test_pin_expiry_when_configured(portal_store, mailer, bootstrap) -> None:
    service = AccessRequestService(portal_store, mailer, bootstrap, pin_ttl_days=30)
    created = await service.request("Alice", "a@b.com")
    approved = await service.approve(created.id)
    assert await service.verify_pin(approved.pin) == "a@b.com"

    stale = (datetime.now(timezone.utc) - timedelta(days=31)).isoformat()

    def age(doc: dict) -> None:
        doc["accessRequests"][0]["approvedAt"] = stale

    await portal_store.mutate(age)
    with pytest.raises(InvalidCredentialsError):
        await service.verify_pin(approved.pin)


async def test_list_for_admin_is_newest_first(access_service: AccessRequestService) -> None:
    first = await access_service.request("A", "a@b.com")
    second = await access_service.request("B", "b@b.com")

    def backdate(doc: dict) -> None:
        doc["accessRequests"][0]["createdAt"] = "2020-01-01T00:00:00.000Z"

    await access_service.store.mutate(backdate)

    assert [r.id for r in await access_service.list_for_admin()] == [second.id, first.id]
