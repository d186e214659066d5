import sqlite3

import pytest
import pytest_asyncio

from async_mail_transfer.errors import InvalidAddressError, NotFoundError, StoreUnavailableError
from async_mail_transfer.persistence import MailStore, normalise_address


@pytest_asyncio.fixture
async def store(tmp_path):
    s = MailStore(str(tmp_path / "test.db"))
    await s.init_db()
    yield s
    await s.close()


def test_normalise_address_lowercases_domain_only():
    assert normalise_address("Alice@Example.COM") == "Alice@example.com"
    assert normalise_address("  <bob@Remote.Org> ") == "bob@remote.org"
    assert normalise_address("postmaster") == "postmaster"


@pytest.mark.parametrize("value", [None, "", "   ", "<>"])
def test_normalise_address_rejects_empty(value):
    with pytest.raises(InvalidAddressError):
        normalise_address(value)


@pytest.mark.asyncio
async def test_account_crud(store):
    account_id = await store.add_account({"id": "acc-1", "user_id": "u-1", "address": "alice@example.com"})
    assert account_id == "acc-1"

    acc = await store.get_account("acc-1")
    assert acc["address"] == "alice@example.com"
    assert acc["user_id"] == "u-1"

    found = await store.find_account_by_address("alice@EXAMPLE.com")
    assert found["id"] == "acc-1"
    assert await store.find_account_by_address("Alice@example.com") is None

    await store.add_account({"user_id": "u-2", "address": "carol@example.com"})
    assert len(await store.list_accounts()) == 2
    only_u1 = await store.list_accounts("u-1")
    assert [a["id"] for a in only_u1] == ["acc-1"]


@pytest.mark.asyncio
async def test_one_account_per_address(store):
    await store.add_account({"address": "alice@example.com"})
    with pytest.raises(sqlite3.IntegrityError):
        await store.add_account({"address": "alice@EXAMPLE.COM"})


@pytest.mark.asyncio
async def test_messages_lifecycle(store):
    await store.save_message("m1", "acc", "bob@remote.org", "alice@example.com", "Hello", "Hi", None, "received")
    await store.save_message("m2", "acc", "alice@example.com", "bob@remote.org", "Re: Hello", "Yo", "<b>Yo</b>", "sent")

    received = await store.get_message("m1")
    assert received["is_read"] is False
    assert received["direction"] == "received"
    sent = await store.get_message("m2")
    assert sent["is_read"] is True
    assert sent["html_body"] == "<b>Yo</b>"

    messages = await store.list_messages("acc")
    assert [m["id"] for m in messages] == ["m2", "m1"]
    assert await store.message_stats("acc") == {"total": 2, "unread": 1}

    assert await store.mark_read("m1") is True
    assert await store.mark_read("m1") is True
    assert (await store.get_message("m1"))["is_read"] is True
    assert await store.message_stats("acc") == {"total": 2, "unread": 0}

    await store.delete_message("m1")
    assert await store.get_message("m1") is None
    with pytest.raises(NotFoundError):
        await store.delete_message("m1")
    assert await store.mark_read("missing") is False


@pytest.mark.asyncio
async def test_list_messages_pagination_and_direction(store):
    for i in range(5):
        await store.save_message(f"m{i}", "acc", "x@remote.org", "alice@example.com", f"s{i}", "", None, "received")
    await store.save_message("out", "acc", "alice@example.com", "x@remote.org", "out", "", None, "sent")

    page = await store.list_messages("acc", limit=2, offset=1)
    assert [m["id"] for m in page] == ["m4", "m3"]

    sent_only = await store.list_messages("acc", direction="sent")
    assert [m["id"] for m in sent_only] == ["out"]
    assert len(await store.list_messages("acc", direction="received")) == 5
    assert await store.list_messages("other") == []


@pytest.mark.asyncio
async def test_invalid_direction_rejected(store):
    with pytest.raises(ValueError):
        await store.save_message("m1", "acc", "a@b.c", "d@e.f", "", "", None, "outgoing")


@pytest.mark.asyncio
async def test_drafts_lifecycle(store):
    await store.save_draft("d1", "acc", "bob@remote.org", "Hello", "Hi there")
    await store.save_draft("d2", "acc", None, None, None)

    draft = await store.get_draft("d1")
    assert draft["to_address"] == "bob@remote.org"
    assert draft["subject"] == "Hello"
    assert {d["id"] for d in await store.list_drafts("acc")} == {"d1", "d2"}

    await store.delete_draft("d1")
    assert await store.get_draft("d1") is None
    with pytest.raises(NotFoundError):
        await store.delete_draft("d1")


@pytest.mark.asyncio
async def test_domains_lifecycle(store):
    domain_id = await store.create_domain("u-1", "example.com")
    domain = await store.get_domain(domain_id)
    assert domain["verified"] is False

    await store.update_domain_verification(domain_id, True)
    assert (await store.get_domain(domain_id))["verified"] is True
    assert [d["domain"] for d in await store.list_domains("u-1")] == ["example.com"]

    with pytest.raises(sqlite3.IntegrityError):
        await store.create_domain("u-1", "example.com")
    with pytest.raises(NotFoundError):
        await store.update_domain_verification("missing", True)


@pytest.mark.asyncio
async def test_memory_store_keeps_data_between_calls():
    s = MailStore(":memory:")
    await s.init_db()
    await s.add_account({"id": "acc", "address": "alice@example.com"})
    assert (await s.get_account("acc"))["address"] == "alice@example.com"
    await s.close()


@pytest.mark.asyncio
async def test_unreachable_store_raises_store_unavailable(tmp_path):
    s = MailStore(str(tmp_path / "missing-dir" / "test.db"))
    with pytest.raises(StoreUnavailableError):
        await s.find_account_by_address("alice@example.com")
