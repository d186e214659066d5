import asyncio

import pytest

from async_mail_transfer.errors import InvalidAddressError, ResolutionUnavailableError, StoreUnavailableError
from async_mail_transfer.models import Account
from async_mail_transfer.persistence import MailStore
from async_mail_transfer.resolver import AccountResolver


class FailingStore:
    async def find_account_by_address(self, address):
        raise StoreUnavailableError("database is locked")


class SlowStore:
    async def find_account_by_address(self, address):
        await asyncio.sleep(1)


@pytest.mark.asyncio
async def test_resolves_existing_account(tmp_path):
    store = MailStore(str(tmp_path / "r.db"))
    await store.init_db()
    await store.add_account({"id": "acc-1", "user_id": "u-1", "address": "alice@example.com"})
    resolver = AccountResolver(store)

    account = await resolver.resolve("alice@example.com")
    assert isinstance(account, Account)
    assert account.id == "acc-1"
    assert account.user_id == "u-1"

    # Idempotent and domain case-insensitive
    again = await resolver.resolve("<alice@EXAMPLE.com>")
    assert again == account


@pytest.mark.asyncio
async def test_local_part_is_case_sensitive(tmp_path):
    store = MailStore(str(tmp_path / "r.db"))
    await store.init_db()
    await store.add_account({"address": "alice@example.com"})
    resolver = AccountResolver(store)
    assert await resolver.resolve("Alice@example.com") is None


@pytest.mark.asyncio
async def test_unknown_address_is_not_found(tmp_path):
    store = MailStore(str(tmp_path / "r.db"))
    await store.init_db()
    assert await AccountResolver(store).resolve("nobody@example.com") is None


@pytest.mark.asyncio
async def test_empty_address_is_invalid():
    resolver = AccountResolver(FailingStore())
    with pytest.raises(InvalidAddressError):
        await resolver.resolve("  ")


@pytest.mark.asyncio
async def test_store_failure_is_resolution_unavailable():
    resolver = AccountResolver(FailingStore())
    with pytest.raises(ResolutionUnavailableError):
        await resolver.resolve("alice@example.com")


@pytest.mark.asyncio
async def test_store_timeout_is_resolution_unavailable():
    resolver = AccountResolver(SlowStore(), timeout=0.01)
    with pytest.raises(ResolutionUnavailableError):
        await resolver.resolve("alice@example.com")


def test_normalise_matches_store_key():
    assert AccountResolver.normalise("Bob@Remote.ORG") == "Bob@remote.org"
