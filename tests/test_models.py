"""Tests for Pydantic models and validators."""

import pytest
from pydantic import ValidationError

from async_mail_transfer.models import (
    Account,
    AuthenticationReport,
    Direction,
    Domain,
    MessageRecord,
    SendResult,
    SendStatus,
)


class TestMessageRecord:
    def test_read_flag_is_coerced_from_sqlite_integer(self):
        record = MessageRecord(
            id="m1",
            account_id="acc",
            from_address="bob@remote.org",
            to_address="alice@example.com",
            direction="received",
            is_read=0,
        )
        assert record.is_read is False
        assert record.direction is Direction.RECEIVED
        assert record.subject == ""

    def test_unknown_direction_is_rejected(self):
        with pytest.raises(ValidationError):
            MessageRecord(id="m1", account_id="acc", from_address="a", to_address="b", direction="outgoing")


class TestDomain:
    def test_verified_is_coerced(self):
        assert Domain(id="d", user_id="u", domain="example.com", verified=1).verified is True
        assert Domain(id="d", user_id="u", domain="example.com").verified is False


class TestAccount:
    def test_extra_columns_are_ignored(self):
        account = Account.model_validate({"id": "acc", "address": "alice@example.com", "address_key": "x"})
        assert account.user_id is None
        assert not hasattr(account, "address_key")


class TestSendResult:
    def test_deferred_property(self):
        assert SendResult(status=SendStatus.DEFERRED, draft_id="d1").deferred is True
        assert SendResult(status="sent", message_id="m1").deferred is False

    def test_json_dump_uses_plain_values(self):
        dumped = SendResult(status=SendStatus.SENT, message_id="m1").model_dump(mode="json")
        assert dumped["status"] == "sent"


class TestAuthenticationReport:
    def test_defaults(self):
        report = AuthenticationReport(domain="example.com")
        assert report.mx is None
        assert report.errors == []
        assert report.dkim_selector == "default"
