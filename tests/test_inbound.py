import asyncio
from email.message import EmailMessage

import aiosmtplib
import pytest
import pytest_asyncio

from async_mail_transfer.errors import MessageParseError, StoreUnavailableError
from async_mail_transfer.inbound import InboundDelivery, InboundServer
from async_mail_transfer.models import UNKNOWN_SENDER
from async_mail_transfer.persistence import MailStore
from async_mail_transfer.prometheus import MailMetrics
from async_mail_transfer.resolver import AccountResolver
from async_mail_transfer.smtp_session import Envelope

RAW = b"From: Bob <bob@remote.org>\r\nSubject: Hello\r\n\r\nHi there\r\n"


@pytest_asyncio.fixture
async def store(tmp_path):
    s = MailStore(str(tmp_path / "inbound.db"))
    await s.init_db()
    await s.add_account({"id": "alice", "user_id": "u-1", "address": "alice@example.com"})
    await s.add_account({"id": "carol", "user_id": "u-2", "address": "carol@example.com"})
    yield s
    await s.close()


@pytest.fixture
def delivery(store):
    return InboundDelivery(AccountResolver(store), store, MailMetrics())


async def received(store, account_id):
    return await store.list_messages(account_id, direction="received")


@pytest.mark.asyncio
async def test_known_recipient_gets_one_unread_message(store, delivery):
    result = await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com"], content=RAW))

    assert result.delivered == 1
    messages = await received(store, "alice")
    assert len(messages) == 1
    msg = messages[0]
    assert msg["from_address"] == "bob@remote.org"
    assert msg["to_address"] == "alice@example.com"
    assert msg["subject"] == "Hello"
    assert msg["body"].strip() == "Hi there"
    assert msg["is_read"] is False


@pytest.mark.asyncio
async def test_unknown_recipient_is_dropped_silently(store, delivery):
    result = await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["nobody@example.com"], content=RAW))
    assert result.dropped == 1
    assert result.delivered == 0
    assert not result.retryable
    assert await received(store, "alice") == []


@pytest.mark.asyncio
async def test_mixed_recipients_yield_one_message(store, delivery):
    envelope = Envelope(
        mail_from="bob@remote.org",
        rcpt_tos=["nobody@example.com", "alice@example.com"],
        content=RAW,
    )
    result = await delivery.deliver(envelope)
    assert (result.delivered, result.dropped) == (1, 1)
    assert len(await received(store, "alice")) == 1


@pytest.mark.asyncio
async def test_each_recipient_gets_own_copy(store, delivery):
    envelope = Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com", "carol@example.com"], content=RAW)
    await delivery.deliver(envelope)
    assert len(await received(store, "alice")) == 1
    assert len(await received(store, "carol")) == 1


@pytest.mark.asyncio
async def test_duplicate_recipient_persisted_once(store, delivery):
    envelope = Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com", "alice@EXAMPLE.com"], content=RAW)
    result = await delivery.deliver(envelope)
    assert result.delivered == 1
    assert len(await received(store, "alice")) == 1


@pytest.mark.asyncio
async def test_sender_falls_back_to_header_then_unknown(store, delivery):
    await delivery.deliver(Envelope(mail_from=None, rcpt_tos=["alice@example.com"], content=RAW))
    await delivery.deliver(Envelope(mail_from=None, rcpt_tos=["carol@example.com"], content=b"Subject: x\r\n\r\nbody\r\n"))
    assert (await received(store, "alice"))[0]["from_address"] == "bob@remote.org"
    assert (await received(store, "carol"))[0]["from_address"] == UNKNOWN_SENDER


@pytest.mark.asyncio
async def test_malformed_from_header_falls_back_to_envelope_sender(store, delivery):
    raw = b"From: a@[\r\nSubject: x\r\n\r\nbody\r\n"
    result = await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com"], content=raw))
    assert result.delivered == 1
    msg = (await received(store, "alice"))[0]
    assert msg["from_address"] == "bob@remote.org"
    assert msg["subject"] == "x"


@pytest.mark.asyncio
async def test_null_from_header_without_envelope_sender_is_unknown(store, delivery):
    raw = b'From: "a" <>\r\nSubject: x\r\n\r\nbody\r\n'
    await delivery.deliver(Envelope(mail_from=None, rcpt_tos=["alice@example.com"], content=raw))
    assert (await received(store, "alice"))[0]["from_address"] == UNKNOWN_SENDER


@pytest.mark.asyncio
async def test_parser_crash_is_a_parse_error(store, delivery, monkeypatch):
    def broken(*args, **kwargs):
        raise AttributeError("boom")

    monkeypatch.setattr("async_mail_transfer.parser.email.message_from_bytes", broken)
    with pytest.raises(MessageParseError):
        await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com"], content=RAW))
    assert await received(store, "alice") == []


@pytest.mark.asyncio
async def test_parse_error_persists_nothing(store, delivery):
    with pytest.raises(MessageParseError):
        await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com"], content=b""))
    assert await received(store, "alice") == []


@pytest.mark.asyncio
async def test_store_failure_for_one_recipient_does_not_block_others(store, monkeypatch):
    original = store.save_message

    async def flaky_save(message_id, account_id, *args):
        if account_id == "alice":
            raise StoreUnavailableError("disk full")
        return await original(message_id, account_id, *args)

    monkeypatch.setattr(store, "save_message", flaky_save)
    metrics = MailMetrics()
    delivery = InboundDelivery(AccountResolver(store), store, metrics)
    envelope = Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com", "carol@example.com"], content=RAW)

    result = await delivery.deliver(envelope)
    assert (result.delivered, result.failed) == (1, 1)
    assert not result.retryable
    assert len(await received(store, "carol")) == 1
    assert b'mts_inbound_errors_total{reason="store"} 1.0' in metrics.generate_latest()


@pytest.mark.asyncio
async def test_resolution_unavailable_makes_transaction_retryable(tmp_path):
    store = MailStore(str(tmp_path / "no-such-dir" / "db.sqlite"))
    delivery = InboundDelivery(AccountResolver(store), store, MailMetrics())
    result = await delivery.deliver(Envelope(mail_from="bob@remote.org", rcpt_tos=["alice@example.com"], content=RAW))
    assert result.failed == 1
    assert result.retryable


# --------------------------------------------------------------------- server


@pytest_asyncio.fixture
async def server(delivery):
    srv = InboundServer(delivery, host="127.0.0.1", port=0, hostname="mx.test", idle_timeout=5)
    await srv.start()
    yield srv
    await srv.stop()


def build_message(to):
    msg = EmailMessage()
    msg["From"] = "bob@remote.org"
    msg["To"] = to
    msg["Subject"] = "Over the wire"
    msg.set_content("Hello from aiosmtplib")
    return msg


@pytest.mark.asyncio
async def test_end_to_end_delivery_over_smtp(server, store):
    assert server.bound_port
    errors, response = await aiosmtplib.send(
        build_message("alice@example.com"),
        hostname="127.0.0.1",
        port=server.bound_port,
        recipients=["alice@example.com", "ghost@example.com"],
        start_tls=False,
        use_tls=False,
    )
    assert errors == {}
    assert "queued as" in response

    messages = await received(store, "alice")
    assert len(messages) == 1
    assert messages[0]["subject"] == "Over the wire"
    assert messages[0]["body"].strip() == "Hello from aiosmtplib"


@pytest.mark.asyncio
async def test_end_to_end_with_auth_accepts_any_credentials(server, store):
    smtp = aiosmtplib.SMTP(hostname="127.0.0.1", port=server.bound_port, start_tls=False, use_tls=False)
    await smtp.connect()
    await smtp.login("anyone", "whatever")
    await smtp.send_message(build_message("carol@example.com"))
    await smtp.quit()
    assert len(await received(store, "carol")) == 1


@pytest.mark.asyncio
async def test_concurrent_sessions_are_independent(server, store):
    async def one(to):
        await aiosmtplib.send(
            build_message(to), hostname="127.0.0.1", port=server.bound_port, start_tls=False, use_tls=False
        )

    await asyncio.gather(one("alice@example.com"), one("carol@example.com"), one("alice@example.com"))
    assert len(await received(store, "alice")) == 2
    assert len(await received(store, "carol")) == 1


@pytest.mark.asyncio
async def test_raw_session_banner_and_quit(server):
    reader, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
    banner = await reader.readline()
    assert banner.startswith(b"220 mx.test")
    writer.write(b"RCPT TO:<alice@example.com>\r\n")
    await writer.drain()
    assert (await reader.readline()).startswith(b"503")
    writer.write(b"QUIT\r\n")
    await writer.drain()
    assert (await reader.readline()).startswith(b"221")
    assert await reader.read() == b""
    writer.close()


@pytest.mark.asyncio
async def test_idle_timeout_closes_connection(delivery):
    srv = InboundServer(delivery, host="127.0.0.1", port=0, hostname="mx.test", idle_timeout=0.1)
    await srv.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", srv.bound_port)
        await reader.readline()
        line = await asyncio.wait_for(reader.readline(), timeout=2)
        assert line.startswith(b"421")
        writer.close()
    finally:
        await srv.stop()


@pytest.mark.asyncio
async def test_overlong_line_closes_connection(delivery):
    srv = InboundServer(delivery, host="127.0.0.1", port=0, hostname="mx.test", max_line_length=128)
    await srv.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", srv.bound_port)
        await reader.readline()
        writer.write(b"NOOP " + b"x" * 1024 + b"\r\n")
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=2)
        assert line.startswith(b"500")
        writer.close()
    finally:
        await srv.stop()


@pytest.mark.asyncio
async def test_session_metrics(server, delivery):
    await aiosmtplib.send(
        build_message("alice@example.com"), hostname="127.0.0.1", port=server.bound_port, start_tls=False, use_tls=False
    )
    output = delivery.metrics.generate_latest()
    assert b"mts_inbound_sessions_total 1.0" in output
    assert b"mts_received_total 1.0" in output
