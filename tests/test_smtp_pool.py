import asyncio

import pytest

from async_mail_transfer.errors import InvalidInputError
from async_mail_transfer.smtp_pool import RelayConfig, SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=True, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise RuntimeError("Connection dead")
        return 250, b"OK"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("async_mail_transfer.smtp_pool.aiosmtplib.SMTP", factory)
    return created


def make_pool(ttl=30, **relay):
    relay.setdefault("host", "smtp.local")
    relay.setdefault("port", 25)
    return SMTPPool({"local": RelayConfig(**relay)}, ttl=ttl)


@pytest.mark.asyncio
async def test_connection_reuses_active_instance(patch_aiosmtplib):
    pool = make_pool(user="user", password="pass")
    async with pool.connection() as smtp1:
        pass
    async with pool.connection("local") as smtp2:
        pass

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_connection_without_credentials_skips_login():
    pool = make_pool()
    async with pool.connection() as smtp:
        assert smtp.connected is True
        assert smtp.login_credentials is None


@pytest.mark.asyncio
async def test_connection_discards_expired_instance():
    pool = make_pool(ttl=-1)
    async with pool.connection() as smtp1:
        pass
    async with pool.connection() as smtp2:
        pass
    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_connection_replaces_dead_instance():
    pool = make_pool()
    async with pool.connection() as smtp1:
        pass
    smtp1.alive = False
    async with pool.connection() as smtp2:
        pass
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_error_inside_block_drops_connection():
    pool = make_pool()
    with pytest.raises(RuntimeError):
        async with pool.connection() as smtp1:
            raise RuntimeError("relay said no")
    assert smtp1.closed is True

    async with pool.connection() as smtp2:
        pass
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch):
    pool = make_pool(ttl=1)
    async with pool.connection() as smtp:
        pass

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool._slots["local"].smtp is None


@pytest.mark.asyncio
async def test_cleanup_keeps_healthy_connections():
    pool = make_pool()
    async with pool.connection() as smtp:
        pass
    await pool.cleanup()
    assert smtp.closed is False
    assert pool._slots["local"].smtp is smtp


@pytest.mark.asyncio
async def test_connection_respects_use_tls():
    pool = make_pool(host="smtp.secure", port=465, use_tls=True)
    async with pool.connection() as smtp:
        assert smtp.use_tls is True
        assert smtp.start_tls is False


@pytest.mark.asyncio
async def test_connection_uses_starttls_on_submission_port():
    pool = make_pool(port=587, use_tls=True)
    async with pool.connection() as smtp:
        assert smtp.use_tls is False
        assert smtp.start_tls is True


@pytest.mark.asyncio
async def test_plain_connection():
    pool = make_pool(use_tls=False)
    async with pool.connection() as smtp:
        assert smtp.use_tls is False
        assert smtp.start_tls is False
        assert smtp.timeout == 30.0


@pytest.mark.asyncio
async def test_unknown_provider_is_invalid_input():
    pool = make_pool()
    with pytest.raises(InvalidInputError):
        async with pool.connection("sendgrid"):
            pass


@pytest.mark.asyncio
async def test_providers_have_separate_connections(patch_aiosmtplib):
    pool = SMTPPool({"local": RelayConfig(host="a"), "backup": RelayConfig(host="b")})
    async with pool.connection("local") as a:
        pass
    async with pool.connection("backup") as b:
        pass
    assert a is not b
    assert (a.hostname, b.hostname) == ("a", "b")


@pytest.mark.asyncio
async def test_concurrent_sends_are_serialized_per_provider():
    pool = make_pool()
    active = 0
    peak = 0

    async def send():
        nonlocal active, peak
        async with pool.connection():
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(send(), send(), send())
    assert peak == 1


@pytest.mark.asyncio
async def test_close_all_quits_connections():
    pool = make_pool()
    async with pool.connection() as smtp:
        pass
    await pool.close_all()
    assert smtp.closed is True
    assert pool._slots["local"].smtp is None
