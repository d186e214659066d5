# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail transfer service.

Settings come from an INI file with environment variables as fallbacks. The
file is optional: with no file every value comes from ``MTS_*`` variables or
the built-in defaults.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/mail_transfer.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [inbound]
        enabled = true
        port = 25
        hostname = mx.example.com
        max_message_size = 10485760
        idle_timeout = 300

        [relay]
        provider = local
        host = smtp.example.com
        port = 587
        user = relay-user
        password = relay-pass
        use_tls = true

        [dns]
        dkim_selector = default
        timeout = 5
"""

from __future__ import annotations

import configparser
import os
import socket
from pathlib import Path
from typing import Any

from .smtp_pool import RelayConfig

DEFAULT_DB_PATH = "/data/mail_transfer.db"
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MTS_):
      MTS_CONFIG - Path to config.ini file (default: config.ini)
      MTS_LOG_LEVEL - Logging level (default: INFO)
      MTS_DB_PATH - Database path (default: /data/mail_transfer.db)
      MTS_HOST / MTS_PORT - HTTP API bind (default: 0.0.0.0:8000)
      MTS_API_TOKEN - API authentication token
      MTS_INBOUND_ENABLED - Run the SMTP listener (default: True)
      MTS_INBOUND_HOST / MTS_INBOUND_PORT - SMTP bind (default: 0.0.0.0:25)
      MTS_INBOUND_HOSTNAME - Name in the SMTP banner (default: FQDN)
      MTS_MAX_MESSAGE_SIZE - Maximum accepted body size in bytes
      MTS_IDLE_TIMEOUT - Seconds of inactivity before a session is dropped
      MTS_RELAY_PROVIDER - Name of the outbound provider (default: local)
      MTS_RELAY_HOST / MTS_RELAY_PORT - Relay server (default: localhost:587)
      MTS_RELAY_USER / MTS_RELAY_PASSWORD - Relay credentials
      MTS_RELAY_USE_TLS - TLS towards the relay (default: False)
      MTS_RELAY_TIMEOUT - Relay timeout in seconds (default: 30)
      MTS_RELAY_TTL - Pooled connection lifetime in seconds (default: 300)
      MTS_DKIM_SELECTOR - DKIM selector checked by default (default: default)
      MTS_DNS_TIMEOUT - Per-lookup DNS timeout in seconds (default: 5)
    """
    path = Path(config_path or os.getenv("MTS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: dict[str, Any] = {
        "log_level": get("logging", "level", os.getenv("MTS_LOG_LEVEL", "INFO")),
        "db_path": get("storage", "db_path", os.getenv("MTS_DB_PATH", DEFAULT_DB_PATH)),
        "http_host": get("server", "host", os.getenv("MTS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("MTS_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("MTS_API_TOKEN")),
        "inbound_enabled": get_bool("inbound", "enabled", os.getenv("MTS_INBOUND_ENABLED"), default=True),
        "inbound_host": get("inbound", "host", os.getenv("MTS_INBOUND_HOST", "0.0.0.0")),
        "inbound_port": get_int("inbound", "port", os.getenv("MTS_INBOUND_PORT"), default=25),
        "inbound_hostname": get("inbound", "hostname", os.getenv("MTS_INBOUND_HOSTNAME")),
        "max_message_size": get_int(
            "inbound", "max_message_size", os.getenv("MTS_MAX_MESSAGE_SIZE"), default=DEFAULT_MAX_MESSAGE_SIZE
        ),
        "idle_timeout": get_float("inbound", "idle_timeout", os.getenv("MTS_IDLE_TIMEOUT"), default=300.0),
        "relay_provider": get("relay", "provider", os.getenv("MTS_RELAY_PROVIDER", "local")),
        "relay_host": get("relay", "host", os.getenv("MTS_RELAY_HOST", "localhost")),
        "relay_port": get_int("relay", "port", os.getenv("MTS_RELAY_PORT"), default=587),
        "relay_user": get("relay", "user", os.getenv("MTS_RELAY_USER")),
        "relay_password": get("relay", "password", os.getenv("MTS_RELAY_PASSWORD")),
        "relay_use_tls": get_bool("relay", "use_tls", os.getenv("MTS_RELAY_USE_TLS"), default=False),
        "relay_timeout": get_float("relay", "timeout", os.getenv("MTS_RELAY_TIMEOUT"), default=30.0),
        "relay_ttl": get_int("relay", "ttl", os.getenv("MTS_RELAY_TTL"), default=300),
        "dkim_selector": get("dns", "dkim_selector", os.getenv("MTS_DKIM_SELECTOR", "default")),
        "dns_timeout": get_float("dns", "timeout", os.getenv("MTS_DNS_TIMEOUT"), default=5.0),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    if not settings["inbound_hostname"]:
        settings["inbound_hostname"] = socket.getfqdn()
    settings["relay_provider"] = (settings["relay_provider"] or "local").strip()
    settings["dkim_selector"] = (settings["dkim_selector"] or "default").strip()
    return settings


def build_relays(settings: dict[str, Any]) -> dict[str, RelayConfig]:
    """Return the provider name to :class:`RelayConfig` mapping for ``settings``."""
    provider = settings.get("relay_provider") or "local"
    return {
        provider: RelayConfig(
            host=settings.get("relay_host") or "localhost",
            port=int(settings.get("relay_port") or 587),
            user=settings.get("relay_user") or None,
            password=settings.get("relay_password") or None,
            use_tls=bool(settings.get("relay_use_tls")),
            timeout=float(settings.get("relay_timeout") or 30.0),
        )
    }
