"""Asynchronous mail transfer service: SMTP ingestion, relay and DNS checks.

This package provides the mail pipeline of a hosted mailbox service:

- An SMTP listener with one explicit state machine per connection
- Delivery of received mail to local accounts, dropping unknown recipients
- Outbound relay through a pooled connection, falling back to drafts
- MX/SPF/DMARC/DKIM lookups aggregated into a report
- SQLite persistence for accounts, messages, drafts and domains
- Prometheus metrics and a FastAPI REST API

Example:
    Basic usage with the FastAPI application::

        from async_mail_transfer.core import MailTransferCore
        from async_mail_transfer.api import create_app

        core = MailTransferCore(db_path="/data/mail_transfer.db")
        app = create_app(core, api_token="secret")

Authors:
    Softwell S.r.l.
"""
