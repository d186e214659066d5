# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Read-only DNS authentication checks for a domain.

:class:`DomainAuthenticator` queries the domain's MX, SPF, DMARC and DKIM
records with dnspython's asyncio resolver. The four lookups run concurrently
and each one is bounded by its own timeout. A failing lookup never aborts the
others: its record stays ``None`` and a labeled entry is added to the
report's ``errors`` list.

"No record" and "lookup failed" are kept apart: an empty answer, or a missing
``_dmarc``/``_domainkey`` name, is an absent record with no error.
"""

from __future__ import annotations

import asyncio

import dns.asyncresolver
import dns.exception
import dns.resolver

from .errors import InvalidDomainError
from .logger import get_logger
from .models import AuthenticationReport, MxRecord

DEFAULT_DKIM_SELECTOR = "default"
SPF_PREFIX = "v=spf1"
DMARC_PREFIX = "v=dmarc1"
DKIM_PREFIX = "v=dkim1"


class LookupFailed(Exception):
    """A lookup failed for a reason other than the record being absent."""


def normalise_domain(domain: str | None) -> str:
    value = (domain or "").strip().rstrip(".").lower()
    if not value or " " in value:
        raise InvalidDomainError(f"Invalid domain: {domain!r}")
    return value


def _txt_values(answer) -> list[str]:
    """Concatenate the character-strings of every TXT rdata in ``answer``."""
    values = []
    for rdata in answer:
        values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
    return values


class DomainAuthenticator:
    """Aggregate MX/SPF/DMARC/DKIM records into an :class:`AuthenticationReport`.

    Attributes:
        resolver: Object with an async ``resolve(qname, rdtype)`` method.
        dkim_selector: Selector used when :meth:`check` is given none.
        timeout: Upper bound in seconds for each individual lookup.
    """

    def __init__(self, resolver=None, *, dkim_selector: str = DEFAULT_DKIM_SELECTOR, timeout: float = 5.0, metrics=None, logger=None):
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = timeout
        self.resolver = resolver
        self.dkim_selector = dkim_selector or DEFAULT_DKIM_SELECTOR
        self.timeout = timeout
        self.metrics = metrics
        self.logger = logger or get_logger("DomainAuthenticator")

    async def _query(self, qname: str, rdtype: str, *, absent_on_nxdomain: bool):
        """Return the answer, or None when the record is absent.

        Raises:
            LookupFailed: On timeout, NXDOMAIN of the domain itself, or any
                other resolver failure.
        """
        try:
            return await asyncio.wait_for(self.resolver.resolve(qname, rdtype), timeout=self.timeout)
        except dns.resolver.NoAnswer:
            return None
        except dns.resolver.NXDOMAIN as exc:
            if absent_on_nxdomain:
                return None
            raise LookupFailed(f"{qname} does not exist") from exc
        except (asyncio.TimeoutError, dns.exception.Timeout) as exc:
            raise LookupFailed(f"{rdtype} lookup for {qname} timed out") from exc
        except Exception as exc:
            raise LookupFailed(str(exc) or exc.__class__.__name__) from exc

    async def lookup_mx(self, domain: str) -> list[MxRecord] | None:
        answer = await self._query(domain, "MX", absent_on_nxdomain=False)
        if answer is None:
            return None
        records = [
            MxRecord(exchange=rdata.exchange.to_text(omit_final_dot=True), priority=int(rdata.preference))
            for rdata in answer
        ]
        return sorted(records, key=lambda r: (r.priority, r.exchange)) or None

    async def lookup_spf(self, domain: str) -> str | None:
        answer = await self._query(domain, "TXT", absent_on_nxdomain=False)
        if answer is None:
            return None
        return next((v for v in _txt_values(answer) if v.lower().startswith(SPF_PREFIX)), None)

    async def lookup_dmarc(self, domain: str) -> str | None:
        answer = await self._query(f"_dmarc.{domain}", "TXT", absent_on_nxdomain=True)
        if answer is None:
            return None
        return next((v for v in _txt_values(answer) if v.lower().startswith(DMARC_PREFIX)), None)

    async def lookup_dkim(self, domain: str, selector: str) -> str | None:
        answer = await self._query(f"{selector}._domainkey.{domain}", "TXT", absent_on_nxdomain=True)
        if answer is None:
            return None
        values = _txt_values(answer)
        if not values:
            return None
        return next((v for v in values if v.lower().startswith(DKIM_PREFIX)), values[0])

    async def check(self, domain: str, dkim_selector: str | None = None) -> AuthenticationReport:
        """Run all four lookups concurrently and aggregate them.

        Raises:
            InvalidDomainError: If ``domain`` is empty or malformed. No lookup
                is attempted.
        """
        name = normalise_domain(domain)
        selector = (dkim_selector or "").strip() or self.dkim_selector
        labels = ("MX", "SPF", "DMARC", "DKIM")
        results = await asyncio.gather(
            self.lookup_mx(name),
            self.lookup_spf(name),
            self.lookup_dmarc(name),
            self.lookup_dkim(name, selector),
            return_exceptions=True,
        )

        values: dict[str, object] = {}
        errors: list[str] = []
        for label, result in zip(labels, results):
            if isinstance(result, LookupFailed):
                errors.append(f"{label}: {result}")
                values[label] = None
                self.logger.debug("%s lookup failed for %s: %s", label, name, result)
                if self.metrics is not None:
                    self.metrics.inc_dns_error(label.lower())
            elif isinstance(result, BaseException):
                raise result
            else:
                values[label] = result

        return AuthenticationReport(
            domain=name,
            dkim_selector=selector,
            mx=values["MX"],
            spf=values["SPF"],
            dmarc=values["DMARC"],
            dkim=values["DKIM"],
            errors=errors,
        )
