"""
Mail Authentication adapter
SPF, DMARC and DKIM TXT records for the tenant's verified domains (or an
explicit domain list). A DNS failure of any kind is treated as "record
absent" so a missing record is reported as a finding, never as an error.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

import dns.exception
import dns.resolver

from .base import FindingAdapter, SectionTracker
from ..models import AdapterId, Finding, FindingType, TimeWindow

logger = logging.getLogger("m365_audit.adapters.mail_auth")

SPF_ALL_RE = re.compile(r"(?:^|\s)([+~?-]?)all(?:\s|$)", re.IGNORECASE)
DMARC_POLICY_RE = re.compile(r"(?:^|;)\s*p\s*=\s*([a-z]+)", re.IGNORECASE)

# NXDOMAIN, NoAnswer, NoNameservers and Timeout all derive from DNSException
ABSENT_ERRORS = (
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
    dns.exception.Timeout,
    dns.exception.DNSException,
)


class MailAuthAdapter(FindingAdapter):
    adapter_id = AdapterId.MAIL_AUTH
    name = "mail_auth"
    description = "SPF / DMARC / DKIM records for sending domains"

    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        domains = await self._domains(connection)
        if connection.resolver is None:
            raise RuntimeError("MailAuth requires a DNS resolver on the connection handle")

        findings = await asyncio.gather(
            *(self._check_domain(connection.resolver, d) for d in domains)
        )
        return sorted(findings, key=lambda f: f.subject_id)

    async def _domains(self, connection: Any) -> list[str]:
        if self.config.mail_auth_domains:
            return sorted({d.strip().lower() for d in self.config.mail_auth_domains if d.strip()})
        rows = await connection.graph.get_all_pages("domains", skip_top=True)
        return sorted({
            (r.get("id") or "").lower() for r in rows
            if r.get("isVerified") and r.get("id")
            # The initial onmicrosoft.com domain is Microsoft-managed
            and not r.get("id", "").lower().endswith(".onmicrosoft.com")
        })

    async def _check_domain(self, resolver: Any, domain: str) -> Finding:
        spf = _first_with_prefix(await _txt(resolver, domain), "v=spf1")
        dmarc = _first_with_prefix(await _txt(resolver, f"_dmarc.{domain}"), "v=DMARC1")

        dkim_found = []
        for selector in self.config.dkim_selectors:
            records = await _txt(resolver, f"{selector}._domainkey.{domain}")
            if any("p=" in r for r in records):
                dkim_found.append(selector)

        spf_all = SPF_ALL_RE.search(spf) if spf else None
        dmarc_policy = DMARC_POLICY_RE.search(dmarc) if dmarc else None

        return Finding(
            type=FindingType.MAIL_AUTH_DOMAIN,
            subject_id=domain,
            attributes={
                "domain": domain,
                "spfPresent": spf is not None,
                "spfRecord": spf,
                # "" is the implicit "+" qualifier
                "spfAllQualifier": (spf_all.group(1) or "+") if spf_all else None,
                "dmarcPresent": dmarc is not None,
                "dmarcRecord": dmarc,
                "dmarcPolicy": dmarc_policy.group(1).lower() if dmarc_policy else None,
                "dkimSelectors": list(self.config.dkim_selectors),
                "dkimSelectorsFound": dkim_found,
                "dkimPresent": bool(dkim_found),
            },
            raw_payload={"domain": domain, "spf": spf, "dmarc": dmarc, "dkim": dkim_found},
        )


async def _txt(resolver: Any, name: str) -> list[str]:
    """TXT strings at name, or [] when the lookup fails for any reason."""
    try:
        answer = await resolver.resolve(name, "TXT")
    except ABSENT_ERRORS as e:
        logger.debug(f"[mail_auth] No TXT at {name}: {type(e).__name__}")
        return []
    out = []
    for rdata in answer:
        # TXT rdata is split into <=255 byte chunks
        out.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
    return out


def _first_with_prefix(records: list[str], prefix: str) -> Optional[str]:
    p = prefix.lower()
    for r in records:
        if r.strip().lower().startswith(p):
            return r.strip()
    return None
