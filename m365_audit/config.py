"""
Settings for the audit pipeline.

Module constants cover the Graph wire (URLs, retry/backoff, paging, batch
size), per-source slice spans and DNS. The dataclasses hold what a run can
override; PipelineConfig.from_file reads the same shape from JSON.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional


# ─── Graph ──────────────────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

MAX_CONCURRENT_REQUESTS = 4       # In-flight calls per shared client
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 120.0
BACKOFF_MULTIPLIER = 2.0

DEFAULT_PAGE_SIZE = 999           # Graph's $top ceiling
MAX_PAGES_PER_ENDPOINT = 10000
BATCH_SIZE = 20                   # Graph rejects larger $batch bodies


# ─── Event source slicing ───────────────────────────────────────────────────
# Widest window one call may cover. Audit log queries cap their result
# volume, sign-ins are the noisiest log, directory audits are sparse.

SLICE_SPANS = {
    "AuditLog": timedelta(hours=24),
    "MailboxAudit": timedelta(hours=24),
    "SignIn": timedelta(hours=6),
    "DirectoryAudit": timedelta(days=7),
}
SLICE_RETRY_BACKOFF_SECONDS = 2.0

AUDIT_QUERY_POLL_SECONDS = 5.0
AUDIT_QUERY_MAX_POLLS = 120


# ─── DNS ────────────────────────────────────────────────────────────────────

DNS_TIMEOUT_SECONDS = 5.0
DEFAULT_DKIM_SELECTORS = ["selector1", "selector2"]   # Exchange Online defaults


# ─── Run settings ───────────────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    tenant_id: str
    client_id: str
    certificate_path: str = "./base64.txt"   # base64 PFX
    certificate_password: str = ""           # empty: M365_CERT_PASSWORD, then prompt


@dataclass
class DelegatedAuth:
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: ["https://graph.microsoft.com/.default"])


@dataclass
class AuthConfig:
    mode: str = "certificate"                # or "delegated" (device code)
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


@dataclass
class CollectionConfig:
    """How adapters fetch: parallelism, slicing, retry and per-source knobs."""
    degree_of_parallelism: int = 4
    page_size: int = DEFAULT_PAGE_SIZE
    slice_retry_backoff_seconds: float = SLICE_RETRY_BACKOFF_SECONDS
    slice_spans: dict[str, timedelta] = field(default_factory=lambda: dict(SLICE_SPANS))
    cancel_grace_seconds: float = 5.0
    audit_query_poll_seconds: float = AUDIT_QUERY_POLL_SECONDS
    audit_query_max_polls: int = AUDIT_QUERY_MAX_POLLS
    stale_days: int = 90
    dkim_selectors: list[str] = field(default_factory=lambda: list(DEFAULT_DKIM_SELECTORS))
    mail_auth_domains: list[str] = field(default_factory=list)   # empty: verified tenant domains
    max_mailboxes: int = 5000

    def slice_span(self, source: str) -> Optional[timedelta]:
        return self.slice_spans.get(source)


ALL_FORMATS = ["json", "csv", "markdown", "html"]


@dataclass
class OutputConfig:
    base_dir: str = "./m365_audit_output"
    formats: list[str] = field(default_factory=lambda: list(ALL_FORMATS))

    @property
    def output_dir(self) -> Path:
        return Path(self.base_dir)


@dataclass
class PipelineConfig:
    auth: AuthConfig = field(default_factory=AuthConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    anonymize: bool = False
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineConfig":
        """
        Build a config from JSON. Sections and keys are optional; unknown
        keys are ignored. `collection.slice_spans` is given in hours.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        config = cls(auth=_auth_from(data.get("auth", {})))
        collection = dict(data.get("collection", {}))
        spans = collection.pop("slice_spans", {})
        _assign(config.collection, collection)
        config.collection.slice_spans.update(
            {source: timedelta(hours=float(hours)) for source, hours in spans.items()}
        )
        _assign(config.output, data.get("output", {}))
        _assign(config, {k: data[k] for k in ("anonymize", "verbose") if k in data})
        return config


def _assign(target: Any, values: dict):
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key in known:
            setattr(target, key, value)


def _auth_from(data: dict) -> AuthConfig:
    auth = AuthConfig(mode=data.get("mode", "certificate"))
    if "certificate" in data:
        c = data["certificate"]
        auth.certificate = CertificateAuth(
            tenant_id=c["tenant_id"],
            client_id=c["client_id"],
            certificate_path=c.get("certificate_path", "./base64.txt"),
            certificate_password=c.get("certificate_password", ""),
        )
    if "delegated" in data:
        d = data["delegated"]
        auth.delegated = DelegatedAuth(tenant_id=d["tenant_id"], client_id=d["client_id"])
        if d.get("scopes"):
            auth.delegated.scopes = list(d["scopes"])
    return auth


def configure_logging(verbose: bool = False):
    """Console logging for front-ends. The library itself never calls this."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
