"""
Credential provider — hands adapters a live ConnectionHandle per source.

Adapters never see tokens. They ask the provider for a connection once per
run; GraphCredentialProvider signs in with MSAL on the first request and
shares one read-only GraphClient (plus a DNS resolver for mail-auth) with
every adapter until the run ends.
"""

from __future__ import annotations

import asyncio
import base64
import getpass
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import dns.asyncresolver
import msal
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, pkcs12

from ..config import DNS_TIMEOUT_SECONDS, MAX_CONCURRENT_REQUESTS, AuthConfig
from ..errors import AuthenticationFailed
from ..graph.client import GraphClient
from ..models import AdapterId
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_audit.auth")

APP_SCOPES = ["https://graph.microsoft.com/.default"]
AUTHORITY = "https://login.microsoftonline.com/{tenant}"

DNS_ADAPTERS = {AdapterId.MAIL_AUTH}


@dataclass(frozen=True)
class ConnectionHandle:
    """
    What an adapter gets to talk to the tenant with. `graph` behaves like
    GraphClient, `resolver` like dns.asyncresolver.Resolver; either may be
    None when the adapter has no use for it.
    """
    adapter_id: str
    graph: Any = None
    resolver: Any = None


class CredentialProvider(ABC):

    @abstractmethod
    async def get_connection(self, adapter_id: AdapterId) -> ConnectionHandle:
        """Return a live handle or raise AuthenticationFailed."""
        raise NotImplementedError


def load_pfx(path: str, password: str) -> tuple[str, str]:
    """
    Read a base64-encoded PFX and return (private key PEM, SHA-1 thumbprint),
    the pair MSAL wants for certificate client credentials.
    """
    try:
        with open(path, "r") as f:
            blob = base64.b64decode(f.read().strip())
        key, cert, _ = pkcs12.load_key_and_certificates(
            blob, password.encode("utf-8") if password else None
        )
    except FileNotFoundError:
        raise AuthenticationFailed(f"Certificate file not found: {path}")
    except (ValueError, TypeError) as e:
        raise AuthenticationFailed(f"Failed to load certificate: {e}")
    if key is None or cert is None:
        raise AuthenticationFailed(f"{path} holds no private key and certificate pair")
    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()).decode("utf-8")
    return pem, cert.fingerprint(SHA1()).hex()


class GraphCredentialProvider(CredentialProvider):
    """
    MSAL-backed provider, used as an async context manager around a run:

        async with GraphCredentialProvider(config.auth) as provider:
            report = await orchestrator.run(request)
    """

    def __init__(
        self,
        config: AuthConfig,
        guardian: Optional[SafetyGuardian] = None,
        max_concurrency: int = MAX_CONCURRENT_REQUESTS,
    ):
        self.config = config
        self.guardian = guardian or SafetyGuardian()
        self.max_concurrency = max_concurrency
        self._token: Optional[str] = None
        self._sign_in_error: Optional[AuthenticationFailed] = None
        self._graph: Optional[GraphClient] = None
        self._resolver: Optional[dns.asyncresolver.Resolver] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        if self._graph is None:
            return
        stats = self._graph.get_stats()
        safety = self.guardian.get_audit_record()
        logger.info(
            f"[auth] Graph session closed: {stats['total_requests']} requests, "
            f"{stats['throttle_events']} throttled, {len(stats['permission_denied'])} denied, "
            f"safety {safety['status']} ({safety['checks_performed']} checks)"
        )
        await self._graph.__aexit__(*args)
        self._graph = None

    async def get_connection(self, adapter_id: AdapterId) -> ConnectionHandle:
        async with self._lock:
            if self._graph is None:
                token = await self.acquire_token()
                self._graph = await GraphClient(token, self.guardian, self.max_concurrency).__aenter__()
            resolver = self._dns() if AdapterId(adapter_id) in DNS_ADAPTERS else None
        return ConnectionHandle(adapter_id=AdapterId(adapter_id).value, graph=self._graph, resolver=resolver)

    def _dns(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.lifetime = DNS_TIMEOUT_SECONDS
        return self._resolver

    async def acquire_token(self) -> str:
        """
        Sign in once per run. A failed sign-in is remembered and re-raised for
        every later adapter instead of prompting or starting a new flow.
        """
        if self._token:
            return self._token
        if self._sign_in_error is not None:
            raise self._sign_in_error
        sign_in = {
            "certificate": self._certificate_token,
            "delegated": self._device_code_token,
        }.get(self.config.mode)
        if sign_in is None:
            raise AuthenticationFailed(f"Unknown auth mode: {self.config.mode}")
        # MSAL is synchronous and the device code flow blocks on the user
        try:
            self._token = await asyncio.to_thread(sign_in)
        except AuthenticationFailed as e:
            self._sign_in_error = e
        except Exception as e:
            self._sign_in_error = AuthenticationFailed(f"Sign-in failed: {type(e).__name__}: {e}")
        if self._sign_in_error is not None:
            logger.error(f"[auth] {self._sign_in_error}; no further sign-in attempts this run")
            raise self._sign_in_error
        return self._token

    def _certificate_token(self) -> str:
        cert = self.config.certificate
        if not cert:
            raise AuthenticationFailed("Certificate auth config not provided.")
        password = (
            cert.certificate_password
            or os.environ.get("M365_CERT_PASSWORD", "")
            or getpass.getpass("Enter the certificate password: ")
        )
        pem, thumbprint = load_pfx(cert.certificate_path, password)
        logger.info(f"[auth] Certificate loaded, thumbprint {thumbprint}")
        app = msal.ConfidentialClientApplication(
            client_id=cert.client_id,
            authority=AUTHORITY.format(tenant=cert.tenant_id),
            client_credential={"thumbprint": thumbprint, "private_key": pem},
        )
        return _token_or_raise(app.acquire_token_for_client(scopes=APP_SCOPES), "Certificate")

    def _device_code_token(self) -> str:
        deleg = self.config.delegated
        if not deleg:
            raise AuthenticationFailed("Delegated auth config not provided.")
        app = msal.PublicClientApplication(
            client_id=deleg.client_id,
            authority=AUTHORITY.format(tenant=deleg.tenant_id),
        )
        flow = app.initiate_device_flow(scopes=deleg.scopes)
        if "user_code" not in flow:
            raise AuthenticationFailed(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )
        logger.warning(flow.get("message") or
                       f"Open {flow['verification_uri']} and enter code {flow['user_code']}")
        return _token_or_raise(app.acquire_token_by_device_flow(flow), "Delegated")


def _token_or_raise(result: dict, mode: str) -> str:
    if "access_token" in result:
        logger.info(f"[auth] {mode} sign-in succeeded")
        return result["access_token"]
    error = result.get("error_description", result.get("error", "Unknown"))
    raise AuthenticationFailed(f"{mode} auth failed: {error}")
