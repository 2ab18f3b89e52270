"""
End-to-end verification of the served key set.

Fetches ``jwks.json`` from the nginx Service, signs a short-lived RS256
token with the certificate's private key and verifies it with the first
served key. A pass succeeds only if the key nginx is actually serving
belongs to the private key in the certificate secret.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from kubernetes import client
from kubernetes.client.rest import ApiException

from jwks_operator.constants import (
    APP_LABEL_KEY,
    JWKS_CONFIGMAP_KEY,
    READINESS_POLL_ATTEMPTS,
    READINESS_POLL_INTERVAL,
    VERIFICATION_ISSUER,
    VERIFICATION_SUBJECT,
    VERIFICATION_TOKEN_TTL,
)
from jwks_operator.errors import JWKSError, VerificationFailedError
from jwks_operator.observability.logging import OperatorLogger
from jwks_operator.services.key_material import (
    private_key_from_secret,
    rsa_public_key_from_jwk,
)
from jwks_operator.utils.kubernetes import ResourceStore
from jwks_operator.utils.retry import retry_with_delay

logger = OperatorLogger(__name__)

_RSA_ALGORITHMS = ["RS256", "RS384", "RS512"]


@dataclass(frozen=True)
class VerificationSettings:
    timeout: float = 10.0
    retry_count: int = 3
    retry_delay: float = 2.0
    context_timeout: float = 30.0
    cluster_domain: str = "svc.cluster.local"


class VerificationResult(str, Enum):
    VERIFIED = "verified"
    SKIPPED = "skipped"


@dataclass
class ReadinessReport:
    """Pod counts observed by the last readiness poll."""

    ready: bool
    total: int = 0
    running: int = 0
    ready_pods: int = 0

    def describe(self) -> str:
        return (
            f"{self.total} pod(s), {self.running} running, {self.ready_pods} ready"
        )


def _pod_ready(pod: client.V1Pod) -> bool:
    status = pod.status
    if status is None or status.phase != "Running":
        return False
    return any(
        c.type == "Ready" and c.status == "True" for c in (status.conditions or [])
    )


def create_test_token(private_key: rsa.RSAPrivateKey, kid: str) -> str:
    """Sign a short-lived RS256 token carrying ``kid``."""
    now = int(time.time())
    claims = {
        "iss": VERIFICATION_ISSUER,
        "sub": VERIFICATION_SUBJECT,
        "iat": now,
        "exp": now + VERIFICATION_TOKEN_TTL,
        "kid": kid,
    }
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


def verify_token(token: str, public_key: rsa.RSAPublicKey) -> dict[str, Any]:
    """
    Verify a token signed by :func:`create_test_token`.

    Raises:
        VerificationFailedError: On a non-RSA signing method or a bad signature
    """
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as e:
        raise VerificationFailedError(f"Failed to parse token: {e}", cause=e) from e
    if header.get("alg") not in _RSA_ALGORITHMS:
        raise VerificationFailedError(
            f"Unexpected signing method: {header.get('alg')}"
        )
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=_RSA_ALGORITHMS,
            issuer=VERIFICATION_ISSUER,
        )
    except jwt.InvalidTokenError as e:
        raise VerificationFailedError(
            f"Failed to verify JWT with public key from JWKS: {e}", cause=e
        ) from e


def first_public_key(document: dict[str, Any]) -> tuple[rsa.RSAPublicKey, str]:
    """
    Rebuild the public key of the first entry in a key set document.

    Raises:
        VerificationFailedError: If there is no usable RSA key
    """
    keys = document.get("keys") if isinstance(document, dict) else None
    if not isinstance(keys, list) or not keys:
        raise VerificationFailedError("JWKS contains no keys")
    first = keys[0]
    if not isinstance(first, dict):
        raise VerificationFailedError("JWKS key entry is not an object")
    try:
        public_key = rsa_public_key_from_jwk(first)
    except JWKSError as e:
        raise VerificationFailedError(
            f"Failed to extract public key from JWKS: {e}", cause=e
        ) from e
    return public_key, str(first.get("kid", ""))


class JWKSVerifier:
    """Proves that nginx serves the public half of the certificate key."""

    def __init__(
        self,
        store: ResourceStore,
        settings: VerificationSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings or VerificationSettings()
        self._transport = transport
        self._sleep = sleep

    def service_url(self, name: str, namespace: str) -> str:
        domain = self.settings.cluster_domain
        return f"http://{name}.{namespace}.{domain}/{JWKS_CONFIGMAP_KEY}"

    async def wait_for_ready_pods(self, name: str, namespace: str) -> ReadinessReport:
        """
        Poll until at least one pod behind the Service is Running and Ready.

        API errors end the poll with a not-ready report.
        """
        report = ReadinessReport(ready=False)
        try:
            service = await self.store.get_service(namespace, name)
        except ApiException as e:
            logger.warning(
                f"Failed to read nginx service {namespace}/{name}: "
                f"{e.status} {e.reason}"
            )
            return report
        selector = dict(service.spec.selector or {}) if service is not None else {}
        if not selector:
            selector = {APP_LABEL_KEY: name}

        for attempt in range(READINESS_POLL_ATTEMPTS):
            try:
                pods = await self.store.list_pods(namespace, selector)
            except ApiException as e:
                logger.warning(
                    f"Failed to list nginx pods of {namespace}/{name}: "
                    f"{e.status} {e.reason}"
                )
                return report
            report = ReadinessReport(
                ready=False,
                total=len(pods),
                running=sum(
                    1
                    for p in pods
                    if p.status is not None and p.status.phase == "Running"
                ),
                ready_pods=sum(1 for p in pods if _pod_ready(p)),
            )
            if report.ready_pods > 0:
                report.ready = True
                return report
            if attempt + 1 < READINESS_POLL_ATTEMPTS:
                await self._sleep(READINESS_POLL_INTERVAL)
        return report

    async def fetch_key_set(self, url: str) -> dict[str, Any]:
        """
        GET the served key set.

        Raises:
            VerificationFailedError: On transport errors, non-200 or non-JSON bodies
        """
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout),
                transport=self._transport,
            ) as http:
                response = await http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise VerificationFailedError(
                f"Failed to fetch JWKS from nginx: {e}", cause=e
            ) from e

        if response.status_code != 200:
            raise VerificationFailedError(
                f"Unexpected status code: {response.status_code}, "
                f"body: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise VerificationFailedError(
                f"Served JWKS is not valid JSON: {e}", cause=e
            ) from e

    async def verify_once(
        self, name: str, namespace: str, secret: client.V1Secret
    ) -> str:
        """
        Run one fetch-sign-verify round trip.

        Returns:
            The ``kid`` of the verified key
        """
        document = await self.fetch_key_set(self.service_url(name, namespace))
        public_key, kid = first_public_key(document)
        try:
            private_key = private_key_from_secret(secret)
        except JWKSError as e:
            raise VerificationFailedError(
                f"Failed to extract private key from secret: {e}", cause=e
            ) from e
        verify_token(create_test_token(private_key, kid), public_key)
        return kid

    async def verify(
        self,
        name: str,
        namespace: str,
        secret: client.V1Secret,
        serving_enabled: bool = True,
    ) -> VerificationResult:
        """
        Verify the served key set with bounded retries.

        Returns SKIPPED when serving is disabled or no nginx pod became ready.

        Raises:
            VerificationFailedError: If every attempt failed or time ran out
        """
        if not serving_enabled:
            return VerificationResult.SKIPPED

        report = await self.wait_for_ready_pods(name, namespace)
        if not report.ready:
            logger.warning(
                f"Skipping verification of {namespace}/{name}: no ready nginx pods "
                f"({report.describe()})"
            )
            return VerificationResult.SKIPPED

        def on_retry(attempt: int, error: Exception) -> None:
            logger.debug(
                f"Verification attempt {attempt + 1} for {namespace}/{name} "
                f"failed: {error}",
                attempt=attempt + 1,
                delay=self.settings.retry_delay,
            )

        try:
            kid = await asyncio.wait_for(
                retry_with_delay(
                    lambda: self.verify_once(name, namespace, secret),
                    max_attempts=self.settings.retry_count,
                    delay=self.settings.retry_delay,
                    on_retry=on_retry,
                    sleep=self._sleep,
                ),
                timeout=self.settings.context_timeout,
            )
        except TimeoutError as e:
            raise VerificationFailedError(
                f"Verification timed out after {self.settings.context_timeout}s",
                cause=e,
            ) from e
        except VerificationFailedError:
            raise
        except JWKSError as e:
            raise VerificationFailedError(str(e), cause=e) from e
        except Exception as e:
            raise VerificationFailedError(
                f"Unexpected error while verifying served JWKS: {e}", cause=e
            ) from e

        logger.info(f"Verified JWKS served for {namespace}/{name}", kid=kid)
        return VerificationResult.VERIFIED
