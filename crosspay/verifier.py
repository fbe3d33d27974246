"""
Proof verification client — validates source-chain settlement proofs.

The source leg is never checked on-chain by crosspay. Instead the
payer's x402 settlement proof is handed to an external facilitator,
which answers with a validity flag.

Outcomes are three-valued on purpose:
    VALID        the facilitator accepted the proof
    INVALID      the facilitator explicitly rejected it (client error,
                 resubmitting the same proof will not help)
    UNAVAILABLE  no usable answer: transport error, timeout, non-2xx,
                 or an unparseable body (transient, safe to retry)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

import httpx

from crosspay.config import SettlementConfig

logger = logging.getLogger(__name__)


class VerificationStatus(StrEnum):
    VALID = "VALID"
    INVALID = "INVALID"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class VerificationResult:
    """Facilitator verdict on one proof.

    Attributes:
        status: VALID, INVALID, or UNAVAILABLE.
        detail: Reason text for INVALID/UNAVAILABLE, for diagnostics.
    """

    status: VerificationStatus
    detail: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == VerificationStatus.VALID


@runtime_checkable
class ProofVerifier(Protocol):
    """Interface for source-proof verification."""

    async def verify(self, proof: str) -> VerificationResult:
        """Verify an opaque settlement proof. Never raises for I/O failures."""
        ...


class FacilitatorVerifier:
    """ProofVerifier backed by an x402 facilitator's ``/verify`` endpoint.

    Sends ``POST {base_url}/verify`` with ``{"proof": ...}`` and expects
    ``{"valid": true|false, "message"?: "..."}``.

    Args:
        base_url: Facilitator base URL.
        timeout_s: Request timeout in seconds.
        headers: Additional headers to include in requests.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._headers = headers or {}

    @classmethod
    def from_config(cls, config: SettlementConfig) -> FacilitatorVerifier:
        return cls(base_url=config.facilitator_url, timeout_s=config.verify_timeout_s)

    @property
    def verify_url(self) -> str:
        return f"{self._base_url}/verify"

    async def verify(self, proof: str) -> VerificationResult:
        url = self.verify_url
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(
                    url,
                    json={"proof": proof},
                    headers={
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                        **self._headers,
                    },
                )
        except httpx.TimeoutException:
            logger.warning("facilitator timed out after %ss", self._timeout_s)
            return VerificationResult(
                VerificationStatus.UNAVAILABLE,
                f"facilitator timed out after {self._timeout_s}s",
            )
        except httpx.HTTPError as exc:
            logger.warning("facilitator request failed: %s", exc)
            return VerificationResult(
                VerificationStatus.UNAVAILABLE, f"facilitator request failed: {exc}"
            )

        if response.status_code >= 400:
            logger.warning(
                "facilitator returned HTTP %d %s",
                response.status_code, response.reason_phrase,
            )
            return VerificationResult(
                VerificationStatus.UNAVAILABLE,
                f"HTTP {response.status_code}: {response.reason_phrase}",
            )

        try:
            body = response.json()
        except json.JSONDecodeError:
            return VerificationResult(
                VerificationStatus.UNAVAILABLE, "facilitator response was not valid JSON"
            )
        if not isinstance(body, dict) or not isinstance(body.get("valid"), bool):
            return VerificationResult(
                VerificationStatus.UNAVAILABLE,
                "facilitator response has no boolean 'valid' field",
            )

        if body["valid"]:
            logger.info("source proof verified by facilitator")
            return VerificationResult(VerificationStatus.VALID)

        message = body.get("message") or body.get("reason") or "proof rejected"
        logger.info("source proof rejected by facilitator: %s", message)
        return VerificationResult(VerificationStatus.INVALID, str(message))
