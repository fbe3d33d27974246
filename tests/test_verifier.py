"""
Tests for FacilitatorVerifier — HTTP mocked with pytest-httpx.

Test plan:
- Request: POST {base_url}/verify with {"proof": ...}, JSON headers,
  custom headers merged, trailing slash on base_url tolerated
- Verdicts: valid true → VALID, valid false → INVALID with message or
  reason, default reason when none given
- Unavailable: timeout, connection error, HTTP 4xx/5xx, non-JSON body,
  missing or non-boolean "valid"
- Config: from_config uses facilitator_url and verify timeout
"""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from crosspay.config import SettlementConfig
from crosspay.verifier import (
    FacilitatorVerifier,
    ProofVerifier,
    VerificationResult,
    VerificationStatus,
)

BASE_URL = "https://facilitator.test"
VERIFY_URL = f"{BASE_URL}/verify"


def _verifier(**kwargs: object) -> FacilitatorVerifier:
    return FacilitatorVerifier(base_url=BASE_URL, timeout_s=5.0, **kwargs)  # type: ignore[arg-type]


class TestRequest:
    def test_implements_protocol(self) -> None:
        assert isinstance(_verifier(), ProofVerifier)

    def test_verify_url_strips_slash(self) -> None:
        verifier = FacilitatorVerifier(base_url=BASE_URL + "/")
        assert verifier.verify_url == VERIFY_URL

    @pytest.mark.asyncio
    async def test_posts_proof(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", json={"valid": True})
        await _verifier().verify("proof-abc")
        request = httpx_mock.get_request()
        assert request is not None
        assert json.loads(request.content) == {"proof": "proof-abc"}
        assert request.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_custom_headers(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", json={"valid": True})
        await _verifier(headers={"X-Api-Key": "k"}).verify("p")
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["x-api-key"] == "k"


class TestVerdicts:
    @pytest.mark.asyncio
    async def test_valid(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", json={"valid": True})
        result = await _verifier().verify("p")
        assert result == VerificationResult(VerificationStatus.VALID)
        assert result.is_valid

    @pytest.mark.asyncio
    async def test_invalid_with_message(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=VERIFY_URL, method="POST", json={"valid": False, "message": "bad sig"}
        )
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.INVALID
        assert result.detail == "bad sig"
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_invalid_with_reason(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=VERIFY_URL, method="POST", json={"valid": False, "reason": "expired"}
        )
        result = await _verifier().verify("p")
        assert result.detail == "expired"

    @pytest.mark.asyncio
    async def test_invalid_default_detail(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", json={"valid": False})
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.INVALID
        assert result.detail == "proof rejected"


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=VERIFY_URL)
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.UNAVAILABLE
        assert "timed out" in (result.detail or "")

    @pytest.mark.asyncio
    async def test_connection_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=VERIFY_URL)
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.UNAVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 404, 500, 503])
    async def test_http_error(self, httpx_mock: HTTPXMock, status_code: int) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", status_code=status_code)
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.UNAVAILABLE
        assert str(status_code) in (result.detail or "")

    @pytest.mark.asyncio
    async def test_non_json(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", text="<html>")
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.UNAVAILABLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"valid": "yes"}, {"ok": True}, [True]])
    async def test_no_boolean_valid(self, httpx_mock: HTTPXMock, body: object) -> None:
        httpx_mock.add_response(url=VERIFY_URL, method="POST", json=body)
        result = await _verifier().verify("p")
        assert result.status == VerificationStatus.UNAVAILABLE


class TestFromConfig:
    def test_uses_config(self) -> None:
        config = SettlementConfig(facilitator_url="https://f.example/", verify_timeout_s=3)
        verifier = FacilitatorVerifier.from_config(config)
        assert verifier.verify_url == "https://f.example/verify"
