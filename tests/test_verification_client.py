import json

import httpx
import pytest

from stakeapi.core.exceptions import VerificationUnavailable
from stakeapi.schemas.evidence import VerificationContext
from stakeapi.services.verification_service import VerificationClient

CONTEXT = VerificationContext(
    challenge_id="c-1",
    game="FIFA 25",
    platform="psn",
    submitted_by="alice",
    participants=["AliceGT", "BobTheBuilder", "alice", "bob"],
)


def client_with(settings, handler):
    settings.VERIFICATION_SERVICE_URL = "https://verify.test"
    settings.VERIFICATION_API_KEY = "secret"
    return VerificationClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestAnalyze:
    async def test_successful_analysis(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "claimed_winner": "AliceGT",
                    "confidence": 0.92,
                    "raw_score_text": "3-1",
                    "detected_identities": ["AliceGT", "BobTheBuilder"],
                    "reasoning": "Scoreboard shows AliceGT 3 BobTheBuilder 1",
                },
            )

        analysis = await client_with(settings, handler).analyze(["https://cdn.example.com/1.png"], CONTEXT)

        assert analysis.claimed_winner == "AliceGT"
        assert analysis.confidence == pytest.approx(0.92)
        assert seen["url"] == "https://verify.test/v1/analyze"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["images"] == ["https://cdn.example.com/1.png"]
        assert seen["body"]["context"]["challenge_id"] == "c-1"

    async def test_upstream_error_is_retryable(self, settings):
        client = client_with(settings, lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(VerificationUnavailable) as exc_info:
            await client.analyze(["https://cdn.example.com/1.png"], CONTEXT)

        assert exc_info.value.details["upstream_status"] == 500
        assert exc_info.value.details["retryable"] is True

    async def test_timeout_is_unavailable_not_unknown(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(VerificationUnavailable) as exc_info:
            await client_with(settings, handler).analyze(["https://cdn.example.com/1.png"], CONTEXT)

        assert "timed out" in exc_info.value.message

    async def test_unparseable_body(self, settings):
        client = client_with(settings, lambda request: httpx.Response(200, text="<html>nope</html>"))

        with pytest.raises(VerificationUnavailable):
            await client.analyze(["https://cdn.example.com/1.png"], CONTEXT)
