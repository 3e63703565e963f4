from __future__ import annotations

import logging
import time
from typing import List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from stakeapi.config import Settings
from stakeapi.core.exceptions import VerificationUnavailable
from stakeapi.schemas.evidence import VerificationAnalysis, VerificationContext

logger = logging.getLogger(__name__)


class VerificationClient:
    """HTTP client for the screenshot verification service.

    Every failure mode (timeout, transport error, non-2xx, unparseable body)
    surfaces as ``VerificationUnavailable``. The client never invents a
    low-confidence answer on its own.
    """

    _ANALYZE_PATH = "/v1/analyze"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = settings.VERIFICATION_SERVICE_URL.rstrip("/")
        self._timeout = httpx.Timeout(settings.VERIFICATION_TIMEOUT_SECONDS, connect=5.0)
        self._api_key = settings.VERIFICATION_API_KEY
        self._transport = transport

    async def analyze(
        self, evidence_urls: List[str], context: VerificationContext
    ) -> VerificationAnalysis:
        payload = {
            "images": [str(url) for url in evidence_urls],
            "context": context.model_dump(),
        }
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        started_at = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._ANALYZE_PATH, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning(f"Verification timeout for challenge {context.challenge_id}")
            raise VerificationUnavailable(
                "Verification service timed out. Please retry.",
                details={"challenge_id": context.challenge_id},
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(f"Verification request error for challenge {context.challenge_id}: {exc}")
            raise VerificationUnavailable(
                "Verification service is unreachable. Please retry.",
                details={"challenge_id": context.challenge_id},
            ) from exc

        elapsed_ms = int((time.perf_counter() - started_at) * 1000)
        if response.status_code != 200:
            logger.error(
                f"Verification service returned {response.status_code} for challenge "
                f"{context.challenge_id} in {elapsed_ms}ms"
            )
            raise VerificationUnavailable(
                "Verification service returned an error. Please retry.",
                details={"challenge_id": context.challenge_id, "upstream_status": response.status_code},
            )

        try:
            analysis = VerificationAnalysis.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            logger.error(f"Unparseable verification response for challenge {context.challenge_id}: {exc}")
            raise VerificationUnavailable(
                "Verification service returned an invalid response. Please retry.",
                details={"challenge_id": context.challenge_id},
            ) from exc

        logger.info(
            f"Verification for challenge {context.challenge_id} by {context.submitted_by}: "
            f"winner={analysis.claimed_winner} confidence={analysis.confidence} "
            f"score={analysis.raw_score_text} ({elapsed_ms}ms)"
        )
        return analysis
