"""reCAPTCHA Enterprise assessment client.

REST reference: projects.assessments.create
https://cloud.google.com/recaptcha/docs/reference/rest/v1/projects.assessments/create
"""

import logging
from typing import Optional

import httpx

from nestlink_api.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

RECAPTCHA_BASE_URL = "https://recaptchaenterprise.googleapis.com"


class RecaptchaVerifier:
    """Score a client token with reCAPTCHA Enterprise.

    Environment Variables (see ``config.env.get_recaptcha_settings``):
    - RECAPTCHA_PROJECT_ID / GCLOUD_PROJECT
    - RECAPTCHA_SITE_KEY
    - RECAPTCHA_API_KEY
    - RECAPTCHA_ACTION (default access_request)
    - RECAPTCHA_MIN_SCORE (default 0.3)
    """

    def __init__(
        self,
        *,
        project_id: str,
        site_key: str,
        api_key: str,
        action: str = "access_request",
        min_score: float = 0.3,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.project_id = project_id
        self.site_key = site_key
        self.api_key = api_key
        self.action = action
        self.min_score = min_score
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.site_key and self.api_key)

    async def create_assessment(self, token: str) -> dict:
        url = f"{RECAPTCHA_BASE_URL}/v1/projects/{self.project_id}/assessments"
        body = {
            "event": {
                "token": token,
                "siteKey": self.site_key,
                "expectedAction": self.action,
            }
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.api_key}, json=body)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            raise UpstreamError("Captcha verification timed out", provider="recaptcha")
        except httpx.HTTPError as e:
            logger.error(
                "reCAPTCHA assessment failed",
                extra={"event": "recaptcha.assessment.failed", "error": str(e)},
            )
            raise UpstreamError("Captcha verification failed", provider="recaptcha")

    async def verify(self, token: str) -> float:
        """Return the risk score, or raise if the token is not acceptable.

        Raises:
            ValidationError: misconfigured, invalid token, action mismatch, low score
            UpstreamError: the assessment call itself failed
        """
        if not self.configured:
            logger.error(
                "reCAPTCHA misconfigured: missing project, site key or api key",
                extra={"event": "recaptcha.misconfigured"},
            )
            raise ValidationError("Captcha not configured", code="captcha_not_configured")
        if not token:
            raise ValidationError("Captcha token missing", code="captcha_missing")

        assessment = await self.create_assessment(token)

        props = assessment.get("tokenProperties") or {}
        if not props.get("valid"):
            reason = props.get("invalidReason") or "unknown reason"
            logger.info("reCAPTCHA token invalid", extra={"event": "recaptcha.invalid", "reason": reason})
            raise ValidationError(f"Captcha invalid: {reason}", code="captcha_invalid")

        action = props.get("action") or ""
        if action and action != self.action:
            logger.info(
                "reCAPTCHA action mismatch",
                extra={"event": "recaptcha.action_mismatch", "expected": self.action, "got": action},
            )
            raise ValidationError("Captcha action mismatch", code="captcha_invalid")

        score = float((assessment.get("riskAnalysis") or {}).get("score") or 0.0)
        if score < self.min_score:
            logger.info("reCAPTCHA score too low", extra={"event": "recaptcha.low_score", "score": score})
            raise ValidationError("Captcha score too low", code="captcha_low_score")

        logger.info("reCAPTCHA passed", extra={"event": "recaptcha.passed", "score": score})
        return score
