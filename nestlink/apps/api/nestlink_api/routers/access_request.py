"""Public access-request endpoints.

Error taxonomy:
  POST /request   every failure -> 400 {"success": false, "error"}
  GET  /approve   verification / not found -> 400 {"success": false, "error", "code"}
                  provisioning or provider failure -> 502
                  misconfiguration -> 500
  GET  /captcha   no secret -> 500 {"error"}
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from nestlink_api.access_requests.captcha import issue_captcha
from nestlink_api.access_requests.models import AccessRequestSubmission, ResolutionOutcome
from nestlink_api.access_requests.service import AccessRequestService
from nestlink_api.dependencies import get_access_request_service, get_captcha_secret
from nestlink_api.errors import ConfigurationError, NestLinkError, UpstreamError

router = APIRouter(prefix="/api/access-request", tags=["access-request"])
logger = logging.getLogger(__name__)

APPROVAL_RESULT_PATH = "/auth/access-request/approval-result"


def _failure(status_code: int, error: str, code: Optional[str] = None) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "error": error}
    if code:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


@router.post("/request")
async def submit_access_request(request: Request) -> JSONResponse:
    """Store an access request and email approve/reject links."""
    try:
        body = await request.json()
    except ValueError:
        return _failure(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
    if not isinstance(body, dict):
        return _failure(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    submission = AccessRequestSubmission.model_validate(body)
    missing = submission.missing_fields()
    if missing:
        return _failure(status.HTTP_400_BAD_REQUEST, f"Missing required fields: {', '.join(missing)}")

    try:
        service = get_access_request_service(request)
        await service.submit(submission)
    except NestLinkError as e:
        logger.warning(
            "Access request submission failed",
            extra={"event": "access_request.submit_failed", "code": e.code, "error": e.message},
        )
        return _failure(status.HTTP_400_BAD_REQUEST, e.message)

    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True})


@router.get("/request", include_in_schema=False)
async def access_request_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"error": "Method Not Allowed"},
        headers={"Allow": "POST"},
    )


def _result_redirect(base_url: str, params: dict[str, Optional[str]]) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v})
    return RedirectResponse(
        url=f"{base_url.rstrip('/')}{APPROVAL_RESULT_PATH}?{query}",
        status_code=status.HTTP_303_SEE_OTHER,
    )


def _outcome_status(outcome: ResolutionOutcome) -> str:
    if outcome.already_resolved:
        return "already_resolved"
    return "rejected" if outcome.rejected else "approved"


@router.get("/approve")
async def resolve_access_request(
    payload: str = "",
    sig: str = "",
    action: Optional[str] = None,
    format: str = "json",
    service: AccessRequestService = Depends(get_access_request_service),
):
    """Apply a signed approve/reject link from the administrator email.

    ``format=redirect`` answers with a 303 to the result page; any other
    value answers with JSON.
    """
    redirect = format == "redirect"
    try:
        outcome = await service.resolve(payload, sig, action)
    except NestLinkError as e:
        if isinstance(e, UpstreamError):
            status_code = status.HTTP_502_BAD_GATEWAY
        elif isinstance(e, ConfigurationError):
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        else:
            status_code = status.HTTP_400_BAD_REQUEST
        # Provisioning failures all surface as upstream_error; timeouts keep their code in logs
        code = "upstream_error" if isinstance(e, UpstreamError) else e.code
        logger.warning(
            "Access link rejected",
            extra={"event": "access_request.resolve_failed", "code": e.code, "status_code": status_code},
        )
        if redirect:
            return _result_redirect(
                service.settings.base_url,
                {"status": "error", "code": code, "message": e.message},
            )
        return _failure(status_code, e.message, code)

    if redirect:
        return _result_redirect(
            service.settings.base_url,
            {"status": _outcome_status(outcome), "email": outcome.email},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=outcome.to_response())


@router.get("/captcha")
async def get_captcha(secret: Optional[str] = Depends(get_captcha_secret)) -> JSONResponse:
    """Issue a fresh image captcha challenge."""
    if not secret:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Captcha not configured"},
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=issue_captcha(secret),
        headers={"Cache-Control": "no-store"},
    )
