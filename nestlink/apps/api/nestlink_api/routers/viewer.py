"""GET /api/viewer: the signed-in user and their single role record."""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from nestlink_api.auth.principal import viewer_payload
from nestlink_api.auth.viewer import extract_access_token
from nestlink_api.dependencies import get_viewer_resolver
from nestlink_api.errors import AuthorizationError, NestLinkError

router = APIRouter(prefix="/api", tags=["viewer"])
logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}


def _respond(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=NO_STORE)


@router.get("/viewer")
async def get_viewer(request: Request) -> JSONResponse:
    """Resolve the caller to exactly one of admin, client, clientMember or tenant.

    Returns:
        200 when a role is recognised, 401 otherwise; never cached
    """
    token = extract_access_token(request)
    if not token:
        return _respond(status.HTTP_401_UNAUTHORIZED, viewer_payload(None, None, "Not authenticated"))

    try:
        resolver = get_viewer_resolver(request)
        principal, user_data = await resolver.resolve(token)
    except AuthorizationError as e:
        return _respond(status.HTTP_401_UNAUTHORIZED, viewer_payload(None, None, e.message))
    except NestLinkError as e:
        logger.error("Viewer lookup failed", extra={"event": "viewer.failed", "code": e.code, "error": e.message})
        return _respond(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": "Failed to load viewer"})

    if principal is None:
        return _respond(status.HTTP_401_UNAUTHORIZED, viewer_payload(None, user_data, "No role assigned to this user"))
    return _respond(status.HTTP_200_OK, viewer_payload(principal, user_data))
