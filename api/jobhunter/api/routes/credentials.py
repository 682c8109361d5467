import logging

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.requests import Request

from jobhunter.core.errors import AuthExchangeError
from jobhunter.core.security import get_user_principal
from jobhunter.core.urls import append_query
from jobhunter.schemas.common import SuccessOut
from jobhunter.schemas.credentials import CredentialStatusOut
from jobhunter.services.credentials import get_credential_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/authorize")
async def authorize(
    request: Request,
    return_url: str | None = Query(default=None, alias="returnUrl"),
    principal=Depends(get_user_principal),
    service=Depends(get_credential_service),
) -> Response:
    start = await service.authorize(principal.owner_id, return_url)
    # XHR callers cannot follow a cross-origin redirect with their bearer token
    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse({"authUrl": start.url})
    return RedirectResponse(start.url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/callback")
async def callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    service=Depends(get_credential_service),
) -> RedirectResponse:
    if error:
        logger.info("credential consent declined reason=%s", error)
        target = append_query(service.recover_return_url(state), {"connected": "error", "reason": error})
        return RedirectResponse(target, status_code=status.HTTP_302_FOUND)

    try:
        _, return_url = await service.callback(code=code, state=state)
    except AuthExchangeError as exc:
        logger.warning("credential callback rejected: %s", exc)
        target = append_query(service.recover_return_url(state), {"connected": "error", "reason": str(exc)})
        return RedirectResponse(target, status_code=status.HTTP_302_FOUND)

    return RedirectResponse(append_query(return_url, {"connected": "success"}), status_code=status.HTTP_302_FOUND)


@router.get("/status", response_model=CredentialStatusOut)
async def credential_status(
    principal=Depends(get_user_principal),
    service=Depends(get_credential_service),
) -> CredentialStatusOut:
    result = await service.status(principal.owner_id)
    return CredentialStatusOut(
        is_connected=result.is_connected,
        needs_refresh=result.needs_refresh,
        expires_at=result.expires_at,
    )


@router.post("/unlink", response_model=SuccessOut)
async def unlink(
    principal=Depends(get_user_principal),
    service=Depends(get_credential_service),
) -> SuccessOut:
    await service.unlink(principal.owner_id)
    return SuccessOut()
