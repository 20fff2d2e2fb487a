from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from virion.models.schemas import (
    ConversionDataSchema,
    ConversionRequest,
    ConversionResponse,
    SignupRequest,
    SignupResponse,
)
from virion.services.attribution import (
    RequestContext,
    record_conversion,
    record_signup,
    resolve_and_record_click,
)
from virion.services.database import get_db
from virion.services.errors import ExpiredError, NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referral", tags=["Referral"])


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.headers.get("x-real-ip") or "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        user_agent=request.headers.get("user-agent", ""),
        referrer=request.headers.get("referer", ""),
        ip_address=client_ip(request),
        url=str(request.url),
    )


@router.get(
    "/{code}",
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    summary="Record a click and redirect to the link's destination",
)
async def referral_redirect(code: str, request: Request, db: AsyncSession = Depends(get_db)):
    home = str(request.base_url)
    try:
        destination = await resolve_and_record_click(db, code, request_context(request))
    except (NotFoundError, ExpiredError) as exc:
        logger.warning("Referral %s not redirectable: %s", code, exc.message)
        return RedirectResponse(home, status_code=status.HTTP_302_FOUND)
    except Exception:
        # Visitors always land somewhere; the failure only goes to the logs.
        logger.exception("Referral redirect failed for %s", code)
        return RedirectResponse(home, status_code=status.HTTP_302_FOUND)
    return RedirectResponse(destination, status_code=status.HTTP_302_FOUND)


@router.post(
    "/conversion",
    response_model=ConversionResponse,
    summary="Attribute a conversion to a referral code",
)
async def referral_conversion(
    payload: ConversionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    result = await record_conversion(
        db,
        payload.referral_code,
        conversion_value=payload.conversion_value,
        metadata=payload.metadata,
        context=request_context(request),
    )
    return ConversionResponse(
        success=True,
        message="Conversion tracked successfully",
        data=ConversionDataSchema(
            link_id=result.link_id,
            conversions=result.conversions,
            earnings=float(result.earnings),
            conversion_value=float(result.conversion_value),
        ),
    )


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a referred signup",
)
async def referral_signup(
    payload: SignupRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    referral = await record_signup(
        db,
        payload.referral_code,
        payload.name,
        payload.email,
        discord_id=payload.discord_id,
        age=payload.age,
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        ip_address=payload.ip_address or client_ip(request),
        referrer=payload.referrer or request.headers.get("referer"),
    )
    return SignupResponse(
        success=True,
        referral_id=referral.id,
        message="Referral signup recorded",
    )
