from __future__ import annotations

from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Header

from virion.models.schemas import DashboardSchema
from virion.services.dashboard import DashboardLoader, fetch_role_data
from virion.services.database import get_session_factory
from virion.services.errors import ValidationError

router = APIRouter(tags=["Dashboard"])

_loader: Optional[DashboardLoader] = None


def get_dashboard_loader() -> DashboardLoader:
    global _loader
    if _loader is None:
        _loader = DashboardLoader(partial(fetch_role_data, get_session_factory()))
    return _loader


@router.get(
    "/dashboard",
    response_model=DashboardSchema,
    response_model_by_alias=True,
    summary="Dashboard widgets for the calling user's role",
)
async def dashboard(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    loader: DashboardLoader = Depends(get_dashboard_loader),
):
    if not x_user_id or not x_user_role:
        raise ValidationError("X-User-Id and X-User-Role headers are required")
    data = await loader.load(x_user_id, x_user_role)
    return DashboardSchema.model_validate(data)
