from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from cookieshop.db import get_session
from cookieshop.schemas.order import OrderResponse
from cookieshop.services.admin_reports import AdminReportService

router = APIRouter()


@router.get("", response_model=List[OrderResponse])
def list_orders(
    session: Session = Depends(get_session),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    return AdminReportService(session).list_orders(status=status, limit=limit, offset=offset)
