from fastapi import APIRouter, Depends, HTTPException, status

from src.auth import AuthContext, require_permission
from src.auth.permissions import ORDERS_READ
from src.db import supabase
from src.domain.platforms import get_platform
from src.models.orders import OrderResponse


router = APIRouter(prefix="/api/orders", tags=["orders"])
_ORDER_FIELDS = (
    "id, external_id, platform, tracking_code, customer_name, customer_email, customer_phone, "
    "carrier, status, destination, order_value, created_at, updated_at"
)


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    platform: str | None = None,
    order_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    auth: AuthContext = Depends(require_permission(ORDERS_READ)),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    query = supabase.table("orders").select(_ORDER_FIELDS).eq("user_id", auth.user_id)
    if platform:
        try:
            query = query.eq("platform", get_platform(platform).platform.value)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if order_status:
        query = query.eq("status", order_status)
    rows = query.execute().data or []
    rows = sorted(rows, key=lambda row: row.get("updated_at") or row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    auth: AuthContext = Depends(require_permission(ORDERS_READ)),
):
    result = (
        supabase.table("orders")
        .select(_ORDER_FIELDS)
        .eq("id", order_id)
        .eq("user_id", auth.user_id)
        .execute()
    )
    if not result.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return result.data[0]
