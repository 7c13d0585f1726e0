"""管理 API 路由

管理端（不在本服务内）更新费率后调用 invalidate，下一次计费前重新加载费率表。
"""
from fastapi import APIRouter, Depends

from config.logging import get_logger
from database.models import User
from services.pricing import PricingCatalog
from api.routes.dependencies import get_current_user, get_pricing_catalog


logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.post("/pricing/invalidate")
async def invalidate_pricing(
    user: User = Depends(get_current_user),
    catalog: PricingCatalog = Depends(get_pricing_catalog),
):
    """使费率快照失效"""
    catalog.invalidate()
    logger.info(f"[ADMIN] Pricing invalidated by user {user.id}")
    return {"status": "ok", "models": len(catalog.models())}
