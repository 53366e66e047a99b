"""
Settings Router
Merchant settings for the co-purchase block
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
import logging

from routers.dependencies import AdminAuth, get_recommendation_service
from services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/settings", tags=["settings"], dependencies=[Depends(AdminAuth.verify_admin_key)])


class SettingsUpdateRequest(BaseModel):
    display_price: Optional[bool] = None
    number_of_products: Optional[int] = None
    shop_id: Optional[int] = None


@router.get("")
async def get_settings(shop_id: Optional[int] = None, service: RecommendationService = Depends(get_recommendation_service)):
    try:
        return await service.get_settings(shop_id)
    except Exception as e:
        logger.error(f"Get settings error: {e}")
        raise HTTPException(status_code=500, detail="Failed to read settings")


@router.put("")
async def update_settings(
    request: SettingsUpdateRequest,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Save settings; a non-positive number of products is stored as the default"""
    try:
        settings = await service.update_settings(
            display_price=request.display_price,
            number_of_products=request.number_of_products,
            shop_id=request.shop_id,
        )
        return {"success": True, "settings": settings}
    except Exception as e:
        logger.error(f"Update settings error: {e}")
        raise HTTPException(status_code=500, detail="Failed to update settings")


@router.delete("")
async def clear_settings(service: RecommendationService = Depends(get_recommendation_service)):
    """Uninstall path: remove the block's settings"""
    try:
        removed = await service.clear_settings()
        return {"success": True, "removed": removed}
    except Exception as e:
        logger.error(f"Clear settings error: {e}")
        raise HTTPException(status_code=500, detail="Failed to clear settings")
