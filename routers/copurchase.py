"""
Co-purchase Index Router
Manual refresh, full rebuild, index status and metrics
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
import logging

from routers.dependencies import AdminAuth, get_recommendation_service
from services.errors import CoPurchaseError
from services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/copurchase", tags=["copurchase"])


@router.post("/refresh", dependencies=[Depends(AdminAuth.verify_admin_key)])
async def refresh_index(service: RecommendationService = Depends(get_recommendation_service)):
    """Fold any unprocessed orders now"""
    try:
        outcome = await service.refresh()
        return {"success": outcome.ran, "outcome": outcome.to_dict()}
    except CoPurchaseError as e:
        logger.error(f"Manual refresh failed: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message, "details": e.details})


@router.post("/rebuild", dependencies=[Depends(AdminAuth.verify_admin_key)])
async def rebuild_index(service: RecommendationService = Depends(get_recommendation_service)):
    """Clear the pair table and re-fold every valid order"""
    try:
        outcome = await service.trigger_full_rebuild()
        return {"success": outcome.ran, "outcome": outcome.to_dict()}
    except CoPurchaseError as e:
        logger.error(f"Full rebuild failed: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message, "details": e.details})


@router.get("/status")
async def index_status(service: RecommendationService = Depends(get_recommendation_service)):
    try:
        return await service.status()
    except Exception as e:
        logger.error(f"Index status error: {e}")
        raise HTTPException(status_code=500, detail="Failed to read co-purchase index status")


@router.get("/metrics")
async def index_metrics(service: RecommendationService = Depends(get_recommendation_service)):
    return service.get_metrics()
