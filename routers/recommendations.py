"""
Recommendations Router
Product page and cart blocks ("customers who bought this also bought")
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from routers.dependencies import get_recommendation_service, parse_group_ids
from services.errors import CoPurchaseError
from services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)
router = APIRouter()


class CartRecommendationRequest(BaseModel):
    shopId: Optional[int] = None
    groups: List[int] = Field(default_factory=list)
    products: List[Dict[str, Any]] = Field(default_factory=list)
    limit: Optional[int] = None


class RecommendRequest(BaseModel):
    productIds: List[int] = Field(default_factory=list)
    shopId: Optional[int] = None
    groups: List[int] = Field(default_factory=list)
    limit: Optional[int] = None


def _degraded(error: CoPurchaseError) -> JSONResponse:
    """Failures stay distinguishable from an empty block"""
    return JSONResponse(
        status_code=error.status_code,
        content={"products": [], "error": error.message},
    )


@router.get("/recommendations/products/{product_id}")
async def product_recommendations(
    product_id: int,
    shopId: Optional[int] = None,
    groups: Optional[str] = None,
    limit: Optional[int] = None,
    enrich: bool = True,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Recommendations for a product page"""
    group_ids = parse_group_ids(groups)
    try:
        if enrich:
            products = await service.for_product(product_id, shopId, group_ids, limit)
            return {"products": [product.to_dict() for product in products]}
        scored = await service.recommend([product_id], shopId, group_ids, limit)
        return {"products": [{"product_id": s.product_id, "score": s.score} for s in scored]}
    except CoPurchaseError as e:
        logger.error(f"Product recommendations failed for {product_id}: {e.message}")
        return _degraded(e)
    except Exception as e:
        logger.exception(f"Product recommendations error for {product_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get recommendations")


@router.post("/recommendations/cart")
async def cart_recommendations(
    request: CartRecommendationRequest,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Recommendations for the products in a cart"""
    try:
        products = await service.for_cart(request.products, request.shopId, request.groups, request.limit)
        return {"products": [product.to_dict() for product in products]}
    except CoPurchaseError as e:
        logger.error(f"Cart recommendations failed: {e.message}")
        return _degraded(e)
    except Exception as e:
        logger.exception(f"Cart recommendations error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get recommendations")


@router.post("/recommendations")
async def scored_recommendations(
    request: RecommendRequest,
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Ranked product ids with their co-purchase scores"""
    try:
        scored = await service.recommend(request.productIds, request.shopId, request.groups, request.limit)
        return {"products": [{"product_id": s.product_id, "score": s.score} for s in scored]}
    except CoPurchaseError as e:
        logger.error(f"Scored recommendations failed: {e.message}")
        return _degraded(e)
    except Exception as e:
        logger.exception(f"Scored recommendations error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get recommendations")
