"""
Co-purchase Recommendation Schemas

Type definitions shared by the aggregator, the query path and the HTTP layer.

Structure:
- ScoredProduct: one ranked candidate (product id + co-purchase score)
- RecommendedProduct: a scored candidate enriched with display data
- RefreshOutcome: result of one aggregation pass
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, TypedDict


# =============================================================================
# Ranked candidates
# =============================================================================

@dataclass(frozen=True)
class ScoredProduct:
    """A candidate product and its summed co-purchase count against the seed set."""
    product_id: int
    score: int


# =============================================================================
# Enriched products (storefront payload)
# =============================================================================

class RecommendedProductDict(TypedDict, total=False):
    """Serialized recommendation, as returned by the recommendation endpoints."""
    product_id: int
    score: int
    name: str
    description: Optional[str]    # Short description
    link_rewrite: str
    show_price: bool
    category: Optional[str]       # Default category link rewrite
    ean13: Optional[str]
    id_image: str                 # "<product_id>-<image_id>"
    image: str                    # Home-size image URL
    link: str                     # Product page URL
    displayed_price: str          # Only present when price display is enabled
    allow_oosp: bool              # Orderable while out of stock
    quantity: int


@dataclass
class RecommendedProduct:
    product_id: int
    score: int
    name: str
    description: Optional[str]
    link_rewrite: str
    show_price: bool
    category: Optional[str]
    ean13: Optional[str]
    id_image: str
    image: str
    link: str
    allow_oosp: bool
    quantity: int
    displayed_price: Optional[Decimal] = None

    def to_dict(self) -> RecommendedProductDict:
        payload: Dict[str, Any] = asdict(self)
        price = payload.pop("displayed_price")
        if price is not None:
            payload["displayed_price"] = f"{price:.2f}"
        return payload  # type: ignore[return-value]


# =============================================================================
# Aggregation passes
# =============================================================================

RefreshStatus = Literal["completed", "up_to_date", "locked_out"]

REFRESH_COMPLETED: RefreshStatus = "completed"
REFRESH_UP_TO_DATE: RefreshStatus = "up_to_date"
REFRESH_LOCKED_OUT: RefreshStatus = "locked_out"


@dataclass
class RefreshOutcome:
    """
    Result of one aggregation pass.

    ``locked_out`` means another holder had the refresh lock; nothing was written.
    ``up_to_date`` means the lock was held but no unprocessed valid order existed.
    """
    status: RefreshStatus
    full: bool = False
    orders_processed: int = 0
    batches: int = 0
    pairs_merged: int = 0
    duration_ms: float = 0.0
    attempted_at: Optional[int] = None

    @property
    def ran(self) -> bool:
        return self.status != REFRESH_LOCKED_OUT

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["duration_ms"] = round(self.duration_ms, 2)
        return payload
