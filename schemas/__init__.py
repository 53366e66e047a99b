"""
Co-purchase Schemas Package
Data structures shared by the index, the query path and the HTTP layer.
"""

from .recommendation_schemas import (
    # Ranked candidates
    ScoredProduct,

    # Storefront payload
    RecommendedProduct,
    RecommendedProductDict,

    # Aggregation passes
    RefreshOutcome,
    RefreshStatus,
    REFRESH_COMPLETED,
    REFRESH_UP_TO_DATE,
    REFRESH_LOCKED_OUT,
)
