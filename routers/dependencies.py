"""
Shared router dependencies: the service instance and admin authentication
"""
from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import List, Optional
import os

from services.recommendation_service import RecommendationService, recommendation_service
from settings import sanitize_ids

# Security for admin endpoints
security = HTTPBearer()


def get_recommendation_service() -> RecommendationService:
    return recommendation_service


class AdminAuth:
    """Simple admin authentication"""

    @staticmethod
    def verify_admin_key(credentials: HTTPAuthorizationCredentials = Security(security)):
        """Verify admin API key"""
        expected_key = os.getenv("ADMIN_API_KEY", "admin-dev-key-change-in-production")

        if not credentials or credentials.credentials != expected_key:
            raise HTTPException(
                status_code=401,
                detail="Invalid admin API key",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return credentials.credentials


def parse_group_ids(raw: Optional[str]) -> List[int]:
    """'3,4' -> [3, 4]; unusable entries are ignored"""
    if not raw:
        return []
    return sanitize_ids(part for part in raw.split(","))
