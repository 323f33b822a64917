"""
Profile API Routes

Endpoints for viewing optimization profiles and absolute rails.
"""

from fastapi import APIRouter

from projection_engine.api.models.responses import ProfileInfo, ProfilesListResponse
from projection_engine.safety import ABSOLUTE_RAILS, PROFILE_BOUNDS

router = APIRouter()


@router.get("/profiles", response_model=ProfilesListResponse)
async def list_profiles() -> ProfilesListResponse:
    """List optimization profiles with their default caps and solve bounds."""
    profiles = [
        ProfileInfo(id=profile.value, **bounds.model_dump())
        for profile, bounds in PROFILE_BOUNDS.items()
    ]
    return ProfilesListResponse(profiles=profiles, rails=ABSOLUTE_RAILS, count=len(profiles))
