"""Profile endpoints of the administrative app (admin API JWT)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from exprsn_hub.api.dependencies import HubDep, JWTUserDep, SessionDep
from exprsn_hub.schemas.social import ProfileResponse, ProfileUpdate

router = APIRouter(prefix="/api/v1/profile", tags=["profile"])


@router.get("")
def read_profile(hub: HubDep, db: SessionDep, user: JWTUserDep) -> dict[str, Any]:
    """Return the caller's profile together with post and follow counts."""
    data = ProfileResponse.model_validate(user).model_dump(mode="json")
    data["stats"] = hub.social.stats(db, user)
    return data


@router.put("", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdate, hub: HubDep, db: SessionDep, user: JWTUserDep
) -> ProfileResponse:
    updated = hub.social.update_profile(db, user, payload.model_dump(exclude_unset=True))
    return ProfileResponse.model_validate(updated)
