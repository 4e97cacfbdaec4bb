"""Subdomain registration app served on ``register.{base_domain}``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from exprsn_hub.api.dependencies import (
    HubDep,
    OptionalSessionUserDep,
    SessionDep,
    SessionUserDep,
    rate_limit,
)
from exprsn_hub.core.errors import ValidationFailure
from exprsn_hub.schemas.registration import RegistrationResponse, SubdomainRequest
from exprsn_hub.services.rate_limit import MODERATE_POLICY
from exprsn_hub.services.registration import (
    RESERVED_SUBDOMAINS,
    SUBDOMAIN_RE,
    request_subdomain,
    verify_subdomain,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["registration"],
    dependencies=[Depends(rate_limit(MODERATE_POLICY, "register"))],
)


@router.get("/")
def registration_info(hub: HubDep, user: OptionalSessionUserDep) -> dict[str, Any]:
    return {
        "service": "register",
        "baseDomain": hub.config.base_domain,
        "pattern": SUBDOMAIN_RE.pattern,
        "reserved": sorted(RESERVED_SUBDOMAINS),
        "user": user.username if user else None,
        "subdomain": user.subdomain if user else None,
        "loginUrl": f"{hub.config.issuer}/login",
    }


@router.post(
    "/register",
    response_model=RegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(
    payload: SubdomainRequest, hub: HubDep, db: SessionDep, user: SessionUserDep
) -> RegistrationResponse:
    """Claim a subdomain for the signed-in user.

    Raises:
        ValidationFailure: For malformed or reserved names.
        Conflict: If the name is taken or the user already has one.
    """
    registration = request_subdomain(
        db, user, payload.subdomain.strip().lower(), sites_dir=Path(hub.config.sites_dir)
    )
    token = registration.verification_token or ""
    return RegistrationResponse(
        subdomain=registration.subdomain,
        status=registration.status,
        verification_token=token,
        dns_verification=f"_exprsn-verify.{registration.subdomain}.{hub.config.base_domain}",
        verify_url=f"/verify?token={token}",
    )


@router.get("/verify")
async def verify(
    hub: HubDep, db: SessionDep, _user: SessionUserDep, token: str = ""
) -> RedirectResponse:
    """Consume a verification token, create the site directory and serve the site.

    Raises:
        ValidationFailure: If no token is given.
        NotFound: For unknown or already used tokens.
    """
    if not token:
        raise ValidationFailure("Verification token required", details={"field": "token"})
    registration = await run_in_threadpool(verify_subdomain, db, token)
    subdomain = registration.subdomain
    directory = Path(hub.config.sites_dir) / subdomain
    directory.mkdir(parents=True, exist_ok=True)
    await hub.sites.materialize(subdomain)
    logger.info("Subdomain %s verified and materialized", subdomain)
    return RedirectResponse(
        f"https://{subdomain}.{hub.config.base_domain}/", status_code=status.HTTP_302_FOUND
    )
