"""Schemas for subdomain registration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SubdomainRequest(BaseModel):
    subdomain: str = Field(..., description="Lower-case DNS label, 3-63 characters")


class RegistrationResponse(BaseModel):
    """A pending registration with its verification instructions."""

    model_config = ConfigDict(populate_by_name=True)

    subdomain: str
    status: str
    verification_token: str = Field(..., serialization_alias="verificationToken")
    dns_verification: str = Field(..., serialization_alias="dnsVerification")
    verify_url: str = Field(..., serialization_alias="verifyUrl")
