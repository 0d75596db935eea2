"""
Pydantic schemas for OTP endpoints.

Field names match the JSON the site's frontend sends (camelCase).
Format checks beyond presence are done in the endpoints so failures
produce the same short messages the frontend already shows.
"""

from typing import Optional
from pydantic import BaseModel


class OtpRequestBody(BaseModel):
    """Request a code for an existing subscriber"""
    email: Optional[str] = None


class OtpSignupBody(BaseModel):
    """Request a code for a new subscriber"""
    firstName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tier: Optional[str] = None


class OtpVerifyBody(BaseModel):
    """Token from a previous request plus the code from the email"""
    token: Optional[str] = None
    code: Optional[str] = None


class OtpTokenResponse(BaseModel):
    """Opaque token; the code itself is only ever sent by email"""
    token: str


class OtpVerifiedResponse(BaseModel):
    firstName: str
