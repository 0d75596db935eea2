"""
One-time passcode endpoints.

- POST /otp/request: Send a code to an existing subscriber
- POST /otp/signup: Send a code to a new subscriber (signup data rides in the token)
- POST /otp/verify: Check a code for an existing subscriber
- POST /otp/verify-signup: Check a code and add the new subscriber

No OTP state is kept server-side. The encrypted token returned by the
request/signup endpoints is the only record of the code, and it expires
two minutes after issue.
"""

import logging
from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.api_rate_limiter import enforce_rate_limit
from app.core.database import get_db
from app.core.otp_token import (
    OTP_EXPIRY_MS,
    OtpPayload,
    TokenService,
    Valid,
    generate_code,
    get_token_service,
    now_ms,
)
from app.models.subscriber import Subscriber
from app.schemas.otp import (
    OtpRequestBody,
    OtpSignupBody,
    OtpVerifyBody,
    OtpTokenResponse,
    OtpVerifiedResponse,
)
from app.services.email_service import EmailService, get_email_service

router = APIRouter(prefix="/otp", tags=["OTP"])
logger = logging.getLogger(__name__)

INVALID_CODE_MESSAGE = "Invalid or expired code. Please request a new one."

limit_otp_request = enforce_rate_limit("otpRequest")
limit_otp_verify = enforce_rate_limit("otpVerify", "Too many attempts. Please try again later.")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _require_email(email) -> str:
    cleaned = (email or "").strip()
    if not cleaned or "@" not in cleaned:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Valid email is required"
        )
    return cleaned


def _send_code(email_service: EmailService, to_email: str, code: str, first_name: str) -> None:
    sent = email_service.send_otp_email(
        to_email=to_email,
        code=code,
        first_name=first_name or None,
        expires_in_minutes=OTP_EXPIRY_MS // 60_000
    )
    if not sent:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send verification email"
        )


def _verify(body: OtpVerifyBody, token_service: TokenService) -> OtpPayload:
    """Check token and code; every failure looks the same to the client."""
    if not body.token or not body.code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Token and code are required"
        )

    result = token_service.verify_code(body.token, body.code.strip())
    if not isinstance(result, Valid):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_MESSAGE
        )
    return result.payload


@router.post("/request", response_model=OtpTokenResponse, dependencies=[Depends(limit_otp_request)])
def request_code(
    body: OtpRequestBody,
    db: Session = Depends(get_db),
    token_service: TokenService = Depends(get_token_service),
    email_service: EmailService = Depends(get_email_service)
):
    """
    Send a sign-in code to an existing subscriber.

    Rate limit: 5 requests per 15 minutes per IP.

    Raises:
        HTTPException 400: Missing or malformed email
        HTTPException 404: Email is not on the subscriber list
        HTTPException 500: Email delivery failed
    """
    email = _require_email(body.email)

    subscriber = db.query(Subscriber).filter(Subscriber.email == normalize_email(email)).first()
    if not subscriber:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Email not found. Please sign up first."
        )

    code = generate_code()
    token = token_service.issue(OtpPayload(
        email=subscriber.email,
        code=code,
        first_name=subscriber.first_name,
        expires_at=now_ms() + OTP_EXPIRY_MS
    ))

    _send_code(email_service, subscriber.email, code, subscriber.first_name)
    logger.info(f"OTP issued for subscriber {subscriber.id}")

    return OtpTokenResponse(token=token)


@router.post("/signup", response_model=OtpTokenResponse, dependencies=[Depends(limit_otp_request)])
def signup(
    body: OtpSignupBody,
    token_service: TokenService = Depends(get_token_service),
    email_service: EmailService = Depends(get_email_service)
):
    """
    Send a code to confirm a new subscriber's email.

    The signup fields are sealed into the token and only written to the
    subscriber list once the code is verified.

    Rate limit: 5 requests per 15 minutes per IP.
    """
    first_name = (body.firstName or "").strip()
    if not first_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="First name is required"
        )

    email = _require_email(body.email)

    code = generate_code()
    token = token_service.issue(OtpPayload(
        email=email,
        code=code,
        first_name=first_name,
        phone=(body.phone or "").strip(),
        tier=(body.tier or "").strip(),
        expires_at=now_ms() + OTP_EXPIRY_MS
    ))

    _send_code(email_service, email, code, first_name)
    logger.info("OTP issued for signup")

    return OtpTokenResponse(token=token)


@router.post("/verify", response_model=OtpVerifiedResponse, dependencies=[Depends(limit_otp_verify)])
def verify(
    body: OtpVerifyBody,
    token_service: TokenService = Depends(get_token_service)
):
    """
    Verify a sign-in code.

    Rate limit: 10 attempts per 15 minutes per IP.

    Raises:
        HTTPException 400: Missing fields, or invalid/expired token or code
    """
    payload = _verify(body, token_service)
    return OtpVerifiedResponse(firstName=payload.first_name)


@router.post("/verify-signup", response_model=OtpVerifiedResponse, dependencies=[Depends(limit_otp_verify)])
def verify_signup(
    body: OtpVerifyBody,
    db: Session = Depends(get_db),
    token_service: TokenService = Depends(get_token_service)
):
    """
    Verify a signup code and add the subscriber.

    Rate limit: 10 attempts per 15 minutes per IP.

    Raises:
        HTTPException 400: Missing fields, or invalid/expired token or code
        HTTPException 500: Subscriber could not be saved
    """
    payload = _verify(body, token_service)

    subscriber = Subscriber(
        email=normalize_email(payload.email),
        name=payload.first_name.strip() or None,
        phone=(payload.phone or "").strip() or None,
        tier=(payload.tier or "").strip() or None
    )

    try:
        db.add(subscriber)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save subscriber: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save. Please try again."
        )

    logger.info(f"New subscriber {subscriber.id} verified")

    return OtpVerifiedResponse(firstName=payload.first_name)
