"""
Caller identity and HMAC-SHA256 signature validation.

User identity is established upstream by the session middleware and
forwarded as ``X-User-Id`` / ``X-User-Role`` headers. Contact form
submissions arrive unauthenticated and are signed instead.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from messaging.core.config import Settings, get_settings
from messaging.core.logging import get_logger, log_extra
from messaging.models.user import UserRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class Caller:
    """Authenticated user making the request."""

    user_id: int
    role: str = UserRole.REGISTERED

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


async def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Caller:
    """
    Resolve the caller forwarded by the auth middleware.

    Raises:
        HTTPException: 401 if the user id header is missing or not an integer
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="authentication required")
    try:
        user_id = int(x_user_id)
    except ValueError:
        logger.warning("Malformed X-User-Id header", **log_extra(value=x_user_id[:32]))
        raise HTTPException(status_code=401, detail="authentication required")
    return Caller(user_id=user_id, role=(x_user_role or UserRole.REGISTERED).lower())


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw contact form body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(compute_signature(secret, body), signature)


class SignatureValidator:
    """
    Dependency class for validating signed contact form submissions.
    """

    async def __call__(
        self,
        request: Request,
        settings: Settings = Depends(get_settings),
    ) -> bytes:
        """
        Validate the X-Signature header against the request body.

        Returns:
            The raw request body bytes if valid

        Raises:
            HTTPException: 401 if signature is missing or invalid
        """
        signature: Optional[str] = request.headers.get("X-Signature")

        if not signature:
            logger.warning("Contact submission missing X-Signature header")
            raise HTTPException(status_code=401, detail="invalid signature")

        if not settings.is_webhook_secret_configured:
            logger.error("WEBHOOK_SECRET environment variable not configured")
            raise HTTPException(status_code=401, detail="invalid signature")

        body = await request.body()

        if not verify_signature(settings.webhook_secret, body, signature):
            logger.warning(
                "Contact submission signature verification failed",
                **log_extra(received_signature=signature[:16] + "..."),
            )
            raise HTTPException(status_code=401, detail="invalid signature")

        logger.debug("Contact submission signature verified")
        return body


validate_signature = SignatureValidator()


async def get_validated_body(
    body: bytes = Depends(validate_signature)
) -> bytes:
    """FastAPI dependency to get validated request body."""
    return body
