"""
Contact form endpoint: signed submissions become messages to the admins.
"""
import json
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError as PydanticValidationError

from messaging.api.deps import get_store
from messaging.core.config import Settings, get_settings
from messaging.core.logging import get_logger
from messaging.core.security import get_validated_body
from messaging.schemas.message import ContactRequest, ContactResponse, ErrorResponse
from messaging.services.compose import submit_contact_form
from messaging.services.store import MessageStore
from messaging.services.templates import TemplateRegistry, get_template_registry

logger = get_logger(__name__)

router = APIRouter(tags=["Contact"])


@router.post(
    "/contact",
    status_code=201,
    response_model=ContactResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Submit the contact form",
    description="Files a bug report, feature request or feedback as a message to all administrators. "
                "Requires a valid HMAC-SHA256 signature.",
)
async def submit_contact(
    validated_body: Annotated[bytes, Depends(get_validated_body)],
    store: Annotated[MessageStore, Depends(get_store)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ContactResponse:
    # The body was read raw for the signature check, so parse it here
    try:
        data = json.loads(validated_body)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in contact submission: {e}")
        raise HTTPException(status_code=422, detail="Invalid JSON")

    try:
        submission = ContactRequest.model_validate(data)
    except PydanticValidationError as e:
        logger.warning(f"Validation error in contact submission: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    message = submit_contact_form(
        store,
        registry,
        settings,
        inquiry_type=submission.inquiry_type,
        subject=submission.subject,
        message=submission.message,
        name=submission.name,
        email=submission.email,
        user_id=submission.user_id,
    )
    return ContactResponse(message_id=message.id)
