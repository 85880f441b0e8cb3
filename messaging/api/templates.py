"""
Template endpoints: browse the registry and preview renderings.
"""
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends

from messaging.api.deps import get_directory
from messaging.core.errors import ForbiddenError, ValidationError
from messaging.core.security import Caller, get_caller
from messaging.schemas.message import (
    ErrorResponse,
    RenderedResponse,
    TemplatePreviewRequest,
    TemplateResponse,
)
from messaging.services.directory import UserDirectory
from messaging.services.templates import (
    MessageTemplate,
    TemplateRegistry,
    get_template_registry,
    profile_context,
    render_template,
)

router = APIRouter(prefix="/templates", tags=["Templates"])


def _template_response(template: MessageTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        version=template.version,
        name=template.name,
        description=template.description,
        subject=template.subject,
        content=template.content,
        target_type=template.target_type,
        target_recipient=template.target_recipient,
        target_query=template.target_query,
        placeholders=sorted(template.placeholders),
    )


@router.get("", response_model=List[TemplateResponse], summary="List templates")
async def list_templates(
    caller: Annotated[Caller, Depends(get_caller)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
) -> List[TemplateResponse]:
    """Latest version of every template."""
    return [_template_response(template) for template in registry.latest()]


@router.get(
    "/{template_id}",
    response_model=TemplateResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown template"}},
    summary="Get a template",
)
async def get_template(
    template_id: str,
    caller: Annotated[Caller, Depends(get_caller)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
    version: Optional[int] = None,
) -> TemplateResponse:
    return _template_response(registry.get(template_id, version))


@router.post(
    "/{template_id}/preview",
    response_model=RenderedResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Administrators only"},
        404: {"model": ErrorResponse, "description": "Unknown template"},
        422: {"model": ErrorResponse, "description": "Template error"},
    },
    summary="Preview a rendering",
)
async def preview_template(
    template_id: str,
    request: TemplatePreviewRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
    directory: Annotated[UserDirectory, Depends(get_directory)],
) -> RenderedResponse:
    """
    Render a template without sending it.

    Values come from ``user_id``'s profile when given, then from ``context``.
    """
    if not caller.is_admin:
        raise ForbiddenError("only administrators may preview templates")
    template = registry.get(template_id, request.version)

    context = dict(request.context)
    if request.user_id is not None:
        user = directory.get(request.user_id)
        if user is None:
            raise ValidationError(f"user {request.user_id} does not exist")
        context.update(
            (key, value) for key, value in profile_context(user).items() if value is not None
        )

    rendered = render_template(template, context)
    return RenderedResponse(subject=rendered.subject, content=rendered.content)
