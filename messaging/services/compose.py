"""
Template-driven sends and the contact form adapter.
"""
from typing import Any, Dict, List, Mapping, Optional, Tuple

from messaging.core.config import Settings
from messaging.core.errors import ValidationError
from messaging.core.logging import get_logger, log_extra
from messaging.models.message import Message
from messaging.models.user import UserRole
from messaging.services.delivery import (
    Addressing,
    ByDynamicQuery,
    ByRole,
    BySpecificUsers,
)
from messaging.services.directory import UserDirectory
from messaging.services.store import MessageStore
from messaging.services.templates import (
    TARGET_DYNAMIC,
    MessageTemplate,
    RenderedMessage,
    TemplateRegistry,
    profile_context,
    render_template,
)

logger = get_logger(__name__)

INQUIRY_TEMPLATES = {
    "bug": "bug_report",
    "feature": "feature_request",
    "feedback": "other_feedback",
}


def default_addressing(template: MessageTemplate) -> Addressing:
    """The audience a template declares for itself."""
    if template.target_type == TARGET_DYNAMIC:
        return ByDynamicQuery(template.target_query)
    if template.target_recipient:
        return ByRole(template.target_recipient)
    raise ValidationError(f"template '{template.id}' has no default audience; a recipient is required")


def send_from_template(
    store: MessageStore,
    registry: TemplateRegistry,
    directory: UserDirectory,
    sender_id: int,
    template_id: str,
    addressing: Optional[Addressing] = None,
    *,
    sender_role: str = UserRole.REGISTERED,
    version: Optional[int] = None,
    extra: Optional[Mapping[str, Any]] = None,
    attachments=(),
) -> List[Message]:
    """
    Render a template for every recipient and send it.

    Recipients whose rendering comes out identical share one message, so a
    template without personal placeholders produces a single fanned-out
    message. Everything is rendered before anything is written; a template
    failure aborts the whole send.
    """
    template = registry.get(template_id, version)
    if addressing is None:
        addressing = default_addressing(template)

    resolution = store.resolver.resolve(addressing, sender_id=sender_id, sender_role=sender_role)
    profiles = directory.get_many(resolution.recipient_ids)

    groups: Dict[RenderedMessage, List[int]] = {}
    for recipient_id in resolution.recipient_ids:
        context = dict(extra or {})
        context.update(
            (key, value) for key, value in profile_context(profiles[recipient_id]).items()
            if value is not None
        )
        groups.setdefault(render_template(template, context), []).append(recipient_id)

    sent: List[Tuple[Message, Tuple[int, ...]]] = []
    try:
        for rendered, recipient_ids in groups.items():
            group = BySpecificUsers(tuple(recipient_ids), resolution.message_type, resolution.target)
            message = store.create_message(
                sender_id,
                rendered.subject,
                rendered.content,
                group,
                attachments,
                sender_role=sender_role,
                template=template,
                commit=False,
            )
            sent.append((message, group.user_ids))
        store.db.commit()
    except Exception:
        store.db.rollback()
        raise

    for message, recipient_ids in sent:
        store.notify(message, recipient_ids)

    logger.info(
        "Template sent",
        **log_extra(
            template_id=template.id,
            template_version=template.version,
            messages=len(sent),
            recipients=len(resolution),
        ),
    )
    return [message for message, _ in sent]


def submit_contact_form(
    store: MessageStore,
    registry: TemplateRegistry,
    settings: Settings,
    inquiry_type: str,
    subject: str,
    message: str,
    name: str,
    email: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Message:
    """
    File a contact form submission as a message to every administrator.

    The template is rendered against the submission itself, not against the
    receiving administrators.
    """
    template_id = INQUIRY_TEMPLATES.get(inquiry_type)
    if template_id is None:
        raise ValidationError(f"unknown inquiry type: {inquiry_type}")
    template = registry.get(template_id)

    rendered = render_template(template, {
        "firstName": name,
        "fullName": name,
        "email": email,
        "subject": subject,
        "message": message,
    })
    sender_id = user_id if user_id is not None else settings.system_sender_id

    created = store.create_message(
        sender_id,
        rendered.subject,
        rendered.content,
        default_addressing(template),
        template=template,
    )
    logger.info(
        "Contact form submitted",
        **log_extra(message_id=created.id, inquiry_type=inquiry_type, sender_id=sender_id),
    )
    return created
