"""
Message templates: an immutable, versioned registry and a renderer.

Placeholders use ``{{name}}`` syntax. Only names in ALLOWED_PLACEHOLDERS may
appear in a template, so a template cannot pull arbitrary profile fields
into a message. A recognised placeholder with no value renders as an empty
string and logs a warning; raw ``{{`` never reaches a recipient.
"""
import dataclasses
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, TypeAdapter

from messaging.core.config import Settings, get_settings
from messaging.core.errors import TemplateError, TemplateNotFoundError
from messaging.core.logging import get_logger, log_extra
from messaging.services.delivery import BROADCAST_CLASSES, DYNAMIC_PREDICATES

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

ALLOWED_PLACEHOLDERS: FrozenSet[str] = frozenset({
    "firstName",
    "lastName",
    "fullName",
    "username",
    "email",
    "expirationDate",
    "badgeNumber",
    # Contact form submissions
    "subject",
    "message",
})

TARGET_SPECIFIC = "specific"
TARGET_DYNAMIC = "dynamic"


@dataclass(frozen=True)
class MessageTemplate:
    id: str
    name: str
    subject: str
    content: str
    target_type: str = TARGET_SPECIFIC
    description: str = ""
    target_recipient: Optional[str] = None
    target_query: Optional[str] = None
    version: int = 1

    @property
    def placeholders(self) -> FrozenSet[str]:
        return frozenset(PLACEHOLDER_PATTERN.findall(self.subject + "\n" + self.content))


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    content: str


def _check_placeholders(template: MessageTemplate) -> None:
    unknown = template.placeholders - ALLOWED_PLACEHOLDERS
    if unknown:
        raise TemplateError(
            f"template '{template.id}' uses unrecognised placeholders: {', '.join(sorted(unknown))}"
        )


def _check_syntax(template: MessageTemplate) -> None:
    # Substituted values may contain braces; only the template text is checked
    for text in (template.subject, template.content):
        leftover = PLACEHOLDER_PATTERN.sub("", text)
        if "{{" in leftover or "}}" in leftover:
            raise TemplateError(f"template '{template.id}' contains malformed placeholders")


def _format_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def render_template(template: MessageTemplate, profile: Mapping[str, Any]) -> RenderedMessage:
    """
    Fill a template's subject and content from ``profile``.

    Raises:
        TemplateError: the template names a placeholder outside the
            allow-list, or contains malformed placeholder syntax
    """
    _check_placeholders(template)
    _check_syntax(template)

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = profile.get(name)
        if value is None or value == "":
            logger.warning(
                "Template placeholder has no value, rendering empty",
                **log_extra(template_id=template.id, placeholder=name),
            )
            return ""
        return _format_value(value)

    subject = PLACEHOLDER_PATTERN.sub(substitute, template.subject)
    content = PLACEHOLDER_PATTERN.sub(substitute, template.content)

    return RenderedMessage(subject=subject, content=content)


def profile_context(user: Any) -> Dict[str, Any]:
    """Placeholder values for a user directory record."""
    full_name = user.full_name or " ".join(filter(None, [user.first_name, user.last_name]))
    first_name = user.first_name or (full_name.split()[0] if full_name else None) or user.username
    return {
        "firstName": first_name,
        "lastName": user.last_name,
        "fullName": full_name or user.username,
        "username": user.username,
        "email": user.email,
        "expirationDate": user.subscription_end_date,
        "badgeNumber": user.membership_badge_number,
    }


class TemplateRegistry:
    """
    Read-only collection of templates keyed by id and version.

    Editing a template never mutates the registry: ``with_version`` returns
    a new registry holding the extra version, so content that was already
    rendered can always be traced back to the exact template text.
    """

    def __init__(self, templates: Iterable[MessageTemplate] = ()):
        versions: Dict[str, Dict[int, MessageTemplate]] = {}
        for template in templates:
            self._validate(template)
            by_version = versions.setdefault(template.id, {})
            if template.version in by_version:
                raise TemplateError(f"duplicate template '{template.id}' version {template.version}")
            by_version[template.version] = template
        self._versions = MappingProxyType({
            template_id: MappingProxyType(dict(sorted(by_version.items())))
            for template_id, by_version in versions.items()
        })

    @staticmethod
    def _validate(template: MessageTemplate) -> None:
        _check_placeholders(template)
        if template.target_type == TARGET_DYNAMIC:
            if template.target_query not in DYNAMIC_PREDICATES:
                raise TemplateError(
                    f"template '{template.id}' targets unknown audience '{template.target_query}'"
                )
        elif template.target_type == TARGET_SPECIFIC:
            if template.target_recipient is not None and template.target_recipient not in BROADCAST_CLASSES:
                raise TemplateError(
                    f"template '{template.id}' targets unknown recipient class '{template.target_recipient}'"
                )
        else:
            raise TemplateError(f"template '{template.id}' has unknown target type '{template.target_type}'")

    def get(self, template_id: str, version: Optional[int] = None) -> MessageTemplate:
        """Latest version of ``template_id``, or the given version."""
        by_version = self._versions.get(template_id)
        if not by_version:
            raise TemplateNotFoundError(f"template '{template_id}' not found")
        if version is None:
            return by_version[max(by_version)]
        try:
            return by_version[version]
        except KeyError:
            raise TemplateNotFoundError(f"template '{template_id}' has no version {version}") from None

    def versions(self, template_id: str) -> List[MessageTemplate]:
        self.get(template_id)
        return list(self._versions[template_id].values())

    def latest(self) -> List[MessageTemplate]:
        return [self.get(template_id) for template_id in sorted(self._versions)]

    def all(self) -> List[MessageTemplate]:
        return [template for by_version in self._versions.values() for template in by_version.values()]

    def with_version(self, template_id: str, **changes: Any) -> "TemplateRegistry":
        """Return a new registry with an edited copy of ``template_id`` as its next version."""
        current = self.get(template_id)
        changes.pop("id", None)
        changes["version"] = current.version + 1
        edited = dataclasses.replace(current, **changes)
        return TemplateRegistry([*self.all(), edited])

    def with_template(self, template: MessageTemplate) -> "TemplateRegistry":
        """Add a template, becoming the next version when the id already exists."""
        if template.id in self:
            fields = dataclasses.asdict(template)
            template_id = fields.pop("id")
            fields.pop("version")
            return self.with_version(template_id, **fields)
        return TemplateRegistry([*self.all(), template])

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._versions

    def __len__(self) -> int:
        return len(self._versions)


_CONTACT_FOOTER = (
    "\n\n---\n"
    "This message was automatically generated from a Contact Us form submission.\n"
    "Please reply directly to this message to communicate with the user about {about}."
)

DEFAULT_TEMPLATES = (
    MessageTemplate(
        id="sponsorship_renewal",
        name="7-Day Sponsorship Renewal Reminder",
        description="Reminder for users with expiring sponsorships within a week",
        subject="Reminder: Renew Your Sponsorship Benefits",
        content=(
            "Hi {{firstName}},\n\n"
            "We noticed your sponsorship benefits are set to expire on {{expirationDate}}.\n\n"
            "To maintain your access to exclusive features and support the platform, "
            "please renew your sponsorship by visiting your Account Page.\n\n"
            "Thank you for being part of our community!\n\n"
            "The Admin Team"
        ),
        target_type=TARGET_DYNAMIC,
        target_query="sponsorship_expiring_7days",
    ),
    MessageTemplate(
        id="welcome_new_users",
        name="Welcome Message for New Users",
        description="Welcome message for all newly registered users",
        subject="Welcome to the Community!",
        content=(
            "Hello {{firstName}},\n\n"
            "Welcome to the community platform! We're thrilled to have you join us.\n\n"
            "Here are a few things you can do to get started:\n"
            "- Complete your profile in the Account settings\n"
            "- Explore the community forums to meet other members\n"
            "- Check out upcoming events in the Calendar section\n"
            "- Browse local businesses and services in the Vendors area\n\n"
            "If you have any questions, please reach out to our admin team.\n\n"
            "Best regards,\nThe Community Team"
        ),
        target_type=TARGET_DYNAMIC,
        target_query="newly_registered_users",
    ),
    MessageTemplate(
        id="welcome_paid",
        name="Welcome Message for New Paid Users",
        description="Welcome message for newly paid users",
        subject="Welcome to Your Premium Sponsorship!",
        content=(
            "Hello {{firstName}},\n\n"
            "Thank you for becoming a premium sponsor of our community!\n\n"
            "Your sponsorship helps us maintain and improve this platform for everyone. "
            "You now have access to exclusive features and content.\n\n"
            "Best regards,\nThe Community Team"
        ),
        target_type=TARGET_DYNAMIC,
        target_query="new_paid_users",
    ),
    MessageTemplate(
        id="badge_holder_upgrade",
        name="Badge Holder Upgrade Offer",
        description="Upgrade offer for badge holders",
        subject="Special Offer for Badge Holders",
        content=(
            "Hello {{firstName}},\n\n"
            "As a valued badge holder in our community, we're offering you a special "
            "discount on premium sponsorship!\n\n"
            "Visit your account page to learn more about this exclusive offer.\n\n"
            "Best regards,\nThe Community Team"
        ),
        target_type=TARGET_DYNAMIC,
        target_query="badge_holders",
    ),
    MessageTemplate(
        id="bug_report",
        name="Bug Report",
        description="Template for bug reports submitted via contact form",
        subject="Bug Report: {{subject}}",
        content="Bug Report submitted by: {{firstName}}\n\nDescription:\n{{message}}"
                + _CONTACT_FOOTER.format(about="this bug report"),
        target_recipient="admin",
    ),
    MessageTemplate(
        id="feature_request",
        name="Feature Request",
        description="Template for feature requests submitted via contact form",
        subject="Feature Request: {{subject}}",
        content="Feature Request submitted by: {{firstName}}\n\nDescription:\n{{message}}"
                + _CONTACT_FOOTER.format(about="this feature request"),
        target_recipient="admin",
    ),
    MessageTemplate(
        id="other_feedback",
        name="Other Feedback",
        description="Template for other feedback submitted via contact form",
        subject="Feedback: {{subject}}",
        content="Feedback submitted by: {{firstName}}\n\nDescription:\n{{message}}"
                + _CONTACT_FOOTER.format(about="their feedback"),
        target_recipient="admin",
    ),
)


class TemplateDefinition(BaseModel):
    """Shape of a template entry in the templates JSON file."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1)
    subject: str
    content: str
    target_type: Literal["specific", "dynamic"] = TARGET_SPECIFIC
    description: str = ""
    target_recipient: Optional[str] = None
    target_query: Optional[str] = None

    def to_template(self) -> MessageTemplate:
        return MessageTemplate(**self.model_dump())


def load_templates(path: str) -> List[MessageTemplate]:
    """Read template definitions from a JSON list."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    definitions = TypeAdapter(List[TemplateDefinition]).validate_python(raw)
    return [definition.to_template() for definition in definitions]


def build_registry(settings: Settings) -> TemplateRegistry:
    """Built-in templates, overlaid with the configured templates file."""
    registry = TemplateRegistry(DEFAULT_TEMPLATES)
    if settings.templates_path:
        for template in load_templates(settings.templates_path):
            registry = registry.with_template(template)
        logger.info(
            "Loaded message templates",
            **log_extra(path=settings.templates_path, templates=len(registry)),
        )
    return registry


@lru_cache()
def get_template_registry() -> TemplateRegistry:
    """Registry built once at startup."""
    return build_registry(get_settings())
