"""
Tests for the template registry, renderer and loader.
"""
import json
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import get_test_settings
from messaging.core.errors import NotFoundError, TemplateError, TemplateNotFoundError
from messaging.services import templates
from messaging.services.templates import (
    DEFAULT_TEMPLATES,
    MessageTemplate,
    TemplateRegistry,
    build_registry,
    load_templates,
    profile_context,
    render_template,
)


@pytest.fixture
def registry() -> TemplateRegistry:
    return TemplateRegistry(DEFAULT_TEMPLATES)


@pytest.fixture
def mock_logger(monkeypatch) -> MagicMock:
    logger = MagicMock()
    monkeypatch.setattr(templates, "logger", logger)
    return logger


def profile(**fields):
    values = dict(
        username="pat",
        email="pat@example.com",
        full_name=None,
        first_name=None,
        last_name=None,
        subscription_end_date=None,
        membership_badge_number=None,
    )
    values.update(fields)
    return SimpleNamespace(**values)


class TestRendering:
    """Placeholder substitution."""

    def test_sponsorship_renewal(self, registry, mock_logger):
        template = registry.get("sponsorship_renewal")
        context = profile_context(profile(
            first_name="Pat",
            subscription_end_date=datetime(2025, 1, 4, 12, 0),
        ))

        rendered = render_template(template, context)

        assert rendered.subject == "Reminder: Renew Your Sponsorship Benefits"
        assert rendered.content.startswith("Hi Pat,")
        assert "expire on 2025-01-04." in rendered.content
        assert "{{" not in rendered.content
        mock_logger.warning.assert_not_called()

    def test_missing_value_renders_empty_and_warns(self, registry, mock_logger):
        template = registry.get("sponsorship_renewal")

        rendered = render_template(template, {"firstName": "Pat"})

        assert "expire on ." in rendered.content
        mock_logger.warning.assert_called_once()
        extra = mock_logger.warning.call_args.kwargs["extra"]["extra_data"]
        assert extra == {"template_id": "sponsorship_renewal", "placeholder": "expirationDate"}

    def test_whitespace_inside_braces(self, mock_logger):
        template = MessageTemplate(id="t", name="T", subject="Hi {{ firstName }}", content="x")

        assert render_template(template, {"firstName": "Lee"}).subject == "Hi Lee"

    def test_unknown_placeholder_raises(self):
        template = MessageTemplate(id="t", name="T", subject="s", content="{{password}}")

        with pytest.raises(TemplateError):
            render_template(template, {"password": "hunter2"})

    def test_malformed_placeholder_raises(self):
        template = MessageTemplate(id="t", name="T", subject="s", content="Hi {{first name}}")

        with pytest.raises(TemplateError):
            render_template(template, {})

    def test_stray_closing_braces_raise(self):
        template = MessageTemplate(id="t", name="T", subject="s", content="Hi {{firstName}} }}")

        with pytest.raises(TemplateError):
            render_template(template, {"firstName": "Lee"})

    def test_braces_in_values_are_kept(self, mock_logger):
        template = MessageTemplate(id="t", name="T", subject="Re: {{message}}", content="{{message}}")

        rendered = render_template(template, {"message": "literal {{firstName}} and }}"})

        assert rendered.subject == "Re: literal {{firstName}} and }}"
        assert rendered.content == "literal {{firstName}} and }}"


class TestProfileContext:
    """Values derived from a directory record."""

    def test_names_fall_back(self):
        context = profile_context(profile(full_name="Grace Hopper"))

        assert context["firstName"] == "Grace"
        assert context["fullName"] == "Grace Hopper"

    def test_username_when_no_names(self):
        context = profile_context(profile())

        assert context["firstName"] == "pat"
        assert context["fullName"] == "pat"

    def test_badge_number(self):
        assert profile_context(profile(membership_badge_number="B-042"))["badgeNumber"] == "B-042"


class TestRegistry:
    """Lookup and versioning."""

    def test_defaults_are_loaded(self, registry):
        assert len(registry) == len(DEFAULT_TEMPLATES)
        assert "bug_report" in registry
        assert [template.id for template in registry.latest()] == sorted(t.id for t in DEFAULT_TEMPLATES)

    def test_unknown_template(self, registry):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            registry.get("nope")

        assert isinstance(exc_info.value, NotFoundError)
        assert isinstance(exc_info.value, TemplateError)
        assert exc_info.value.status_code == 404

    def test_with_version_leaves_original_untouched(self, registry):
        edited = registry.with_version("welcome_paid", subject="Thanks, {{firstName}}!")

        assert registry.get("welcome_paid").version == 1
        assert edited.get("welcome_paid").version == 2
        assert edited.get("welcome_paid").subject == "Thanks, {{firstName}}!"
        assert edited.get("welcome_paid", 1).subject == registry.get("welcome_paid").subject
        assert [t.version for t in edited.versions("welcome_paid")] == [1, 2]

    def test_unknown_version(self, registry):
        with pytest.raises(TemplateNotFoundError):
            registry.get("welcome_paid", 7)

    def test_rejects_unknown_placeholder(self, registry):
        with pytest.raises(TemplateError):
            registry.with_version("welcome_paid", content="{{ssn}}")

    def test_rejects_unknown_audience(self):
        with pytest.raises(TemplateError):
            TemplateRegistry([MessageTemplate(
                id="t", name="T", subject="s", content="c",
                target_type="dynamic", target_query="everyone_i_dislike",
            )])

    def test_rejects_duplicate_version(self):
        template = MessageTemplate(id="t", name="T", subject="s", content="c")

        with pytest.raises(TemplateError):
            TemplateRegistry([template, template])


class TestLoading:
    """Templates from a JSON file."""

    def test_load_templates(self, tmp_path):
        path = tmp_path / "templates.json"
        path.write_text(json.dumps([{
            "id": "pool_closed",
            "name": "Pool Closed",
            "subject": "Pool closed",
            "content": "Hi {{firstName}}, the pool is closed.",
            "target_recipient": "all",
        }]))

        loaded = load_templates(str(path))

        assert len(loaded) == 1
        assert loaded[0].id == "pool_closed"
        assert loaded[0].target_type == "specific"

    def test_file_overrides_become_new_versions(self, tmp_path):
        path = tmp_path / "templates.json"
        path.write_text(json.dumps([
            {"id": "welcome_paid", "name": "Welcome", "subject": "Welcome!", "content": "Hi {{firstName}}",
             "target_type": "dynamic", "target_query": "new_paid_users"},
            {"id": "pool_closed", "name": "Pool Closed", "subject": "Pool", "content": "Closed",
             "target_recipient": "all"},
        ]))

        registry = build_registry(get_test_settings(templates_path=str(path)))

        assert registry.get("welcome_paid").version == 2
        assert registry.get("welcome_paid").subject == "Welcome!"
        assert registry.get("pool_closed").version == 1

    def test_invalid_file_entry(self, tmp_path):
        path = tmp_path / "templates.json"
        path.write_text(json.dumps([{"id": "missing_fields"}]))

        with pytest.raises(PydanticValidationError):
            load_templates(str(path))
