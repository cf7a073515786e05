"""Tests for template rendering."""

import pytest

from shipnotify.templates import TemplateRenderError, render_template


class TestRenderTemplate:
    """Test render_template."""

    def test_substitutes_variables(self):
        """Top-level keys are substituted."""
        result = render_template(
            "{{ trackingNumber }} is {{ status }}",
            {"trackingNumber": "1Z999", "status": "delivered"},
        )
        assert result == "1Z999 is delivered"

    def test_dotted_lookup(self):
        """Nested keys are reachable with dots."""
        result = render_template(
            "{{ current.carrier }} / {{ previous.status }}",
            {"current": {"carrier": "UPS"}, "previous": {"status": "in_transit"}},
        )
        assert result == "UPS / in_transit"

    def test_missing_variable_renders_empty(self):
        """Unknown variables, including nested chains, render as empty."""
        assert render_template("[{{ missing }}]", {}) == "[]"
        assert render_template("[{{ previous.status }}]", {"previous": None}) == "[]"
        assert render_template("[{{ a.b.c }}]", {}) == "[]"

    def test_conditional_block(self):
        """if blocks render against the data."""
        template = "{% if estimatedDelivery %}ETA {{ estimatedDelivery }}{% else %}No ETA{% endif %}"
        assert render_template(template, {"estimatedDelivery": "2026-01-20"}) == "ETA 2026-01-20"
        assert render_template(template, {}) == "No ETA"

    def test_none_data(self):
        """None data renders like an empty mapping."""
        assert render_template("static text", None) == "static text"

    def test_no_html_escaping(self):
        """Bodies are plain text and not HTML-escaped."""
        assert render_template("{{ supplier }}", {"supplier": "A & B <Ltd>"}) == "A & B <Ltd>"

    def test_syntax_error(self):
        """Malformed templates raise TemplateRenderError."""
        with pytest.raises(TemplateRenderError):
            render_template("{% if status %}unterminated", {"status": "x"})

    def test_sandbox_blocks_unsafe_access(self):
        """Attribute access to internals yields nothing."""
        assert render_template("{{ ''.__class__ }}", {}) == ""

    @pytest.mark.parametrize(
        "template",
        ["{{ trackingNumber + 1 }}", "{{ 1 // 0 }}", "{{ trackingNumber.upper(1, 2) }}"],
    )
    def test_runtime_error(self, template):
        """Errors raised while evaluating an expression become TemplateRenderError."""
        with pytest.raises(TemplateRenderError):
            render_template(template, {"trackingNumber": "1Z1"})
