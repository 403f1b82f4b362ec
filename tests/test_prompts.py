"""
Tests for prompt rendering and catalog context
"""

from magic_order.prompts import (
    STEP_TWO_PROMPT,
    build_clients_context,
    build_products_context,
    choose_template,
    render,
)


class TestRender:
    """Tests for render"""

    def test_known_placeholders_replaced(self):
        assert render("Hi {message_text}!", message_text="juan") == "Hi juan!"

    def test_unknown_braces_left_alone(self):
        template = '[{"client": {"id": "c1"}}] {other} {message_text}'
        assert render(template, message_text="x") == '[{"client": {"id": "c1"}}] {other} x'

    def test_inserted_values_not_expanded_again(self):
        rendered = render(
            "{analysis_text} | {products_context}",
            analysis_text="model said {products_context}",
            products_context="- Leche (ID: p1)",
        )
        assert rendered == "model said {products_context} | - Leche (ID: p1)"

    def test_phase_two_default_template(self):
        rendered = render(
            STEP_TWO_PROMPT,
            analysis_text="Client: Juan {clients_context}",
            products_context="P",
            clients_context="C",
        )
        assert "Client: Juan {clients_context}" in rendered
        assert "{analysis_text}" not in rendered


class TestContext:

    def test_contexts(self, catalog):
        products = build_products_context(catalog)
        assert "- Leche (ID: p1), Price: 1.5. No variants" in products
        assert build_clients_context(catalog).splitlines()[1] == "- Eli Gomez (ID: c2)"

    def test_choose_template(self):
        assert choose_template(None, "default") == "default"
        assert choose_template("  ", "default") == "default"
        assert choose_template("mine {message_text}", "default") == "mine {message_text}"
