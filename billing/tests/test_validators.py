# billing/tests/test_validators.py
"""Tests for request body validation."""

from __future__ import annotations

import pytest


class TestValidators:
    """Tests for request body validation."""

    @pytest.mark.parametrize("body", [{"price_id": "price_pro"}, {"priceId": "price_pro"}])
    def test_checkout_accepts_both_spellings(self, body):
        from billing.validators import parse_checkout_input

        assert parse_checkout_input(body).price_id == "price_pro"

    @pytest.mark.parametrize(
        "body,message",
        [
            (None, "Body must be a JSON object"),
            (["price_pro"], "Body must be a JSON object"),
            ({}, "price_id is required"),
            ({"price_id": "  "}, "price_id must be a non-empty string"),
        ],
    )
    def test_checkout_rejects(self, body, message):
        from billing.errors import ValidationError
        from billing.validators import parse_checkout_input

        with pytest.raises(ValidationError) as exc:
            parse_checkout_input(body)
        assert exc.value.message == message

    def test_portal_accepts_camel_case(self):
        from billing.validators import parse_portal_input

        body = parse_portal_input({"returnUrl": "https://app.example.com/account"})
        assert body.return_url == "https://app.example.com/account"

    @pytest.mark.parametrize("url", ["", "not-a-url", "ftp://example.com", "/relative/path"])
    def test_portal_rejects_bad_url(self, url):
        from billing.errors import ValidationError
        from billing.validators import parse_portal_input

        with pytest.raises(ValidationError):
            parse_portal_input({"return_url": url})
