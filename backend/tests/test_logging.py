"""
Log redaction of card references and email addresses.
"""

from booking_lifecycle.core.logging import redact_sensitive


def test_payment_method_and_email_are_masked():
    event = redact_sensitive(
        None,
        "info",
        {"event": "payment_authorized", "payment_method_id": "pm_card_visa_4242", "email": "alice@example.com"},
    )
    assert event["payment_method_id"] == "***4242"
    assert event["email"] == "a***@example.com"
    assert event["event"] == "payment_authorized"


def test_other_fields_untouched():
    event = redact_sensitive(None, "info", {"event": "refund_created", "amount_cents": 5000, "actor_email": None})
    assert event == {"event": "refund_created", "amount_cents": 5000, "actor_email": None}
