import logging

from services.redaction import mask_reference, redact_dict, redact_text


def test_mask_reference_keeps_prefix_and_tail():
    assert mask_reference("acct_1NvXYZabcd1234") == "acct_***1234"
    assert mask_reference("pi_3Mtw9tLkdIwHu7ix0a1b") == "pi_***0a1b"
    assert mask_reference("short") == "short"
    assert mask_reference(None) is None


def test_redact_text_masks_email_and_secrets():
    assert redact_text("owner jane.doe@example.com") == "owner j***@example.com"
    assert redact_text("key sk_live_abc123 leaked") == "[REDACTED]"
    assert redact_text("whsec_abc") == "[REDACTED]"


def test_redact_dict_masks_sensitive_keys():
    payload = {
        "email": "jane.doe@example.com",
        "STRIPE_WEBHOOK_SECRET": "whsec_abc",
        "Stripe-Signature": "t=1,v1=deadbeef",
        "destination": "acct_1NvXYZabcd1234",
        "amount": 4200,
        "nested": {"api_key": "k", "note": "contact jane.doe@example.com"},
    }
    redacted = redact_dict(payload)
    assert redacted["email"] == "[REDACTED]"
    assert redacted["STRIPE_WEBHOOK_SECRET"] == "[REDACTED]"
    assert redacted["Stripe-Signature"] == "[REDACTED]"
    assert redacted["destination"] == "acct_***1234"
    assert redacted["amount"] == 4200
    assert redacted["nested"]["api_key"] == "[REDACTED]"
    assert redacted["nested"]["note"] == "contact j***@example.com"


def test_log_line_uses_redaction_helper(caplog):
    logger = logging.getLogger("redaction-test")
    caplog.set_level(logging.INFO)
    logger.info("payload=%s", redact_text("error for sk_test_51Habc"))
    assert "sk_test_51Habc" not in caplog.text
