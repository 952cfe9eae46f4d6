import logging

import pytest

from credits.observability.logging import log_credit_event, redact_identifier
from credits.services.signatures import SignatureConfigurationError, sign_event_payload, verify_event_signature


@pytest.mark.parametrize(
    "identifier,expected",
    [
        ("alice@example.com", "ali...@exa...com"),
        ("bo@localhost", "bo...@loc..."),
        ("customer-123", "cus..."),
        ("", "[unknown]"),
        (None, "[unknown]"),
    ],
)
def test_redact_identifier(identifier, expected):
    assert redact_identifier(identifier) == expected


def test_log_credit_event_redacts_user(caplog):
    with caplog.at_level(logging.INFO, logger="credits"):
        log_credit_event(message="Credits reserved", user_id="alice@example.com", task_id="t1", extra={"n": 1})

    record = caplog.records[-1]
    assert record.msg == {"message": "Credits reserved", "user": "ali...@exa...com", "task_id": "t1", "n": 1}
    assert "alice@example.com" not in caplog.text


def test_event_signature_round_trip():
    body = b'{"type":"topup"}'
    signature = sign_event_payload(body, "s3cret")

    assert verify_event_signature(body, signature, "s3cret")
    assert not verify_event_signature(body + b" ", signature, "s3cret")
    assert not verify_event_signature(body, None, "s3cret")
    with pytest.raises(SignatureConfigurationError):
        verify_event_signature(body, signature, "")
