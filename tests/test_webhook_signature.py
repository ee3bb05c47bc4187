from app.services.webhook_signature import build_signature_header, verify_signature

SECRET = "whsec_test"
BODY = b'{"type":"post_call_transcription","data":{"conversation_id":"conv-1"}}'
NOW = 1_700_000_000


def test_verify_signature_accepts_matching_header() -> None:
    header = build_signature_header(BODY, SECRET, timestamp=NOW)

    assert verify_signature(BODY, header, SECRET, now=NOW) is True
    assert verify_signature(BODY, header, SECRET, now=NOW + 299) is True


def test_verify_signature_rejects_mutated_body() -> None:
    header = build_signature_header(BODY, SECRET, timestamp=NOW)
    mutated = BODY.replace(b"conv-1", b"conv-2")

    assert verify_signature(mutated, header, SECRET, now=NOW) is False


def test_verify_signature_rejects_wrong_secret() -> None:
    header = build_signature_header(BODY, "another-secret", timestamp=NOW)

    assert verify_signature(BODY, header, SECRET, now=NOW) is False


def test_verify_signature_rejects_timestamps_outside_window() -> None:
    stale_header = build_signature_header(BODY, SECRET, timestamp=NOW - 301)
    future_header = build_signature_header(BODY, SECRET, timestamp=NOW + 301)

    assert verify_signature(BODY, stale_header, SECRET, now=NOW) is False
    assert verify_signature(BODY, future_header, SECRET, now=NOW) is False


def test_verify_signature_honors_custom_skew() -> None:
    header = build_signature_header(BODY, SECRET, timestamp=NOW - 100)

    assert verify_signature(BODY, header, SECRET, max_skew_seconds=60, now=NOW) is False
    assert verify_signature(BODY, header, SECRET, max_skew_seconds=120, now=NOW) is True


def test_verify_signature_rejects_malformed_headers() -> None:
    valid = build_signature_header(BODY, SECRET, timestamp=NOW)
    mac = valid.split("v0=", 1)[1]

    assert verify_signature(BODY, "", SECRET, now=NOW) is False
    assert verify_signature(BODY, None, SECRET, now=NOW) is False
    assert verify_signature(BODY, f"v0={mac}", SECRET, now=NOW) is False
    assert verify_signature(BODY, f"t={NOW}", SECRET, now=NOW) is False
    assert verify_signature(BODY, f"t=abc,v0={mac}", SECRET, now=NOW) is False
    assert verify_signature(BODY, f"t={NOW},v0=not-hex", SECRET, now=NOW) is False
    assert verify_signature(BODY, "garbage", SECRET, now=NOW) is False


def test_verify_signature_requires_configured_secret() -> None:
    header = build_signature_header(BODY, "", timestamp=NOW)

    assert verify_signature(BODY, header, "", now=NOW) is False


def test_verify_signature_tolerates_whitespace_between_fields() -> None:
    header = build_signature_header(BODY, SECRET, timestamp=NOW).replace(",", ", ")

    assert verify_signature(BODY, header, SECRET, now=NOW) is True
