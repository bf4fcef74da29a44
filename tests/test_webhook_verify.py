from omnichannel.webhook.verify import normalize_secret, verify_shared_token


def test_verify_shared_token_ok():
    ok, dbg = verify_shared_token("abc123", "abc123")
    assert ok is True
    assert dbg["expected_len"] == 6


def test_verify_shared_token_wrapping_quotes_are_ignored():
    ok, _ = verify_shared_token('"abc123"', "abc123")
    assert ok is True
    assert normalize_secret("'abc123'") == "abc123"


def test_verify_shared_token_mismatch_or_missing():
    assert verify_shared_token("abc123", "abc124")[0] is False
    assert verify_shared_token("abc123", None)[0] is False
    assert verify_shared_token("", "anything")[0] is False


def test_debug_does_not_leak_the_secret():
    _, dbg = verify_shared_token("supersecretvalue", "supersecretvalue")
    assert "supersecretvalue" not in str(dbg)
