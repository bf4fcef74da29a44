import hmac


def _strip_wrapping_quotes(value: str) -> str:
    """Remove a single pair of wrapping quotes if present.

    .env files and container consoles sometimes keep the quotes, e.g.
    ASAAS_WEBHOOK_TOKEN="abc123"
    """
    s = (value or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1].strip()
    return s


def normalize_secret(value: str) -> str:
    return _strip_wrapping_quotes(value)


def verify_shared_token(expected: str, presented: str | None) -> tuple[bool, dict]:
    """Constant-time comparison of a shared webhook token.

    Returns (ok, debug) where debug holds only lengths and prefixes, safe to log.
    An empty `expected` means verification is not configured and always fails
    here; callers decide whether to check at all.
    """
    exp = _strip_wrapping_quotes(expected)
    got = (presented or "").strip()
    ok = bool(exp) and bool(got) and hmac.compare_digest(exp.encode("utf-8"), got.encode("utf-8"))
    debug = {
        "expected_len": len(exp),
        "header_len": len(got),
        "header_prefix": (got[:4] + "…") if got else "",
    }
    return ok, debug
