"""Operator bypass tokens and metadata encryption."""

from datetime import date

import pytest
from cryptography.fernet import Fernet, InvalidToken

from gatekeeper.security import (
    OperatorBypass,
    TokenBypass,
    decrypt_metadata,
    encrypt_metadata,
    is_authorized,
    issue_bypass_token,
    make_fernet,
    resolve_bypass,
)

from .conftest import SECRET, make_identity


def test_token_is_deterministic_hmac():
    ident = make_identity("a")
    t1 = issue_bypass_token(ident, SECRET, "2025-01-01")
    t2 = issue_bypass_token(ident, SECRET, date(2025, 1, 1))
    assert t1 == t2
    assert len(t1) == 64


def test_token_valid_only_on_its_day():
    ident = make_identity("a")
    token = TokenBypass(issue_bypass_token(ident, SECRET, "2025-01-01"))
    assert is_authorized(ident, token, SECRET, today="2025-01-01")
    assert not is_authorized(ident, token, SECRET, today="2025-01-02")


def test_token_bound_to_identity_and_secret():
    a, b = make_identity("a"), make_identity("b")
    token = TokenBypass(issue_bypass_token(a, SECRET, "2025-01-01"))
    assert not is_authorized(b, token, SECRET, today="2025-01-01")
    assert not is_authorized(a, token, "other-secret", today="2025-01-01")


def test_empty_secret_disables_tokens():
    ident = make_identity("a")
    token = TokenBypass(issue_bypass_token(ident, "", "2025-01-01"))
    assert not is_authorized(ident, token, "", today="2025-01-01")


def test_operator_bypass_always_authorized():
    assert is_authorized(make_identity("a"), OperatorBypass(), "")


def test_resolve_bypass():
    assert resolve_bypass(True) == OperatorBypass()
    assert resolve_bypass("  abc ") == TokenBypass("abc")
    assert resolve_bypass(TokenBypass("x")) == TokenBypass("x")
    for raw in (None, False, "", "   ", 1, b"abc"):
        assert resolve_bypass(raw) is None
    assert not is_authorized(make_identity("a"), None, SECRET)


def test_metadata_plain_roundtrip_without_key():
    blob = encrypt_metadata({"ua": "x"}, None)
    assert b'"ua"' in blob
    assert decrypt_metadata(blob, None) == {"ua": "x"}
    assert decrypt_metadata(None, None) == {}
    assert make_fernet("") is None


def test_metadata_encrypted_with_fernet():
    f = make_fernet(Fernet.generate_key().decode())
    blob = encrypt_metadata({"ip": "10.0.0.1"}, f)
    assert b"10.0.0.1" not in blob
    assert decrypt_metadata(blob, f) == {"ip": "10.0.0.1"}

    other = Fernet(Fernet.generate_key())
    with pytest.raises(InvalidToken):
        decrypt_metadata(blob, other)
