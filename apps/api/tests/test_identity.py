import pytest
from jose import jwt

from interview_credits.core.config import settings
from interview_credits.core.exceptions import AuthError
from interview_credits.services.identity import verify_caller


def _token(claims, secret="test-secret"):
    return jwt.encode(claims, secret, algorithm="HS256")


def test_hs256_token_resolves_to_subject():
    assert verify_caller(f"Bearer {_token({'sub': 'acct-42'})}") == "acct-42"


def test_user_id_claim_is_accepted():
    assert verify_caller(f"Bearer {_token({'user_id': 'acct-7'})}") == "acct-7"


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer garbage"])
def test_malformed_headers_are_rejected(header):
    with pytest.raises(AuthError):
        verify_caller(header)


def test_wrong_secret_is_rejected():
    with pytest.raises(AuthError):
        verify_caller(f"Bearer {_token({'sub': 'acct-1'}, secret='other-secret')}")


def test_token_without_subject_is_rejected():
    with pytest.raises(AuthError):
        verify_caller(f"Bearer {_token({'email': 'a@example.com'})}")


def test_unverified_tokens_only_when_enabled(monkeypatch):
    token = _token({"sub": "dev-user"}, secret="other-secret")
    monkeypatch.setattr(settings, "allow_unverified_tokens", True)
    assert verify_caller(f"Bearer {token}") == "dev-user"
