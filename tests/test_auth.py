import pytest
from jose import jwt

from linguarelay.auth import (
    KIND_GUEST,
    KIND_TEST,
    KIND_USER,
    AuthError,
    TokenVerifier,
    extract_bearer_token,
    resolve_identity,
)

SECRET = "unit-test-secret"


def _resolve(header=None, query_token=None, test_mode=False, allow_test_mode=False, verifier=None):
    return resolve_identity(
        header=header,
        query_token=query_token,
        test_mode=test_mode,
        allow_test_mode=allow_test_mode,
        verifier=verifier,
    )


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("bearer  abc ") == "abc"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token("") is None
    assert extract_bearer_token(None) is None


def test_issued_token_verifies():
    verifier = TokenVerifier(SECRET)
    claims = verifier.verify(verifier.issue("user-1", "premium"))
    assert claims["userId"] == "user-1"
    assert claims["subscription"] == "premium"


def test_expired_token_is_rejected():
    verifier = TokenVerifier(SECRET)
    with pytest.raises(AuthError, match="expired"):
        verifier.verify(verifier.issue("user-1", ttl_sec=-60))


def test_wrong_secret_is_rejected():
    token = TokenVerifier("other-secret").issue("user-1")
    with pytest.raises(AuthError, match="invalid token"):
        TokenVerifier(SECRET).verify(token)


def test_refresh_token_is_rejected():
    token = jwt.encode({"userId": "user-1", "type": "refresh"}, SECRET, algorithm="HS256")
    with pytest.raises(AuthError, match="type"):
        TokenVerifier(SECRET).verify(token)


def test_sub_claim_is_accepted_as_user_id():
    token = jwt.encode({"sub": "user-9"}, SECRET, algorithm="HS256")
    identity = _resolve(header=f"Bearer {token}", verifier=TokenVerifier(SECRET))
    assert identity.user_id == "user-9"
    assert identity.tier == "free"
    assert identity.kind == KIND_USER
    assert identity.bypasses_accounting is False


def test_missing_credential_yields_guest():
    identity = _resolve()
    assert identity.user_id.startswith("guest-")
    assert identity.tier == "free"
    assert identity.kind == KIND_GUEST
    assert identity.bypasses_accounting is True
    assert _resolve().user_id != identity.user_id


def test_test_mode_requires_permission():
    assert _resolve(test_mode=True).kind == KIND_GUEST
    identity = _resolve(test_mode=True, allow_test_mode=True)
    assert identity.kind == KIND_TEST
    assert identity.tier == "premium"
    assert identity.user_id.startswith("test-user-")


def test_header_token_takes_precedence_over_query():
    verifier = TokenVerifier(SECRET)
    identity = _resolve(
        header=f"Bearer {verifier.issue('from-header', 'basic')}",
        query_token=verifier.issue("from-query"),
        verifier=verifier,
    )
    assert identity.user_id == "from-header"
    assert identity.tier == "basic"


def test_query_token_and_bad_token():
    verifier = TokenVerifier(SECRET)
    assert _resolve(query_token=verifier.issue("q-user"), verifier=verifier).user_id == "q-user"
    with pytest.raises(AuthError):
        _resolve(query_token="not-a-jwt", verifier=verifier)
    with pytest.raises(AuthError):
        _resolve(query_token="anything", verifier=None)
