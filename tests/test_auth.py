"""
Tests for business authentication: API keys and Supabase JWTs.
"""
import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
from fastapi import HTTPException

import app.core.auth
from app.core.auth import (
    BusinessPrincipal,
    fetch_jwks,
    hash_api_key,
    require_permission,
    verify_supabase_token,
)
from app.core.errors import QueryError, UNAUTHORIZED
from app.models.api_key import ApiKey
from app.models.business import Business
from app.seed.seed_data import GLOW_SALON_API_KEY, PIZZA_PALACE_API_KEY

USAGE_URL = "/api/v1/analytics/usage"


@pytest.fixture(autouse=True)
def reset_jwks_cache():
    """Reset the module JWKS cache before each test."""
    app.core.auth._jwks_cache = None
    app.core.auth._jwks_cache_time = 0
    yield
    app.core.auth._jwks_cache = None
    app.core.auth._jwks_cache_time = 0


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_verify_valid_token(mock_jwks, create_test_token):
    """Test verification of a valid token."""
    token = create_test_token(sub="user-456", email="user@test.com")

    claims = verify_supabase_token(token)

    assert claims["sub"] == "user-456"
    assert claims["email"] == "user@test.com"


def test_verify_token_missing_kid(mock_jwks, create_test_token):
    """Test that token without kid in header is rejected."""
    token = create_test_token()
    parts = token.split('.')
    header = json.loads(base64.urlsafe_b64decode(parts[0] + '=='))
    header.pop('kid', None)
    header_b64 = base64.urlsafe_b64encode(json.dumps(header).encode('utf-8')).decode('utf-8').rstrip('=')

    with pytest.raises(QueryError) as exc_info:
        verify_supabase_token(f"{header_b64}.{parts[1]}.{parts[2]}")

    assert exc_info.value.code == UNAUTHORIZED


@pytest.mark.parametrize(
    "claims",
    [
        {"iss": "https://wrong-issuer.com/auth/v1"},
        {"aud": "wrong-audience"},
        {"kid": "non-existent-key-id"},
    ],
)
def test_verify_token_rejects_bad_claims(mock_jwks, create_test_token, claims):
    token = create_test_token(**claims)

    with pytest.raises(QueryError) as exc_info:
        verify_supabase_token(token)

    assert exc_info.value.code == UNAUTHORIZED
    assert exc_info.value.message == "Token verification failed"


def test_verify_token_expired(mock_jwks, create_test_token):
    """Test that expired token is rejected."""
    exp = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
    token = create_test_token(exp=exp)

    with pytest.raises(QueryError) as exc_info:
        verify_supabase_token(token)

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Token has expired"


def test_jwks_is_cached():
    jwks = {"keys": [{"kid": "k1"}]}
    response = httpx.Response(200, json=jwks, request=httpx.Request("GET", "https://example.test"))

    with patch("app.core.auth.httpx.get", return_value=response) as mock_get:
        assert fetch_jwks() == jwks
        assert fetch_jwks() == jwks

    assert mock_get.call_count == 1


def test_jwks_outage_without_cache_is_503():
    with patch("app.core.auth.httpx.get", side_effect=httpx.ConnectError("down")):
        with pytest.raises(HTTPException) as exc_info:
            fetch_jwks()

    assert exc_info.value.status_code == 503


def test_jwks_outage_falls_back_to_stale_cache():
    stale = {"keys": [{"kid": "old"}]}
    app.core.auth._jwks_cache = stale
    app.core.auth._jwks_cache_time = 0

    with patch("app.core.auth.httpx.get", side_effect=httpx.ConnectError("down")):
        assert fetch_jwks() == stale


def test_jwt_with_business_claim_authenticates(seeded_client, mock_jwks, create_test_token, pizza_palace):
    token = create_test_token(business_id=str(pizza_palace.id))

    response = seeded_client.get(USAGE_URL, headers=_bearer(token))

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_jwt_business_claim_in_app_metadata(seeded_client, mock_jwks, create_test_token, pizza_palace):
    token = create_test_token(app_metadata={"business_id": str(pizza_palace.id)})

    response = seeded_client.get(USAGE_URL, headers=_bearer(token))

    assert response.status_code == 200


def test_jwt_without_business_claim_is_rejected(seeded_client, mock_jwks, create_test_token):
    response = seeded_client.get(USAGE_URL, headers=_bearer(create_test_token()))

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["error"]["message"] == "Token is not scoped to a business"


def test_expired_jwt_is_rejected(seeded_client, mock_jwks, create_test_token, pizza_palace):
    exp = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
    token = create_test_token(exp=exp, business_id=str(pizza_palace.id))

    response = seeded_client.get(USAGE_URL, headers=_bearer(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Token has expired"


def test_missing_credentials(seeded_client):
    response = seeded_client.get(USAGE_URL)

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Missing API key or bearer token"


def test_api_key_authenticates_and_records_use(seeded_client, seeded_db, pizza_palace):
    response = seeded_client.get(USAGE_URL, headers={"X-API-Key": PIZZA_PALACE_API_KEY})

    assert response.status_code == 200
    seeded_db.expire_all()
    api_key = seeded_db.query(ApiKey).filter(ApiKey.business_id == pizza_palace.id).one()
    assert api_key.last_used_at is not None


def test_invalid_api_key_is_rejected(seeded_client):
    response = seeded_client.get(USAGE_URL, headers={"X-API-Key": "sk_test_not_a_key"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid API key"


def test_inactive_api_key_is_rejected(seeded_client, seeded_db, pizza_palace):
    api_key = seeded_db.query(ApiKey).filter(ApiKey.business_id == pizza_palace.id).one()
    api_key.is_active = False
    seeded_db.commit()

    response = seeded_client.get(USAGE_URL, headers={"X-API-Key": PIZZA_PALACE_API_KEY})

    assert response.status_code == 401


def test_api_key_wins_over_jwt(seeded_client, seeded_db, mock_jwks, create_test_token):
    """A pizza key plus a salon JWT acts for the pizza business with the key's permissions."""
    salon = seeded_db.query(Business).filter(Business.name == "Glow Hair Salon").one()
    headers = {"X-API-Key": PIZZA_PALACE_API_KEY, **_bearer(create_test_token(business_id=str(salon.id)))}

    # the JWT carries no permissions, so only the key can allow a reset
    response = seeded_client.post("/api/v1/analytics/usage/reset", headers=headers)

    assert response.status_code == 200


def test_permission_is_checked_per_key(seeded_client):
    response = seeded_client.post("/api/v1/analytics/usage/reset", headers={"X-API-Key": GLOW_SALON_API_KEY})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Missing permission: usage:reset"


def test_hash_api_key_is_sha256():
    assert hash_api_key("abc") == hashlib.sha256(b"abc").hexdigest()


def test_require_permission():
    principal = BusinessPrincipal(
        business_id="550e8400-e29b-41d4-a716-446655440000",
        permissions=["query"],
        rate_limit_key="key:1",
        auth_method="api_key",
    )
    require_permission(principal, "query")

    with pytest.raises(QueryError) as exc_info:
        require_permission(principal, "usage:reset")
    assert exc_info.value.message == "Missing permission: usage:reset"

    admin = principal.model_copy(update={"permissions": ["*"]})
    require_permission(admin, "usage:reset")
