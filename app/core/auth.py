import hashlib
import logging
import time
import uuid as uuid_lib
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
import httpx
from jose import jwt, jwk
from jose.exceptions import JWTError, JWKError, ExpiredSignatureError, JWTClaimsError

from app.core.config import settings
from app.core.errors import UNAUTHORIZED, QueryError
from app.core.timeutil import utcnow
from app.db.session import get_db
from app.models.api_key import ApiKey

logger = logging.getLogger(__name__)

# Bearer scheme; missing header is handled here so API keys can be used instead
security = HTTPBearer(auto_error=False)

# JWKS cache with TTL
_jwks_cache: Optional[Dict[str, Any]] = None
_jwks_cache_time: float = 0
JWKS_CACHE_TTL = 600  # 10 minutes in seconds

SUPPORTED_ALGORITHMS = ["ES256", "RS256"]


class BusinessPrincipal(BaseModel):
    """The tenant a request acts for, as resolved from its credentials."""
    business_id: uuid_lib.UUID
    permissions: list[str] = Field(default_factory=list)
    rate_limit_key: str
    auth_method: str  # "api_key" | "jwt"

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions or "*" in self.permissions


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def fetch_jwks() -> Dict[str, Any]:
    """
    Fetch JWKS from the Supabase endpoint, cached for JWKS_CACHE_TTL seconds.

    Raises:
        HTTPException: 503 if JWKS cannot be fetched and nothing is cached
    """
    global _jwks_cache, _jwks_cache_time

    current_time = time.time()
    if _jwks_cache is not None and (current_time - _jwks_cache_time) < JWKS_CACHE_TTL:
        logger.debug("Using cached JWKS")
        return _jwks_cache

    try:
        logger.info("Fetching JWKS from %s", settings.supabase_jwks_url)
        response = httpx.get(settings.supabase_jwks_url, timeout=10.0)
        response.raise_for_status()
        jwks_data = response.json()

        if not isinstance(jwks_data, dict) or "keys" not in jwks_data:
            raise ValueError("Invalid JWKS structure: missing 'keys' field")

        _jwks_cache = jwks_data
        _jwks_cache_time = current_time
        logger.info("JWKS fetched successfully, %s keys found", len(jwks_data.get("keys", [])))
        return jwks_data

    except (httpx.HTTPError, ValueError) as e:
        logger.error("Failed to fetch JWKS: %s", e)
        # If we have cached data, use it even if expired
        if _jwks_cache is not None:
            logger.warning("Using expired JWKS cache due to fetch failure")
            return _jwks_cache
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to verify token: JWKS endpoint unavailable"
        )


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Dict[str, Any]:
    """
    Find the JWK matching the token's `kid` header.

    Raises:
        QueryError(UNAUTHORIZED): kid missing or unknown
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        logger.warning("Malformed token header: %s", e)
        raise QueryError(UNAUTHORIZED, "Token verification failed")

    kid = unverified_header.get("kid")
    if not kid:
        logger.warning("Token missing 'kid' in header")
        raise QueryError(UNAUTHORIZED, "Token verification failed")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    logger.warning("Key ID '%s' not found in JWKS", kid)
    raise QueryError(UNAUTHORIZED, "Token verification failed")


def verify_supabase_token(token: str) -> dict:
    """
    Verify a Supabase JWT (signature, audience, issuer, expiry) and return its claims.

    Raises:
        QueryError(UNAUTHORIZED): verification failed
        HTTPException: 503 when JWKS is unavailable
    """
    jwks = fetch_jwks()
    jwk_key = get_signing_key(token, jwks)

    try:
        key = jwk.construct(jwk_key)
    except JWKError as e:
        logger.error("Failed to construct key from JWK: %s", e)
        raise QueryError(UNAUTHORIZED, "Token verification failed")

    header_alg = jwt.get_unverified_header(token).get("alg")
    jwk_alg = jwk_key.get("alg")
    if header_alg and jwk_alg and header_alg != jwk_alg:
        logger.warning("Algorithm mismatch: header=%s, JWK=%s", header_alg, jwk_alg)
        raise QueryError(UNAUTHORIZED, "Token verification failed")

    algorithm = header_alg or jwk_alg or "ES256"
    if algorithm not in SUPPORTED_ALGORITHMS:
        logger.warning("Unsupported algorithm: %s", algorithm)
        raise QueryError(UNAUTHORIZED, "Token verification failed")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=SUPPORTED_ALGORITHMS,
            audience=settings.supabase_jwt_audience,
            issuer=settings.supabase_issuer,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_iss": True,
                "verify_exp": True,
            }
        )
    except ExpiredSignatureError:
        logger.warning("Token has expired")
        raise QueryError(UNAUTHORIZED, "Token has expired")
    except JWTClaimsError as e:
        logger.warning("Token claims validation failed: %s", e)
        raise QueryError(UNAUTHORIZED, "Token verification failed")
    except JWTError as e:
        logger.warning("JWT verification error: %s", e)
        raise QueryError(UNAUTHORIZED, "Token verification failed")


def _business_id_from_claims(claims: dict) -> uuid_lib.UUID:
    raw = claims.get("business_id") or (claims.get("app_metadata") or {}).get("business_id")
    if not raw:
        logger.warning("Token for sub=%s has no business_id claim", claims.get("sub"))
        raise QueryError(UNAUTHORIZED, "Token is not scoped to a business")
    try:
        return uuid_lib.UUID(str(raw))
    except (ValueError, TypeError):
        logger.warning("Invalid business_id claim: %r", raw)
        raise QueryError(UNAUTHORIZED, "Token is not scoped to a business")


def _principal_from_api_key(db: Session, raw_key: str) -> BusinessPrincipal:
    api_key = (
        db.query(ApiKey)
        .filter(ApiKey.key_hash == hash_api_key(raw_key), ApiKey.is_active.is_(True))
        .first()
    )
    if api_key is None:
        logger.warning("Rejected unknown or inactive API key")
        raise QueryError(UNAUTHORIZED, "Invalid API key")

    api_key.last_used_at = utcnow()
    db.commit()
    return BusinessPrincipal(
        business_id=api_key.business_id,
        permissions=list(api_key.permissions or []),
        rate_limit_key=f"key:{api_key.id}",
        auth_method="api_key",
    )


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_business_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db)
) -> BusinessPrincipal:
    """
    Resolve the calling business from an API key header or a bearer JWT.

    The API key wins when both are sent.

    Raises:
        QueryError(UNAUTHORIZED): no credentials, or they do not verify
    """
    raw_key = request.headers.get(settings.api_key_header)
    if raw_key:
        return _principal_from_api_key(db, raw_key)

    if not credentials or not credentials.credentials:
        raise QueryError(UNAUTHORIZED, "Missing API key or bearer token")

    claims = verify_supabase_token(credentials.credentials)
    business_id = _business_id_from_claims(claims)
    permissions = claims.get("permissions") or []
    logger.info("Authenticated sub=%s for business_id=%s", claims.get("sub"), business_id)
    return BusinessPrincipal(
        business_id=business_id,
        permissions=list(permissions) if isinstance(permissions, (list, tuple)) else [],
        rate_limit_key=f"ip:{client_ip(request)}",
        auth_method="jwt",
    )


def require_permission(principal: BusinessPrincipal, permission: str) -> None:
    if not principal.has_permission(permission):
        logger.warning("business_id=%s lacks permission %s", principal.business_id, permission)
        raise QueryError(UNAUTHORIZED, f"Missing permission: {permission}")
