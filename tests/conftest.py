import os

# Settings are read at import time; point them at the SQLite test database.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")

import math
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from types import SimpleNamespace
from unittest.mock import patch
from datetime import datetime, timedelta, timezone
import jwt as pyjwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.backends import default_backend
import base64

from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.core.config import settings
from app.core.container import build_container, get_container
from app.models.business import Business
from app.models.embedding import EMBEDDING_DIMENSIONS, Embedding
from app.seed.seed_data import PIZZA_PALACE_API_KEY, seed_db
from app.services.gemini_client import LLMServiceError
from sqlalchemy import event


# SQLite file database shared by the test sessions and the background dispatcher
SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)

# Override JSONB type compilation for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Set SQLite pragmas and override JSONB handling."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")

# Monkey-patch JSONB to work with SQLite
import sqlalchemy.dialects.sqlite.base as sqlite_base
original_visit_JSONB = getattr(sqlite_base.SQLiteTypeCompiler, 'visit_JSONB', None)
if not original_visit_JSONB:
    def visit_JSONB(self, type_, **kw):
        return "JSON"
    sqlite_base.SQLiteTypeCompiler.visit_JSONB = visit_JSONB

# Monkey-patch postgresql.UUID to work with SQLite (store as CHAR(36))
if not getattr(sqlite_base.SQLiteTypeCompiler, 'visit_UUID', None):
    def visit_UUID(self, type_, **kw):
        return "CHAR(36)"
    sqlite_base.SQLiteTypeCompiler.visit_UUID = visit_UUID

# pgvector's Vector compiles to VECTOR(n) and is stored as its text form ("[0.1,...]");
# vector search scores rows with numpy on non-PostgreSQL dialects.

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# --- Vectors ---

def unit_vector(index: int = 0) -> list[float]:
    vector = [0.0] * EMBEDDING_DIMENSIONS
    vector[index] = 1.0
    return vector


def vector_with_similarity(similarity: float) -> list[float]:
    """A vector whose cosine similarity to unit_vector(0) is `similarity`."""
    vector = [0.0] * EMBEDDING_DIMENSIONS
    vector[0] = similarity
    vector[1] = math.sqrt(max(0.0, 1 - similarity ** 2))
    return vector


def add_embedding(db, business, content_type, content_id, content, vector, title=None, **metadata):
    row = Embedding(
        business_id=business.id,
        content_type=content_type,
        content_id=content_id,
        content=content,
        embedding=vector,
        metadata_={**metadata, **({"title": title} if title else {})},
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# --- Fake Gemini ---

def _usage(prompt_tokens, completion_tokens):
    return SimpleNamespace(
        prompt_token_count=prompt_tokens,
        candidates_token_count=completion_tokens,
        total_token_count=prompt_tokens + completion_tokens,
    )


def _candidates(finish_reason):
    return [SimpleNamespace(finish_reason=SimpleNamespace(name=finish_reason))]


class FakeGemini:
    """Stands in for GeminiClient: canned replies, fixed query embedding, recorded calls."""

    model = "gemini-test"

    def __init__(self):
        self.reply = "Thanks for asking! We are happy to help with that."
        self.stream_chunks = ["Thanks for asking! ", "We are happy ", "to help with that."]
        self.finish_reason = "STOP"
        self.prompt_tokens = 120
        self.completion_tokens = 30
        self.query_vector = unit_vector(0)
        self.generate_error = None
        self.stream_error = None
        self.embed_error = None
        self.generate_calls = []
        self.stream_calls = []
        self.embed_calls = []
        self.stream_closed = False

    async def generate(self, contents, system_instruction):
        self.generate_calls.append((contents, system_instruction))
        if self.generate_error is not None:
            raise self.generate_error
        return SimpleNamespace(
            text=self.reply,
            usage_metadata=_usage(self.prompt_tokens, self.completion_tokens),
            candidates=_candidates(self.finish_reason),
        )

    async def stream(self, contents, system_instruction):
        self.stream_calls.append((contents, system_instruction))
        try:
            for index, text in enumerate(self.stream_chunks):
                if self.stream_error is not None and index == 1:
                    raise self.stream_error
                yield SimpleNamespace(text=text, usage_metadata=None, candidates=None)
            if self.stream_error is not None and len(self.stream_chunks) < 2:
                raise self.stream_error
            yield SimpleNamespace(
                text="",
                usage_metadata=_usage(self.prompt_tokens, self.completion_tokens),
                candidates=_candidates(self.finish_reason),
            )
        finally:
            self.stream_closed = True

    async def embed(self, text, dimensions):
        self.embed_calls.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return list(self.query_vector)


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
def failing_gemini(fake_gemini):
    """Gemini whose generation and streaming always fail."""
    fake_gemini.generate_error = LLMServiceError("The AI service is temporarily unavailable")
    fake_gemini.stream_error = LLMServiceError("The AI service is temporarily unavailable")
    return fake_gemini


@pytest.fixture(scope="function")
def container(fake_gemini):
    """Services wired to the test database and the fake Gemini."""
    return build_container(settings, session_factory=TestingSessionLocal, gemini=fake_gemini)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


def _override(db, container):
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container] = lambda: container


@pytest.fixture(scope="function")
def client(db_session, container):
    """Create a test client with database and service container overrides."""
    _override(db_session, container)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def seeded_db(db_session):
    """Create a database session with seeded data."""
    seed_db(db_session)
    return db_session


@pytest.fixture(scope="function")
def seeded_client(seeded_db, container):
    """Create a test client with seeded database."""
    _override(seeded_db, container)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def pizza_palace(seeded_db):
    return seeded_db.query(Business).filter(Business.name == "Pizza Palace").one()


@pytest.fixture
def api_headers():
    return {"X-API-Key": PIZZA_PALACE_API_KEY}


@pytest.fixture
def margherita(seeded_db, pizza_palace):
    """Margherita Pizza menu embedding at similarity 0.85 to the fake query vector."""
    return add_embedding(
        seeded_db,
        pizza_palace,
        "MENU_ITEM",
        "margherita",
        "Margherita Pizza - fresh mozzarella, tomato sauce and basil. $14.99",
        vector_with_similarity(0.85),
        title="Margherita Pizza",
        price=14.99,
    )


# Test JWT key pair (generated once)
_test_private_key = rsa.generate_private_key(
    public_exponent=65537,
    key_size=2048,
    backend=default_backend()
)
_test_public_key = _test_private_key.public_key()


def _create_test_jwks(public_key, kid="test-key-id"):
    """Create a test JWKS structure from a public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64url(n):
        byte_length = (n.bit_length() + 7) // 8
        n_bytes = n.to_bytes(byte_length, 'big')
        b64 = base64.urlsafe_b64encode(n_bytes).decode('utf-8')
        return b64.rstrip('=')

    n = int_to_base64url(public_numbers.n)
    e = int_to_base64url(public_numbers.e)

    return {
        "keys": [
            {
                "kty": "RSA",
                "kid": kid,
                "use": "sig",
                "alg": "RS256",
                "n": n,
                "e": e
            }
        ]
    }


def _create_test_token(
    private_key,
    sub="test-user-123",
    email="test@example.com",
    exp=None,
    aud=None,
    iss=None,
    kid="test-key-id",
    **extra_claims
):
    """Create a test JWT token with the given claims."""
    if exp is None:
        exp = int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp())

    if aud is None:
        aud = settings.supabase_jwt_audience

    if iss is None:
        iss = settings.supabase_issuer

    claims = {
        "sub": sub,
        "email": email,
        "aud": aud,
        "iss": iss,
        "exp": exp,
        "iat": int(datetime.now(timezone.utc).timestamp()),
        **extra_claims,
    }

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8')

    headers = {"kid": kid, "alg": "RS256", "typ": "JWT"}

    return pyjwt.encode(claims, private_pem, algorithm="RS256", headers=headers)


TEST_SUPABASE_UID_1 = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def mock_jwks():
    """Fixture that mocks JWKS so JWT verification uses the test key."""
    test_jwks = _create_test_jwks(_test_public_key)
    with patch("app.core.auth.fetch_jwks", return_value=test_jwks):
        yield test_jwks


@pytest.fixture
def create_test_token():
    """Fixture that provides a function to create test JWT tokens; pass business_id=... to scope them."""
    def _create(sub=TEST_SUPABASE_UID_1, email="test@example.com", **kwargs):
        return _create_test_token(_test_private_key, sub=sub, email=email, **kwargs)
    return _create
