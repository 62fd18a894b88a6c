import io
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from PIL import Image
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Test environment: SQLite, in-process storage, canned AI responses
os.environ["TESTING"] = "true"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["AI_PROVIDER"] = "mock"
os.environ["STORAGE_PROVIDER"] = "mock"
os.environ["S3_PUBLIC_URL"] = "http://storage.test/roast-me"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["POLAR_WEBHOOK_SECRET"] = "polar_test_secret"
os.environ["IDENTITY_TOKEN_SECRET"] = "identity_test_secret"

from roastme.main import app
from roastme.core.database import Base, get_db
from roastme.core.rate_limit import check_rate_limit
from roastme.models.db import Character, User
from roastme.services import storage


TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    storage._mock_objects.clear()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Test client sharing the test session; rate limiting disabled."""

    async def override_get_db():
        yield db_session

    async def no_rate_limit():
        return None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[check_rate_limit] = no_rate_limit

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def user_key():
    """Test user key."""
    return "test-user-key-12345678901234567890"


@pytest.fixture
def headers(user_key):
    """Default headers with user key."""
    return {"X-User-Key": user_key}


def make_image(fmt: str = "JPEG", size=(64, 64), color=(200, 120, 90)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG", color=(30, 160, 160))


@pytest.fixture
def analysis_json():
    """Stored FeatureAnalysis as written by the pipeline."""
    return {
        "features": [
            {
                "feature_name": "Eyebrows",
                "feature_value": "Bold, expressive eyebrows",
                "confidence": 9,
                "exaggeration_factor": 8,
            },
            {
                "feature_name": "Smile",
                "feature_value": "Wide grin",
                "confidence": 8,
                "exaggeration_factor": 7,
            },
        ],
        "character_style": "pixar",
        "dominant_color": "teal",
        "personality_traits": ["confident"],
        "gender": "unknown",
        "age_range": "adult",
    }


@pytest.fixture
def roast_json():
    return {
        "title": "Captain Obvious",
        "roast_text": "Those eyebrows arrived a minute before you did.",
        "punchline": "Collect them all.",
        "figurine_name": "Sir Eyebrows-a-lot",
    }


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession):
    async def _make_user(user_id: str, credits: int = 3, plan: str = "free", anonymous: bool = True):
        user = User(
            id=user_id,
            is_anonymous=anonymous,
            credits=credits,
            images_created=0,
            plan=plan,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest_asyncio.fixture
async def make_character(db_session: AsyncSession, jpeg_bytes: bytes):
    """Insert a character (and its stored original) in a given status."""

    async def _make_character(
        character_id: str,
        user_id: str,
        status: str = "failed",
        attempt: int = 0,
        analysis: dict = None,
        roast: dict = None,
        is_public: bool = True,
        **fields,
    ):
        storage._mock_objects[f"uploads/{user_id}/{character_id}.jpg"] = (
            jpeg_bytes,
            "image/jpeg",
        )
        params = {"status": status, "attempt": attempt}
        if status in ("failed", "retry_failed"):
            params["error"] = "Image generation failed after 5 attempts: boom"
        if roast:
            params["roast_content"] = roast

        character = Character(
            id=character_id,
            user_id=user_id,
            original_image_url=storage.public_url(f"uploads/{user_id}/{character_id}.jpg"),
            generation_params=params,
            status=status,
            ai_features_json=analysis,
            is_public=is_public,
            view_count=0,
            like_count=0,
            **fields,
        )
        db_session.add(character)
        await db_session.commit()
        return character

    return _make_character
