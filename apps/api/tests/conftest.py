from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services.background import wait_for_background_tasks


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def offline_ai_provider():
    """Force the deterministic local fallbacks instead of real OpenAI calls."""
    with (
        patch.object(settings, "OPENAI_API_KEY", "test-key"),
        patch.object(settings, "BACKGROUND_ANALYSIS_MODE", "inline"),
    ):
        yield


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "techpack.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with (
        patch("services.background.async_session_maker", maker),
        patch("services.image_analysis.async_session_maker", maker),
        patch("services.analysis_queue.async_session_maker", maker),
    ):
        yield maker
        await wait_for_background_tasks(timeout=5)

    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)
