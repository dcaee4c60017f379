from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.image_generation import GeneratedImage, ImageGenerationError, get_image_generator


class FakeImageGenerator:
    """Records calls; fails while ``fail_with`` is set."""

    def __init__(self):
        self.calls: List[dict] = []
        self.fail_with: Optional[str] = None

    async def generate(self, *, image_data, image_type, prompt, style):
        self.calls.append({"image_type": image_type, "prompt": prompt, "style": style})
        if self.fail_with:
            raise ImageGenerationError(self.fail_with)
        return GeneratedImage(image_url=f"https://images.test/{len(self.calls)}.png", text=style)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory flood-guard state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credit_engine.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest.fixture
def image_generator():
    return FakeImageGenerator()


@pytest_asyncio.fixture
async def api_client(session_maker, image_generator):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_image_generator] = lambda: image_generator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_image_generator, None)
