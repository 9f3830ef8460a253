"""
Test configuration for fortunebot tests.

No external services are needed:
  - the Session Store runs against a throwaway aiosqlite database per test
  - the generation backend and the LINE responder are replaced by in-process fakes
  - guards use the in-memory implementations

Run from the repository root: pytest -v
"""
from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import fortunebot.models  # noqa: F401  registers tables on Base.metadata
from fortunebot.cache import InMemoryIdempotencyGuard, InMemoryRateLimiter
from fortunebot.config import Settings
from fortunebot.conversation.state_machine import ConversationMachine
from fortunebot.database import Base
from fortunebot.store import SessionStore
from fortunebot.tests.fakes import FakeGenerator, FakeResponder


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        line_channel_secret="test-channel-secret",
        line_channel_access_token="test-access-token",
        mistral_api_key="test-key",
        use_redis=False,
        starting_credits=2,
        max_input_errors=2,
        followup_delay_seconds=600,
        purchase_url="https://pay.example.com/checkout",
        share_url="https://example.com/share",
        payment_webhook_secret="",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed aiosqlite database so concurrent sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fortunebot-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory, test_settings: Settings) -> SessionStore:
    return SessionStore(session_factory, test_settings.starting_credits)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def machine(store, generator, responder, test_settings) -> ConversationMachine:
    return ConversationMachine(
        store,
        generator,
        responder,
        InMemoryIdempotencyGuard(ttl_seconds=3600),
        InMemoryRateLimiter(max_events=100, window_seconds=60),
        test_settings,
    )
