"""Pytest fixtures: file-backed sqlite DB, fake provider adapter, client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import itertools
from datetime import datetime
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from mailsync.main import app
from mailsync.database import get_db, get_sync_db
from mailsync.models import Account, Base
from mailsync.providers import FetchResult, ProviderAdapter, ProviderMessage
from mailsync.services.rate_limiter import FixedWindowRateLimiter, MemoryBucketStore, set_rate_limiter


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_urls, db_engine):
    """One connection per session, for tests that run several worker threads."""
    sync_url, _ = db_urls
    engine = create_engine(
        sync_url,
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_grant_ids = itertools.count(1)


@pytest.fixture(autouse=True)
def fake_rate_limiter():
    """In-process buckets and a sleep that only records, so tests never block."""
    sleeps = []
    limiter = FixedWindowRateLimiter(MemoryBucketStore(), sleep=sleeps.append)
    limiter.sleeps = sleeps
    set_rate_limiter(limiter)
    yield limiter
    set_rate_limiter(None)


def make_account(db, **overrides) -> Account:
    values = {
        "user_id": 1,
        "provider": "gmail",
        "email_address": "user@example.com",
        "grant_id": f"grant-{next(_grant_ids)}",
    }
    values.update(overrides)
    account = Account(**values)
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def make_message(provider_message_id: str, **overrides) -> ProviderMessage:
    values = {
        "provider_message_id": provider_message_id,
        "folder": "inbox",
        "subject": f"Subject {provider_message_id}",
        "sender": "Ann <ann@example.com>",
        "message_id": f"<{provider_message_id}@example.com>",
        "received_at": datetime(2026, 1, 1, 12, 0, 0),
    }
    values.update(overrides)
    return ProviderMessage(**values)


class FakeAdapter(ProviderAdapter):
    """
    Serves scripted pages. Each entry of `pages` is a FetchResult or an exception
    to raise; calls are recorded as (account_id, mode, cursor).
    """

    provider = "gmail"

    def __init__(self, pages=None, hydrated: Optional[dict] = None, on_fetch=None):
        self.pages = list(pages or [])
        self.hydrated = hydrated or {}
        self.on_fetch = on_fetch
        self.calls = []
        self.hydrate_calls = []

    def fetch(self, account_id, mode, cursor=None):
        self.calls.append((account_id, mode, cursor))
        if self.on_fetch is not None:
            self.on_fetch(len(self.calls))
        if not self.pages:
            return FetchResult()
        page = self.pages.pop(0)
        if isinstance(page, BaseException):
            raise page
        return page

    def get_messages(self, account_id, message_ids):
        self.hydrate_calls.append(list(message_ids))
        return [self.hydrated[i] for i in message_ids]


@pytest.fixture
def account(db_session):
    return make_account(db_session)


@pytest.fixture
def client(db_urls, db_engine):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)
    SyncSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    def override_get_sync_db():
        session = SyncSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_db] = override_get_sync_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
