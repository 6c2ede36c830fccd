import os

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory DB and no FHIR write-back for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["FHIR_WRITEBACK_ENABLED"] = "false"
os.environ["FHIR_BASE_URL"] = "http://fhir.test/r4"

from edcare.database import close_db, init_db
from edcare.main import app


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import edcare.database as db_mod

    if db_mod._db is not None:
        await db_mod._db.close()
    db_mod._db = None

    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for async HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
