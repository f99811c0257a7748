import os
import tempfile

# config is read at import time
_TMP = tempfile.mkdtemp(prefix="ticketmint-tests-")
os.environ["ORDER_BACKEND"] = "sql"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/orders.db"
os.environ["PAYTR_ENV"] = "test"
os.environ["PAYTR_MERCHANT_KEY"] = "test-merchant-key"
os.environ["PAYTR_MERCHANT_SALT"] = "test-merchant-salt"
os.environ["PAYTR_MERCHANT_ID"] = "123456"
os.environ["GATE_OPERATOR_KEY"] = "operator-secret"
os.environ["AUDIT_DEBUG_ENABLED"] = "true"
os.environ["DEV_ENDPOINTS_ENABLED"] = "true"
os.environ["PAYMENT_WEBHOOK_URL"] = ""
os.environ["CHAIN_ID"] = "31337"
os.environ["LOG_LEVEL"] = "WARNING"

import httpx
import pytest
import pytest_asyncio

from ticketmint import audit, server
from ticketmint.infra import timings
from ticketmint.infra.sql import make_async_engine
from ticketmint.model.orderstore import new_store
from ticketmint.model.orderstore._sql import create_schema
from tests.helpers import FakeChainClient


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest_asyncio.fixture
async def sql_handle(tmp_path):
    # fresh engine (and DB gate) per test loop
    handle = make_async_engine(f"sqlite:///{tmp_path}/orders.db")
    async with handle.engine.begin() as conn:
        await create_schema(conn)
    try:
        yield handle
    finally:
        await handle.engine.dispose()


@pytest_asyncio.fixture
async def store(sql_handle):
    return new_store(sql=sql_handle)


@pytest.fixture(autouse=True)
def clean_process_state():
    for limiter in (server.intent_limiter, server.purchase_limiter,
                    server.claim_limiter, server.gate_ip_limiter,
                    server.gate_token_limiter):
        limiter.reset()
    audit.reset()
    timings.reset()
    yield


@pytest_asyncio.fixture
async def client(store, chain):
    server.app.dependency_overrides[server.order_store] = lambda: store
    server.app.state.chain = chain
    transport = httpx.ASGITransport(app=server.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        server.app.dependency_overrides.clear()
        server.app.state.chain = None
