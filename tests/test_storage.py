import pytest
import pytest_asyncio

from cryptotracker.database import build_engine, build_session_factory, create_tables
from cryptotracker.services.storage import MemoryKeyValueStore, SQLKeyValueStore


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/kv.db")
    await create_tables(engine)
    yield SQLKeyValueStore(build_session_factory(engine))
    await engine.dispose()


@pytest.mark.asyncio
async def test_sql_store_crud(sql_store):
    assert await sql_store.get("missing") is None

    assert await sql_store.set("pl_snapshot_data_v2", '{"a": 1}')
    assert await sql_store.set("pl_snapshot_data_v2", '{"a": 2}')
    assert await sql_store.set("local_transactions:alice", "[]")

    assert await sql_store.get("pl_snapshot_data_v2") == '{"a": 2}'
    assert await sql_store.keys() == ["local_transactions:alice", "pl_snapshot_data_v2"]

    assert await sql_store.remove("pl_snapshot_data_v2")
    assert not await sql_store.remove("pl_snapshot_data_v2")
    assert await sql_store.keys() == ["local_transactions:alice"]


@pytest.mark.asyncio
async def test_sql_store_json_helpers(sql_store):
    assert await sql_store.set_json("counter", 3)
    assert await sql_store.get_json("counter") == 3
    assert await sql_store.get_json("absent", default=[]) == []


@pytest.mark.asyncio
async def test_undecodable_json_returns_default():
    store = MemoryKeyValueStore({"broken": "{not json"})
    assert await store.get_json("broken", default={}) == {}
