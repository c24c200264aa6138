"""Tests for the SQLAlchemy stores against a file-backed SQLite database."""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import ConnectorNotFoundError
from connectors.models import Connector, ConnectorStatus, ConnectorSyncState, ProviderId, utcnow
from connectors.vault import TokenVault
from database.session import build_engine, init_db
from database.stores import SqlConnectorStore, SqlMetadataStore


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/connectors.db", echo=False)
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlConnectorStore(session_factory)


@pytest.fixture
def sql_metadata(session_factory):
    return SqlMetadataStore(session_factory)


def _connector(**fields):
    defaults = dict(
        provider=ProviderId.DROPBOX,
        name="lin@example.com",
        encrypted_token="cipher",
        token_iv="iv",
        scopes=["files.content.read"],
        account_id="dbid:1",
    )
    defaults.update(fields)
    return Connector(**defaults)


class TestSqlConnectorStore:
    @pytest.mark.asyncio
    async def test_save_and_get(self, sql_store):
        connector = _connector(sync_folders=["/Projects"], token_expires_at=utcnow() + timedelta(hours=1))
        await sql_store.save(connector)

        loaded = await sql_store.get(connector.id)

        assert loaded.provider == ProviderId.DROPBOX
        assert loaded.scopes == ["files.content.read"]
        assert loaded.sync_folders == ["/Projects"]
        assert loaded.token_expires_at.tzinfo is not None
        assert abs((loaded.token_expires_at - connector.token_expires_at).total_seconds()) < 1

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_store):
        assert await sql_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_in_creation_order(self, sql_store):
        first = _connector(created_at=utcnow() - timedelta(minutes=5))
        second = _connector(provider=ProviderId.NOTION)
        await sql_store.save(second)
        await sql_store.save(first)

        assert [c.id for c in await sql_store.list()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_update_coerces_enums(self, sql_store):
        connector = await sql_store.save(_connector())

        updated = await sql_store.update(connector.id, status="expired", error_message="Please reconnect")

        assert updated.status == ConnectorStatus.EXPIRED
        reloaded = await sql_store.get(connector.id)
        assert reloaded.is_expired
        assert reloaded.error_message == "Please reconnect"
        assert reloaded.updated_at >= connector.updated_at

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, sql_store):
        with pytest.raises(ConnectorNotFoundError):
            await sql_store.update("missing", name="x")

    @pytest.mark.asyncio
    async def test_delete_removes_sync_state(self, sql_store):
        connector = await sql_store.save(_connector())
        await sql_store.save_sync_state(ConnectorSyncState(connector_id=connector.id, cursor="c1"))

        assert await sql_store.delete(connector.id) is True
        assert await sql_store.get(connector.id) is None
        assert await sql_store.get_sync_state(connector.id) is None
        assert await sql_store.delete(connector.id) is False


class TestSyncState:
    @pytest.mark.asyncio
    async def test_save_overwrites(self, sql_store):
        connector = await sql_store.save(_connector())
        await sql_store.save_sync_state(ConnectorSyncState(connector_id=connector.id, cursor="c1"))
        await sql_store.save_sync_state(
            ConnectorSyncState(
                connector_id=connector.id,
                cursor="c2",
                last_sync_at=utcnow(),
                items_synced=7,
                sync_type="delta",
            )
        )

        state = await sql_store.get_sync_state(connector.id)

        assert state.cursor == "c2"
        assert state.items_synced == 7
        assert state.sync_type == "delta"
        assert state.last_sync_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_delete_sync_state(self, sql_store):
        connector = await sql_store.save(_connector())
        await sql_store.save_sync_state(ConnectorSyncState(connector_id=connector.id, cursor="c1"))

        await sql_store.delete_sync_state(connector.id)

        assert await sql_store.get_sync_state(connector.id) is None


class TestSqlMetadataStore:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, sql_metadata):
        await sql_metadata.set("connector-1-iv", "a")
        await sql_metadata.set("connector-1-iv", "b")
        assert await sql_metadata.get("connector-1-iv") == "b"

        await sql_metadata.delete("connector-1-iv")
        assert await sql_metadata.get("connector-1-iv") is None

    @pytest.mark.asyncio
    async def test_vault_roundtrip_on_sql_stores(self, sql_store, sql_metadata, cipher):
        vault = TokenVault(cipher, sql_metadata, sql_store)
        encrypted = await vault.encrypt_token("sl.access-token")
        connector = await sql_store.save(_connector(encrypted_token=encrypted.ciphertext, token_iv=None))
        await vault.store_metadata(connector.id, encrypted.iv, encrypted.salt)

        stored = await sql_store.get(connector.id)

        assert stored.token_iv == encrypted.iv
        assert await vault.decrypt_access_token(stored) == "sl.access-token"
