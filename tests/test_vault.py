"""Tests for TokenVault decryption rules and metadata convergence."""

import pytest

from connectors.errors import MissingEncryptionMetadataError, TokenDecryptionError
from connectors.metadata import ALL_KINDS, storage_key
from connectors.models import Connector, ProviderId


class TestDecryptAccessToken:
    @pytest.mark.asyncio
    async def test_uses_iv_from_record(self, make_connector, vault):
        connector = await make_connector(access_token="plain-access")
        assert await vault.decrypt_access_token(connector) == "plain-access"

    @pytest.mark.asyncio
    async def test_falls_back_to_side_store_iv(self, make_connector, vault):
        connector = await make_connector(access_token="plain-access")
        connector.token_iv = None
        assert await vault.decrypt_access_token(connector) == "plain-access"

    @pytest.mark.asyncio
    async def test_missing_iv_everywhere(self, make_connector, vault, metadata_store):
        connector = await make_connector()
        connector.token_iv = None
        await metadata_store.delete(storage_key(connector.id, "iv"))

        with pytest.raises(MissingEncryptionMetadataError) as info:
            await vault.decrypt_access_token(connector)
        assert info.value.missing_key == f"connector-{connector.id}-iv"

    @pytest.mark.asyncio
    async def test_no_ciphertext(self, vault):
        connector = Connector(provider=ProviderId.GMAIL)
        with pytest.raises(TokenDecryptionError):
            await vault.decrypt_access_token(connector)

    @pytest.mark.asyncio
    async def test_corrupt_ciphertext(self, make_connector, vault):
        connector = await make_connector()
        connector.encrypted_token = connector.encrypted_token[::-1]
        with pytest.raises(TokenDecryptionError):
            await vault.decrypt_access_token(connector)


class TestDecryptRefreshToken:
    @pytest.mark.asyncio
    async def test_reads_refresh_token(self, make_connector, vault):
        connector = await make_connector(refresh_token="plain-refresh")
        assert await vault.decrypt_refresh_token(connector) == "plain-refresh"

    @pytest.mark.asyncio
    async def test_none_without_refresh_token(self, make_connector, vault):
        connector = await make_connector(refresh_token=None)
        assert await vault.decrypt_refresh_token(connector) is None

    @pytest.mark.asyncio
    async def test_side_store_refresh_iv(self, make_connector, vault):
        connector = await make_connector(refresh_token="plain-refresh")
        connector.refresh_token_iv = None
        assert await vault.decrypt_refresh_token(connector) == "plain-refresh"

    @pytest.mark.asyncio
    async def test_shared_iv_and_salt_fallback(self, store, vault, cipher, metadata_store):
        # refresh token written with the access token's metadata only
        encrypted = cipher.encrypt("shared-refresh")
        connector = Connector(
            provider=ProviderId.GMAIL,
            encrypted_token="unused",
            encrypted_refresh_token=encrypted.ciphertext,
            token_iv=encrypted.iv,
        )
        await store.save(connector)
        await metadata_store.set(storage_key(connector.id, "salt"), encrypted.salt)

        assert await vault.decrypt_refresh_token(connector) == "shared-refresh"

    @pytest.mark.asyncio
    async def test_unreadable_refresh_token_is_soft_failure(self, make_connector, vault):
        connector = await make_connector()
        connector.encrypted_refresh_token = "garbage"
        assert await vault.decrypt_refresh_token(connector) is None


class TestMetadata:
    @pytest.mark.asyncio
    async def test_store_metadata_updates_record_and_side_store(self, store, vault, metadata_store):
        connector = await store.save(Connector(provider=ProviderId.DROPBOX))

        await vault.store_metadata(connector.id, "iv-a", "salt-a")
        await vault.store_metadata(connector.id, "iv-r", "salt-r", is_refresh=True)

        record = await store.get(connector.id)
        assert record.token_iv == "iv-a"
        assert record.refresh_token_iv == "iv-r"
        assert await metadata_store.get(f"connector-{connector.id}-iv") == "iv-a"
        assert await metadata_store.get(f"connector-{connector.id}-salt") == "salt-a"
        assert await metadata_store.get(f"connector-{connector.id}-refresh-iv") == "iv-r"
        assert await metadata_store.get(f"connector-{connector.id}-refresh-salt") == "salt-r"

    @pytest.mark.asyncio
    async def test_clear_metadata_removes_all_keys(self, make_connector, vault, metadata_store):
        connector = await make_connector()
        await vault.clear_metadata(connector.id)
        for kind in ALL_KINDS:
            assert await metadata_store.get(storage_key(connector.id, kind)) is None

    def test_storage_key_rejects_unknown_kind(self):
        with pytest.raises(ValueError):
            storage_key("abc", "tag")
