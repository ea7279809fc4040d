"""Tests for the persisted security policy and parameter encryption."""

import json

import pytest
from cryptography.fernet import Fernet

from security_module.encryption import ENCRYPTED_PREFIX, ParameterEncryption
from security_module.policy import POLICY_KEY, SecurityPolicyStore


@pytest.mark.unit
class TestSecurityPolicyStore:
    """Blocked by default, persisted on change."""

    @pytest.mark.asyncio
    async def test_missing_file_is_created_blocked(self, tmp_path):
        """Test that first use writes allowLocalAddresses=false."""
        # Arrange
        path = tmp_path / "security.json"
        store = SecurityPolicyStore(path)

        # Act
        allowed = await store.load()

        # Assert
        assert allowed is False
        assert json.loads(path.read_text()) == {POLICY_KEY: False}

    @pytest.mark.asyncio
    async def test_change_survives_reload(self, tmp_path):
        """Test that set_allow_local_addresses persists the flag."""
        path = tmp_path / "security.json"
        store = SecurityPolicyStore(path)
        await store.load()

        await store.set_allow_local_addresses(True)
        reloaded = SecurityPolicyStore(path)

        assert store.allow_local_addresses is True
        assert await reloaded.load() is True

    @pytest.mark.asyncio
    async def test_legacy_key_is_read(self, tmp_path):
        """Test that records written with the old key name still load."""
        path = tmp_path / "security.json"
        path.write_text('{"allowLocalIPs": true}')

        assert await SecurityPolicyStore(path).load() is True

    @pytest.mark.asyncio
    async def test_corrupt_file_falls_back_to_blocked(self, tmp_path):
        """Test that an unreadable policy keeps local addresses blocked."""
        path = tmp_path / "security.json"
        path.write_text("{not json")

        assert await SecurityPolicyStore(path).load() is False


@pytest.mark.unit
class TestParameterEncryption:
    """Secret parameters encrypted at rest."""

    def test_only_secret_parameters_are_encrypted(self):
        """Test that hosts and ports stay readable while secrets are encrypted."""
        # Arrange
        encryption = ParameterEncryption(Fernet.generate_key().decode())
        parameters = {"host": "ftp.example.com", "port": 21, "password": "hunter2", "refresh_token": ""}

        # Act
        encrypted = encryption.encrypt_parameters(parameters)

        # Assert
        assert encrypted["host"] == "ftp.example.com"
        assert encrypted["port"] == 21
        assert encrypted["password"].startswith(ENCRYPTED_PREFIX)
        assert encrypted["refresh_token"] == ""
        assert encryption.decrypt_parameters(encrypted) == parameters

    def test_encrypting_twice_is_stable(self):
        """Test that already-encrypted values are not wrapped again."""
        encryption = ParameterEncryption(Fernet.generate_key().decode())
        once = encryption.encrypt_parameters({"secret_key": "abc"})

        assert encryption.encrypt_parameters(once) == once

    def test_old_key_decrypts_during_rotation(self):
        """Test that values written with the previous key remain readable."""
        old_key = Fernet.generate_key().decode()
        stored = ParameterEncryption(old_key).encrypt_parameters({"password": "pw"})

        rotated = ParameterEncryption(Fernet.generate_key().decode(), old_key=old_key)

        assert rotated.decrypt_parameters(stored) == {"password": "pw"}

    def test_wrong_key_raises_value_error(self):
        """Test that undecryptable values are reported, not returned garbled."""
        stored = ParameterEncryption(Fernet.generate_key().decode()).encrypt_parameters({"password": "pw"})

        with pytest.raises(ValueError):
            ParameterEncryption(Fernet.generate_key().decode()).decrypt_parameters(stored)

    def test_no_key_means_no_encryption(self, settings):
        """Test that from_settings returns None without a configured key."""
        assert ParameterEncryption.from_settings(settings.security) is None
