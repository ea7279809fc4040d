"""Secret backend parameters at rest (password, keys, OAuth tokens).

Encryption: Fernet (AES-128-CBC + HMAC-SHA256).
Key: SECURITY_ENCRYPTION_KEY; SECURITY_ENCRYPTION_KEY_OLD is accepted for decryption
during key rotation. Without a key, parameters are stored verbatim.
"""

from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from config.settings import SecuritySettings

SECRET_PARAMETERS = frozenset(
    {"password", "secret_key", "access_key", "client_secret", "refresh_token", "access_token"}
)
ENCRYPTED_PREFIX = "enc:"


class ParameterEncryption:
    """Fernet-based parameter encryption with dual-key rotation support."""

    def __init__(self, key: str, old_key: str = "") -> None:
        if not key:
            raise ValueError("Encryption key is not set.")
        self._fernet = Fernet(key.encode())
        self._fernet_old: Fernet | None = Fernet(old_key.encode()) if old_key else None

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> "ParameterEncryption | None":
        if not settings.encryption_key:
            return None
        return cls(settings.encryption_key, settings.encryption_key_old)

    def encrypt_value(self, value: str) -> str:
        return ENCRYPTED_PREFIX + self._fernet.encrypt(value.encode()).decode()

    def decrypt_value(self, value: str) -> str:
        """Decrypt one value. Tries primary key, then old key.

        Raises:
            ValueError: If decryption fails with all available keys.
        """
        token = value[len(ENCRYPTED_PREFIX) :].encode()
        for fernet in self._decryption_keys():
            try:
                return fernet.decrypt(token).decode()
            except InvalidToken:
                continue
        raise ValueError("Parameter could not be decrypted (encryption key may have changed).")

    def encrypt_parameters(self, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            key: self.encrypt_value(value)
            if key in SECRET_PARAMETERS and isinstance(value, str) and value and not value.startswith(ENCRYPTED_PREFIX)
            else value
            for key, value in parameters.items()
        }

    def decrypt_parameters(self, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            key: self.decrypt_value(value) if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX) else value
            for key, value in parameters.items()
        }

    def _decryption_keys(self) -> list[Fernet]:
        keys = [self._fernet]
        if self._fernet_old:
            keys.append(self._fernet_old)
        return keys
