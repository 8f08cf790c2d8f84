"""Secure credential storage for sync providers.

Passwords and OAuth tokens are kept in the system keyring. When no usable
keyring backend exists they are held in memory for the life of the process
and can be supplied through ``FEATHER_SYNC_<PROVIDER>_<KEY>`` environment
variables. Secrets are never written to the settings file.
"""

import os
import logging
from typing import Any, Dict, Iterable, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .adapters import ADAPTER_CLASSES
from .sync_config import SyncConfigManager
from .sync_models import ProviderConfig, SyncProvider


logger = logging.getLogger(__name__)


class CredentialManager:
    """Secret storage using the system keyring."""

    SERVICE_NAME = "feather_sync"

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._keyring_ok = False
        self._fallback_storage: Dict[str, str] = {}

        self._init_keyring()

    def _init_keyring(self):
        """Probe the keyring backend with a throwaway entry."""
        test_key = f"{self.SERVICE_NAME}_test"
        try:
            keyring.set_password(self.SERVICE_NAME, test_key, "test_value")
            retrieved = keyring.get_password(self.SERVICE_NAME, test_key)
            if retrieved == "test_value":
                keyring.delete_password(self.SERVICE_NAME, test_key)
                self._keyring_ok = True
                self.logger.debug("Keyring initialized successfully")
            else:
                self.logger.warning("Keyring test failed, secrets will be kept in memory only")
        except KeyringError as e:
            self.logger.warning(f"Keyring unavailable ({e}), secrets will be kept in memory only")

    @staticmethod
    def _make_credential_key(provider: SyncProvider, key: str) -> str:
        return f"{provider.value}_{key}"

    @staticmethod
    def env_var_name(provider: SyncProvider, key: str) -> str:
        return f"FEATHER_SYNC_{provider.value.upper()}_{key.upper()}"

    def store_credential(self, provider: SyncProvider, key: str, value: str) -> bool:
        """Store a secret.

        Returns:
            True if it went to the keyring, False if it is only held in memory
        """
        credential_key = self._make_credential_key(provider, key)
        if self._keyring_ok:
            try:
                keyring.set_password(self.SERVICE_NAME, credential_key, value)
                self.logger.debug(f"Stored credential {key} for {provider.value} in keyring")
                return True
            except KeyringError as e:
                self.logger.error(f"Failed to store credential {key} in keyring: {e}")

        self._fallback_storage[credential_key] = value
        self.logger.warning(
            f"Credential {key} for {provider.value} kept in memory only; "
            f"set {self.env_var_name(provider, key)} to provide it in later sessions"
        )
        return False

    def get_credential(self, provider: SyncProvider, key: str) -> Optional[str]:
        credential_key = self._make_credential_key(provider, key)

        if self._keyring_ok:
            try:
                value = keyring.get_password(self.SERVICE_NAME, credential_key)
                if value:
                    return value
            except KeyringError as e:
                self.logger.error(f"Failed to read credential {key} from keyring: {e}")

        if credential_key in self._fallback_storage:
            return self._fallback_storage[credential_key]

        env_value = os.getenv(self.env_var_name(provider, key))
        if env_value:
            self.logger.debug(f"Retrieved credential {key} for {provider.value} from environment")
            return env_value
        return None

    def delete_credential(self, provider: SyncProvider, key: str) -> bool:
        credential_key = self._make_credential_key(provider, key)
        deleted = False

        if self._keyring_ok:
            try:
                keyring.delete_password(self.SERVICE_NAME, credential_key)
                deleted = True
            except PasswordDeleteError:
                pass
            except KeyringError as e:
                self.logger.error(f"Failed to delete credential {key} from keyring: {e}")

        if self._fallback_storage.pop(credential_key, None) is not None:
            deleted = True
        return deleted

    def delete_all_credentials(self, provider: SyncProvider, keys: Iterable[str]) -> int:
        deleted_count = sum(1 for key in keys if self.delete_credential(provider, key))
        if deleted_count:
            self.logger.info(f"Deleted {deleted_count} credentials for {provider.value}")
        return deleted_count

    def is_keyring_available(self) -> bool:
        return self._keyring_ok

    def get_storage_info(self) -> Dict[str, Any]:
        return {
            'keyring_available': self._keyring_ok,
            'keyring_backend': str(keyring.get_keyring()) if self._keyring_ok else None,
            'fallback_credentials_count': len(self._fallback_storage),
            'service_name': self.SERVICE_NAME,
        }


class CredentialStore:
    """Persists a provider configuration split into settings and secrets.

    Non-secret fields are written to the settings file through
    :class:`SyncConfigManager`; fields the adapter declares as secret go to
    :class:`CredentialManager`.
    """

    def __init__(self, config_manager: SyncConfigManager,
                 credential_manager: Optional[CredentialManager] = None):
        self.config_manager = config_manager
        self.credentials = credential_manager or CredentialManager()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def secret_fields(provider: SyncProvider):
        return ADAPTER_CLASSES[provider].SECRET_FIELDS

    def save(self, config: ProviderConfig):
        """Persist a configuration and make its provider the active one."""
        secret_keys = self.secret_fields(config.provider)
        plain, secret = config.split(secret_keys)

        for key in secret_keys:
            if key in secret:
                self.credentials.store_credential(config.provider, key, secret[key])
            else:
                self.credentials.delete_credential(config.provider, key)

        self.config_manager.update(active_provider=config.provider, provider_config=plain)
        self.logger.info(f"Saved {config.provider.display_name} configuration")

    def load(self) -> Optional[ProviderConfig]:
        """Rebuild the active provider's configuration, or None if none is set."""
        settings = self.config_manager.settings
        provider = settings.active_provider
        if provider is None:
            return None

        config = ProviderConfig(provider=provider, values=dict(settings.provider_config))
        for key in self.secret_fields(provider):
            value = self.credentials.get_credential(provider, key)
            if value:
                config.set(key, value)
        return config

    def clear(self):
        """Delete stored secrets and forget the active provider."""
        provider = self.config_manager.settings.active_provider
        if provider is not None:
            self.credentials.delete_all_credentials(provider, self.secret_fields(provider))
        self.config_manager.reset_provider()
