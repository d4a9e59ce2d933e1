"""
Vault Secrets for MongoDB Diff

Connection strings carry cluster credentials, so they can live in a
HashiCorp Vault KV v2 secret instead of the config file. The secret named
by vault_path holds any of source_uri, dest_uri and status_db_uri.
"""

import logging
import os
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

URI_KEYS = ("source_uri", "dest_uri", "status_db_uri")


class VaultClient:
    """Read-only access to mongodiff secrets on a KV v2 mount."""

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        mount_point: str = "secret",
        verify: bool = True
    ):
        """
        Connect and check the token.

        Args:
            url: Vault address, VAULT_ADDR if not given
            token: Vault token, VAULT_TOKEN if not given
            mount_point: KV v2 mount holding the secrets
            verify: Verify the server's TLS certificate

        Raises:
            ValueError: If no address or no token is available
            VaultError: If Vault is unreachable or rejects the token
        """
        url = url or os.getenv("VAULT_ADDR")
        token = token or os.getenv("VAULT_TOKEN")

        if not url:
            raise ValueError("No Vault address: pass url or set VAULT_ADDR")
        if not token:
            raise ValueError("No Vault token: pass token or set VAULT_TOKEN")

        self.url = url
        self.mount_point = mount_point
        self._client = hvac.Client(url=url, token=token, verify=verify)

        try:
            authenticated = self._client.is_authenticated()
        except OSError as e:
            raise VaultError(f"Cannot reach Vault at {url}: {e}") from e

        if not authenticated:
            raise VaultError(f"Vault at {url} rejected the token")

        logger.info(f"Authenticated with Vault at {url}")

    @property
    def closed(self) -> bool:
        return self._client is None

    def read_secret(self, path: str) -> Dict[str, Any]:
        """
        Return the latest version of the secret at path.

        Raises:
            InvalidPath: If nothing is stored at path
            VaultError: If the client was closed
        """
        if self._client is None:
            raise VaultError("Vault client is closed")

        logger.debug(f"Reading secret {self.mount_point}/{path}")
        response = self._client.secrets.kv.v2.read_secret_version(
            path=path,
            mount_point=self.mount_point
        )

        payload = (response or {}).get("data") or {}
        if "data" not in payload:
            raise InvalidPath(f"No secret data at {self.mount_point}/{path}")
        return payload["data"] or {}

    def connection_uris(self, path: str) -> Dict[str, str]:
        """
        Return the non-empty connection strings stored at path.

        Raises:
            VaultError: If the secret holds none of URI_KEYS
        """
        secret = self.read_secret(path)
        uris = {key: secret[key] for key in URI_KEYS if secret.get(key)}

        if not uris:
            raise VaultError(f"Secret {self.mount_point}/{path} holds none of {', '.join(URI_KEYS)}")

        logger.info(f"Read {', '.join(sorted(uris))} from Vault secret {path}")
        return uris

    def close(self) -> None:
        if self._client is not None:
            self._client.adapter.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
