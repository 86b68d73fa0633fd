"""
Secret storage for client secrets referenced from config.json.

config.json only names a secret (``clientSecretRef``, e.g. "entra:tenant-a").
The value lives in a separate dotenv file (``secrets.env`` by default) that is
managed with python-dotenv and kept out of version control. For CI, an
environment variable ``E2A1_SECRET_<REF>`` (ref upper-cased, other characters
replaced by "_") takes precedence over the file.

Usage:
    store = SecretStore("secrets.env")
    store.set_secret("action1:main", "s3cr3t")
    config = materialize_secrets(load_config("config.json"), store)
"""

import copy
import os
import re
from pathlib import Path
from typing import List, Optional, Union

from dotenv import dotenv_values, set_key, unset_key

from .config import ConnectorConfig
from .errors import SecretError
from .logger import get_logger

logger = get_logger("entra2action1.secret_store")

DEFAULT_SECRETS_FILE = "secrets.env"
ENV_PREFIX = "E2A1_SECRET_"


def _check_ref(ref) -> str:
    if not isinstance(ref, str) or not ref.strip():
        raise SecretError('Secret error: "ref" must be a non-empty string')
    ref = ref.strip()
    if re.search(r"[\s=#]", ref):
        raise SecretError(f'Secret error: ref "{ref}" must not contain whitespace, "=" or "#"')
    return ref


def env_var_for_ref(ref: str) -> str:
    """'entra:tenant-a' → 'E2A1_SECRET_ENTRA_TENANT_A'"""
    return ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", ref).upper()


class SecretStore:
    """
    Secret refs backed by a dotenv file.

    Attributes:
        path: Location of the secrets file
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_SECRETS_FILE):
        self.path = Path(path)

    def set_secret(self, ref: str, value: str):
        ref = _check_ref(ref)
        if not isinstance(value, str) or value == "":
            raise SecretError('Secret error: "value" must be a non-empty string')

        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(mode=0o600)
        set_key(str(self.path), ref, value)
        logger.info(f"[secrets] Stored secret for ref: {ref}")

    def get_secret(self, ref: str) -> str:
        """
        Resolve a ref to its value.

        Raises:
            SecretError: If the ref is malformed or not set anywhere
        """
        value = self._lookup(_check_ref(ref))
        if not value:
            raise SecretError(f"Secret not found for ref: {ref}")
        return value

    def has_secret(self, ref: str) -> bool:
        return bool(self._lookup(_check_ref(ref)))

    def delete_secret(self, ref: str) -> bool:
        """Remove a ref from the file. Returns False if it was not there."""
        ref = _check_ref(ref)
        if ref not in self._file_values():
            return False
        removed, _ = unset_key(str(self.path), ref)
        return bool(removed)

    def list_refs(self) -> List[str]:
        """Refs stored in the file (values are never returned)."""
        return sorted(key for key, value in self._file_values().items() if value)

    def _file_values(self) -> dict:
        if not self.path.exists():
            return {}
        return dotenv_values(self.path)

    def _lookup(self, ref: str) -> Optional[str]:
        override = os.getenv(env_var_for_ref(ref))
        if override:
            return override
        if not self.path.exists():
            return None
        return self._file_values().get(ref)


def materialize_secrets(config: ConnectorConfig, store: SecretStore) -> ConnectorConfig:
    """
    Return a copy of ``config`` with every client_secret resolved.

    The input object is left untouched, so it can still be printed or
    written back without leaking secrets.

    Raises:
        SecretError: Listing every ref that could not be resolved
    """
    resolved = copy.deepcopy(config)
    missing = []

    def resolve(ref: str, label: str) -> Optional[str]:
        try:
            return store.get_secret(ref)
        except SecretError:
            missing.append(f'{label} (ref "{ref}")')
            return None

    resolved.action1.client_secret = resolve(resolved.action1.client_secret_ref, "action1.clientSecretRef")
    for tenant in resolved.tenants:
        tenant.client_secret = resolve(tenant.client_secret_ref, f'tenant "{tenant.name}" clientSecretRef')

    if missing:
        raise SecretError(f"Missing secrets: {', '.join(missing)}")

    # Never log values, only refs
    tenant_refs = [t.client_secret_ref for t in resolved.tenants]
    logger.info(
        f'[secrets] Loaded secrets. action1Ref="{resolved.action1.client_secret_ref}" '
        f"tenantRefs={tenant_refs}"
    )
    return resolved
