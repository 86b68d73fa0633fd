"""
Configuration Management Module for the Entra2Action1 connector.

This module handles all configuration settings for the application, including:
- Loading the JSON connector configuration (tenants, targets, Action1 app)
- Validating it once at load time, reporting every problem in one ConfigError
- Providing dataclass-based configuration objects for type safety
- Flattening the configuration into the list of sync jobs for one run
- Loading environment overrides from a credentials.env file

The configuration uses a hierarchical structure:
- ConnectorConfig (main config)
  ├── TenantConfig[] (one Entra tenant each)
  │     └── TargetScope[] (Action1 organizations + property mappings)
  ├── Action1Config (Action1 API app)
  └── LoggingConfig

Secrets are never stored in the config file. Tenants and the Action1 app carry
a ``clientSecretRef`` that is resolved through the secret store at run time.

Usage:
    from entra2action1.config import load_config, get_sync_jobs
    config = load_config("config.json")
    for job in get_sync_jobs(config):
        print(job.tenant.name, job.organization_id)
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from dotenv import load_dotenv  # Library to load .env files into environment variables

from .errors import ConfigError


DEFAULT_ACTION1_API_BASE_URL = "https://app.action1.com/api/3.0"

# Mappings offered when a new target block is created with `config init`
DEFAULT_MAPPINGS = [
    {"entraProperty": "memberOf", "action1CustomAttribute": "Entra Groups"},
    {"entraProperty": "deviceOwnership", "action1CustomAttribute": "Entra Device Ownership"},
]

STRICT = "strict"
RELAXED = "relaxed"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class PropertyMapping:
    """
    One Entra device property copied into one Action1 custom attribute.

    Attributes:
        entra_property: Key on the Entra device record (e.g. "memberOf")
        action1_custom_attribute: Action1 attribute name (e.g. "Entra Groups");
            normalized to a "custom:" key when the patch is built
    """
    entra_property: str
    action1_custom_attribute: str


@dataclass
class TargetScope:
    """Action1 organizations of one tenant that share one mapping set."""
    organization_ids: List[str]
    mappings: List[PropertyMapping]


@dataclass
class TenantConfig:
    """
    Configuration for one Entra ID tenant (directory domain).

    Attributes:
        name: Display name used in logs and run reports
        tenant_id: Entra directory (tenant) ID
        client_id: Application (client) ID of the Graph app registration
        client_secret_ref: Secret store ref holding the client secret
        targets: Target scopes synced from this tenant
        client_secret: Filled in at run time by materialize_secrets()
    """
    name: str
    tenant_id: str
    client_id: str
    client_secret_ref: str
    targets: List[TargetScope] = field(default_factory=list)
    client_secret: Optional[str] = field(default=None, repr=False)


@dataclass
class Action1Config:
    """
    Configuration for the Action1 API application.

    Action1 uses OAuth2 client credentials. The same app is used for every
    organization, so one token is shared across all jobs of a run.
    """
    client_id: str
    client_secret_ref: str
    api_base_url: str = DEFAULT_ACTION1_API_BASE_URL
    client_secret: Optional[str] = field(default=None, repr=False)

    @property
    def token_url(self) -> str:
        """Full OAuth2 token URL, e.g. https://app.action1.com/api/3.0/oauth2/token"""
        return f"{self.api_base_url.rstrip('/')}/oauth2/token"


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class ConnectorConfig:
    """Top-level configuration object returned by load_config()."""
    tenants: List[TenantConfig]
    action1: Action1Config
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass(frozen=True)
class SyncJob:
    """
    One unit of work for the sync engine: a tenant, one Action1
    organization and the mappings of the target scope it came from.
    """
    tenant: TenantConfig
    organization_id: str
    mappings: Tuple[PropertyMapping, ...]


# =============================================================================
# VALIDATION
# =============================================================================

def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


class _ConfigValidator:
    """
    Walks the raw JSON structure, collecting problems instead of stopping at
    the first one, and builds the typed configuration objects on the way.
    """

    def __init__(self, mode: str):
        self.mode = mode
        self.errors: List[str] = []
        self._secret_refs: Dict[str, str] = {}   # ref -> path where first used
        self._tenant_ids: Dict[str, str] = {}    # tenantId -> path where first used
        self._org_ids: Dict[str, str] = {}       # orgId -> path where first used

    def error(self, message: str):
        self.errors.append(message)

    def _register_secret_ref(self, ref: str, path: str):
        previous = self._secret_refs.get(ref)
        if previous:
            self.error(
                f'duplicate clientSecretRef "{ref}". First: {previous}. Second: {path}. '
                f"Each secret ref must be unique to avoid accidental reuse."
            )
            return
        self._secret_refs[ref] = path

    def _require_string(self, obj: Dict[str, Any], key: str, path: str) -> str:
        value = obj.get(key)
        if not _is_non_empty_string(value):
            self.error(f"{path}.{key} is required")
            return ""
        return value.strip()

    def _check_secret_fields(self, obj: Dict[str, Any], path: str) -> str:
        # Plaintext secrets are rejected outright
        if _is_non_empty_string(obj.get("clientSecret")):
            self.error(
                f"{path}.clientSecret is not allowed. Use {path}.clientSecretRef (secret store)."
            )
        ref = self._require_string(obj, "clientSecretRef", path)
        if ref:
            self._register_secret_ref(ref, f"{path}.clientSecretRef")
        return ref

    def validate(self, raw: Any) -> Optional[ConnectorConfig]:
        if not isinstance(raw, dict):
            self.error("config root must be a JSON object")
            return None

        tenants_raw = raw.get("tenants")
        tenants: List[TenantConfig] = []
        if not isinstance(tenants_raw, list) or not tenants_raw:
            self.error('"tenants" must be a non-empty array')
        else:
            for index, tenant_raw in enumerate(tenants_raw):
                tenant = self._validate_tenant(tenant_raw, f"tenants[{index}]")
                if tenant is not None:
                    tenants.append(tenant)

        action1 = self._validate_action1(raw.get("action1"))

        logging_raw = raw.get("logging") or {}
        level = logging_raw.get("level") if isinstance(logging_raw, dict) else None
        logging_config = LoggingConfig(level=level or "info")

        if self.errors:
            return None
        return ConnectorConfig(tenants=tenants, action1=action1, logging=logging_config)

    def _validate_tenant(self, raw: Any, path: str) -> Optional[TenantConfig]:
        if not isinstance(raw, dict):
            self.error(f"{path} must be an object")
            return None

        name = self._require_string(raw, "name", path)
        tenant_id = self._require_string(raw, "tenantId", path)
        client_id = self._require_string(raw, "clientId", path)
        secret_ref = self._check_secret_fields(raw, path)

        if tenant_id:
            previous = self._tenant_ids.get(tenant_id)
            if previous:
                self.error(
                    f'duplicate tenantId "{tenant_id}" in {previous} and {path}. '
                    f"Declare a tenant once and use {path}.targets[] for per-org rules."
                )
            else:
                self._tenant_ids[tenant_id] = path

        targets_raw = raw.get("targets")
        targets: List[TargetScope] = []
        if not isinstance(targets_raw, list) or not targets_raw:
            # Relaxed mode lets `config show` display a tenant with no orgs selected yet
            if self.mode == STRICT:
                self.error(f"{path}.targets must be a non-empty array")
        else:
            seen_in_tenant = set()
            for index, target_raw in enumerate(targets_raw):
                target = self._validate_target(
                    target_raw, f"{path}.targets[{index}]", tenant_id, seen_in_tenant
                )
                if target is not None:
                    targets.append(target)

        return TenantConfig(
            name=name,
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret_ref=secret_ref,
            targets=targets,
        )

    def _validate_target(self, raw: Any, path: str, tenant_id: str, seen_in_tenant: set) -> Optional[TargetScope]:
        if not isinstance(raw, dict):
            self.error(f"{path} must be an object")
            return None

        org_ids: List[str] = []
        org_ids_raw = raw.get("organizationIds")
        if not isinstance(org_ids_raw, list) or not org_ids_raw:
            self.error(f"{path}.organizationIds must be a non-empty array")
        else:
            for index, org_id in enumerate(org_ids_raw):
                if not _is_non_empty_string(org_id):
                    self.error(f"{path}.organizationIds[{index}] must be a non-empty string")
                    continue
                org_id = org_id.strip()

                if org_id in seen_in_tenant:
                    self.error(
                        f'duplicate organizationId "{org_id}" within tenant "{tenant_id}". '
                        f"Each organization must belong to exactly one targets[] block."
                    )
                    continue
                seen_in_tenant.add(org_id)

                previous = self._org_ids.get(org_id)
                if previous:
                    self.error(
                        f'organizationId "{org_id}" is declared more than once across tenants. '
                        f"First: {previous}. Second: {path}. "
                        f"One Action1 organization must belong to exactly one Entra tenant."
                    )
                    continue
                self._org_ids[org_id] = path
                org_ids.append(org_id)

        mappings: List[PropertyMapping] = []
        mappings_raw = raw.get("mappings")
        if not isinstance(mappings_raw, list) or not mappings_raw:
            self.error(f"{path}.mappings must be a non-empty array")
        else:
            for index, mapping_raw in enumerate(mappings_raw):
                m_path = f"{path}.mappings[{index}]"
                if not isinstance(mapping_raw, dict):
                    self.error(f"{m_path} must be an object")
                    continue
                entra_property = self._require_string(mapping_raw, "entraProperty", m_path)
                attribute = self._require_string(mapping_raw, "action1CustomAttribute", m_path)
                if entra_property and attribute:
                    mappings.append(PropertyMapping(entra_property, attribute))

        return TargetScope(organization_ids=org_ids, mappings=mappings)

    def _validate_action1(self, raw: Any) -> Optional[Action1Config]:
        if not isinstance(raw, dict):
            self.error('"action1" section is required')
            return None

        api_base_url = self._require_string(raw, "apiBaseUrl", "action1")
        client_id = self._require_string(raw, "clientId", "action1")
        secret_ref = self._check_secret_fields(raw, "action1")

        return Action1Config(
            client_id=client_id,
            client_secret_ref=secret_ref,
            api_base_url=api_base_url or DEFAULT_ACTION1_API_BASE_URL,
        )


# =============================================================================
# CONFIGURATION LOADING FUNCTIONS
# =============================================================================

def parse_config(raw: Any, mode: str = STRICT) -> ConnectorConfig:
    """
    Validate an already-decoded JSON document and build ConnectorConfig.

    Args:
        raw: Decoded JSON (normally a dict)
        mode: "strict" (runnable config required) or "relaxed" (tenants
              without targets are allowed, for display purposes)

    Returns:
        ConnectorConfig

    Raises:
        ConfigError: With every problem found, not just the first
    """
    if mode not in (STRICT, RELAXED):
        raise ValueError(f"Unknown config mode '{mode}'")

    validator = _ConfigValidator(mode)
    config = validator.validate(raw)
    if validator.errors:
        raise ConfigError(validator.errors)
    return config


def load_config(config_path: Union[str, Path], mode: str = STRICT) -> ConnectorConfig:
    """
    Load and validate the JSON connector configuration.

    Args:
        config_path: Path to config.json
        mode: "strict" (default) or "relaxed"

    Returns:
        ConnectorConfig: Fully validated configuration (secrets not yet resolved)

    Raises:
        ConfigError: If the file cannot be read, is not valid JSON, or fails
                     validation.

    Example:
        >>> config = load_config("config.json")
        >>> print(config.action1.api_base_url)
    """
    path = Path(config_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError([f'failed to read config file at "{path}": {e}']) from e

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError([f"failed to parse config JSON: {e}"]) from e

    return parse_config(raw, mode=mode)


def load_environment(env_file: Optional[str] = None) -> bool:
    """
    Load environment overrides (LOG_LEVEL, E2A1_SECRET_*) from a .env file.

    Args:
        env_file: Path to the .env file. Defaults to 'credentials.env'.

    Returns:
        True if the file existed and was loaded.
    """
    env_path = env_file or "credentials.env"
    return load_dotenv(env_path)


def get_sync_jobs(config: ConnectorConfig) -> List[SyncJob]:
    """
    Flatten the configuration into sync jobs.

    Order is tenants as declared, then their targets, then the organization
    IDs of each target. No I/O.
    """
    jobs = []
    for tenant in config.tenants:
        for target in tenant.targets:
            for organization_id in target.organization_ids:
                jobs.append(SyncJob(
                    tenant=tenant,
                    organization_id=organization_id,
                    mappings=tuple(target.mappings),
                ))
    return jobs


def build_config_template() -> Dict[str, Any]:
    """Skeleton config.json written by `config init`."""
    return {
        "tenants": [
            {
                "name": "Tenant A",
                "tenantId": "00000000-0000-0000-0000-000000000000",
                "clientId": "00000000-0000-0000-0000-000000000000",
                "clientSecretRef": "entra:tenant-a",
                "targets": [
                    {
                        "organizationIds": ["<action1-organization-id>"],
                        "mappings": [dict(m) for m in DEFAULT_MAPPINGS],
                    }
                ],
            }
        ],
        "action1": {
            "apiBaseUrl": os.getenv("ACTION1_API_BASE_URL", DEFAULT_ACTION1_API_BASE_URL),
            "clientId": "<action1-client-id>",
            "clientSecretRef": "action1:main",
        },
        "logging": {"level": "info"},
    }
