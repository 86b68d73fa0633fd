"""
================================================================================
Sync Engine: Entra ID → Action1 Custom Attribute Synchronization
================================================================================

This module contains the core synchronization logic. For every configured
(tenant, Action1 organization) pair it:

1. Reads Entra devices with their group memberships (optionally cached per
   tenant credential for the rest of the run)
2. Reads the organization's managed endpoints from Action1
3. Matches devices to endpoints by name and builds custom-attribute patches
4. Applies the safety limits (per job, then across the whole run)
5. Sends the patches one by one, or only counts them in dry-run mode
6. Records a JobResult, whatever happened

Failure Isolation:
------------------
- A job whose Entra or Action1 reads fail becomes a failed JobResult
  (tenant, organization, error, dry_run) and the run moves on, unless
  stop_on_job_error is set.
- A patch that fails becomes a PatchError in its job and the job moves on,
  unless stop_on_patch_error is set. Patches already sent stay applied.
- Only the shared Action1 token request before the first job can make
  run_sync() raise.

Safety Limits:
--------------
- max_patches_per_job: keeps the first N planned patches of a job
- max_total_patches: the run never sends more than M patches in total.
  Only patches actually sent count towards M; dry runs never consume it.
Truncation is not an error; JobResult.limited_by names the limit(s) hit.

Jobs and patches are processed strictly one at a time.

Usage Example:
--------------
    from entra2action1.sync_engine import SyncOptions, run_sync

    summary = run_sync(config, logger, SyncOptions(dry_run=True))
    print(f"Planned: {summary.total_planned_patches}")
    for result in summary.results:
        print(result.to_dict())
"""

import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .action1_client import Action1Client
from .config import ConnectorConfig, SyncJob, TenantConfig, get_sync_jobs
from .device_mapper import PlannedPatch, map_devices_to_patches
from .entra_client import EntraClient
from .errors import ConfigError, PatchValidationError
from .logger import get_logger

logger = get_logger("entra2action1.sync_engine")

SAMPLE_PATCH_COUNT = 3

EXIT_OK = 0
EXIT_JOB_FAILED = 2
EXIT_PATCH_ERRORS = 3


# =============================================================================
# OPTIONS
# =============================================================================

@dataclass
class SyncOptions:
    """
    Run options for the sync engine.

    Attributes:
        dry_run: If True, patches are computed and counted but never sent
        max_patches_per_job: Keep at most this many patches per job
        max_total_patches: Never send more than this many patches per run
        stop_on_job_error: Abort remaining jobs after a failed job
        stop_on_patch_error: Abort the job's remaining patches after a failure
        endpoint_page_size: Page size for Action1 endpoint listing
        cache_entra_devices: Reuse Entra devices across jobs sharing a credential
        cache_key_includes_tenant_label: Also key the cache by tenant name, so
            two tenant entries with the same credential fetch separately
            (used by test fixtures; off in normal runs)
    """
    dry_run: bool = True
    max_patches_per_job: int = 50
    max_total_patches: int = 200
    stop_on_job_error: bool = False
    stop_on_patch_error: bool = False
    endpoint_page_size: int = 50
    cache_entra_devices: bool = True
    cache_key_includes_tenant_label: bool = False

    def __post_init__(self):
        problems = []
        for name in ("max_patches_per_job", "max_total_patches"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                problems.append(f"{name} must be a non-negative integer, got {value!r}")
        page_size = self.endpoint_page_size
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            problems.append(f"endpoint_page_size must be a positive integer, got {page_size!r}")
        if problems:
            raise ConfigError(problems)

    @classmethod
    def from_mapping(cls, values: Optional[Dict[str, Any]] = None) -> "SyncOptions":
        """
        Build options from a partial mapping; None values keep the defaults.

        Raises:
            ConfigError: Unknown option names or invalid values
        """
        values = values or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError([f"unknown sync option: {name}" for name in unknown])
        return cls(**{k: v for k, v in values.items() if v is not None})


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass
class PatchError:
    """One patch that could not be applied."""
    endpoint_id: Optional[str]
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"endpoint_id": self.endpoint_id, "error": self.error}


@dataclass
class JobResult:
    """
    Outcome of one sync job.

    A failed job (error set) carries only tenant_name, organization_id,
    error and dry_run; the counters stay None.
    """
    tenant_name: str
    organization_id: str
    dry_run: bool
    entra_devices: Optional[int] = None
    action1_endpoints: Optional[int] = None
    matched: Optional[int] = None
    unmatched_entra: Optional[int] = None
    ambiguous: Optional[int] = None
    patches_planned: Optional[int] = None
    patches_to_process: Optional[int] = None
    patches_applied: Optional[int] = None
    patch_errors: List[PatchError] = field(default_factory=list)
    limited_by: Optional[str] = None
    sample_patches: List[PlannedPatch] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.failed:
            return {
                "tenant_name": self.tenant_name,
                "organization_id": self.organization_id,
                "error": self.error,
                "dry_run": self.dry_run,
            }
        return {
            "tenant_name": self.tenant_name,
            "organization_id": self.organization_id,
            "entra_devices": self.entra_devices,
            "action1_endpoints": self.action1_endpoints,
            "matched": self.matched,
            "unmatched_entra": self.unmatched_entra,
            "ambiguous": self.ambiguous,
            "patches_planned": self.patches_planned,
            "patches_to_process": self.patches_to_process,
            "patches_applied": self.patches_applied,
            "patch_errors": [e.to_dict() for e in self.patch_errors],
            "limited_by": self.limited_by,
            "dry_run": self.dry_run,
            "sample_patches": [p.to_dict() for p in self.sample_patches],
        }


@dataclass(frozen=True)
class SyncTotals:
    """Running totals threaded through the job loop."""
    planned: int = 0
    applied: int = 0


@dataclass
class RunSummary:
    """
    Terminal artifact of a run, returned by run_sync().

    Example:
        {
            "dry_run": False,
            "jobs": 3,
            "total_planned_patches": 120,
            "total_applied_patches": 118,
            "results": [...]
        }
    """
    dry_run: bool
    jobs: int
    total_planned_patches: int
    total_applied_patches: int
    results: List[JobResult] = field(default_factory=list)

    @property
    def jobs_failed(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def patch_error_count(self) -> int:
        return sum(len(r.patch_errors) for r in self.results)

    @property
    def has_failures(self) -> bool:
        return self.exit_code() != EXIT_OK

    def exit_code(self) -> int:
        """0 clean, 2 if any job failed, 3 if any patch failed in apply mode."""
        if self.jobs_failed:
            return EXIT_JOB_FAILED
        if not self.dry_run and self.patch_error_count:
            return EXIT_PATCH_ERRORS
        return EXIT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "jobs": self.jobs,
            "jobs_failed": self.jobs_failed,
            "total_planned_patches": self.total_planned_patches,
            "total_applied_patches": self.total_applied_patches,
            "patch_errors": self.patch_error_count,
            "results": [r.to_dict() for r in self.results],
        }


# =============================================================================
# PURE HELPERS
# =============================================================================

def apply_patch_limits(
    patches: List[PlannedPatch],
    options: SyncOptions,
    applied_so_far: int,
) -> Tuple[List[PlannedPatch], Optional[str]]:
    """
    Truncate a job's planned patches to the per-job and global limits.

    Args:
        patches: Planned patches of the job, in order
        options: Run options carrying both limits
        applied_so_far: Patches actually sent by earlier jobs of this run

    Returns:
        (patches to process, limited_by description or None)
    """
    to_process = list(patches)
    reasons = []

    if len(to_process) > options.max_patches_per_job:
        to_process = to_process[:options.max_patches_per_job]
        reasons.append(f"max_patches_per_job={options.max_patches_per_job}")

    remaining = max(0, options.max_total_patches - applied_so_far)
    if len(to_process) > remaining:
        to_process = to_process[:remaining]
        reasons.append(f"max_total_patches={options.max_total_patches}")

    return to_process, ", ".join(reasons) or None


def device_cache_key(tenant: TenantConfig, include_tenant_label: bool = False) -> str:
    """
    Cache key for a tenant's Entra devices: "<tenantId>:<clientId>".

    With include_tenant_label the sanitized tenant name is appended, e.g.
    "t1:c1:Tenant_A".
    """
    key = f"{tenant.tenant_id}:{tenant.client_id}"
    if not include_tenant_label:
        return key
    label = re.sub(r"\s+", "_", str(tenant.name or "").strip())
    label = re.sub(r"[^A-Za-z0-9._-]", "", label)
    return f"{key}:{label}"


def _error_message(err: BaseException) -> str:
    return str(err) or err.__class__.__name__


# =============================================================================
# SYNC ENGINE
# =============================================================================

class SyncEngine:
    """
    Runs all sync jobs derived from a validated, secret-materialized config.

    Both API collaborators are injectable so tests can run the engine
    without HTTP:

        engine = SyncEngine(config, options,
                            action1_client=fake_action1,
                            entra_client_factory=lambda tenant: fake_entra)
        summary = engine.run()

    Attributes:
        config: ConnectorConfig with client secrets filled in
        options: SyncOptions for this run
        log: Logger receiving progress messages
        action1: Action1Client shared by all jobs
        entra_client_factory: Callable building a directory reader for a tenant
    """

    def __init__(
        self,
        config: ConnectorConfig,
        options: Optional[SyncOptions] = None,
        log: Optional[Any] = None,
        action1_client: Optional[Action1Client] = None,
        entra_client_factory: Optional[Callable[[TenantConfig], Any]] = None,
    ):
        self.config = config
        self.options = options or SyncOptions()
        self.log = log or logger
        self.action1 = action1_client or Action1Client(config.action1)
        self.entra_client_factory = entra_client_factory or EntraClient

        # tenant cache key -> device records; write-once per key, never invalidated mid-run
        self._device_cache: Dict[str, List[Dict[str, Any]]] = {}

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self) -> RunSummary:
        """
        Run every job in config order and return the summary.

        Raises:
            AuthError: Only if the shared Action1 token cannot be obtained
        """
        opts = self.options
        jobs = get_sync_jobs(self.config)
        self._device_cache = {}

        self.log.info(f"[sync] Starting sync. Jobs={len(jobs)}. dryRun={opts.dry_run}")

        # One Action1 token for the whole run (same API app for every org)
        self.action1.authenticate()

        totals = SyncTotals()
        results: List[JobResult] = []

        for index, job in enumerate(jobs, start=1):
            result, totals = self.run_job(job, totals, index=index, job_count=len(jobs))
            results.append(result)

            if result.failed and opts.stop_on_job_error:
                self.log.error("[sync] Aborting due to stop_on_job_error=True")
                break

        summary = RunSummary(
            dry_run=opts.dry_run,
            jobs=len(jobs),
            total_planned_patches=totals.planned,
            total_applied_patches=totals.applied,
            results=results,
        )

        self.log.info(
            f"[sync] Finished. jobs={summary.jobs}, "
            f"totalPlannedPatches={summary.total_planned_patches}, "
            f"totalAppliedPatches={summary.total_applied_patches}, dryRun={summary.dry_run}"
        )
        self.log.debug(f"[sync] Action1 rate limiter stats: {self.action1.rate_limiter.stats}")
        return summary

    def run_job(
        self,
        job: SyncJob,
        totals: SyncTotals,
        index: int = 1,
        job_count: int = 1,
    ) -> Tuple[JobResult, SyncTotals]:
        """
        Run one job and return its result with the updated totals.

        Never raises for read, mapping or patch failures; they end up in the
        returned JobResult.
        """
        opts = self.options
        label = (
            f'[job {index}/{job_count}] tenant="{job.tenant.name}" '
            f'org="{job.organization_id}"'
        )
        self.log.info(f"[sync] {label} Starting")

        # Steps 1-3: reads and mapping. Any failure here fails the whole job.
        try:
            entra_devices = self._get_entra_devices(job, label)
            self.log.info(f"[sync] {label} Entra devices={len(entra_devices)}")

            endpoints = self.action1.list_managed_endpoints(
                job.organization_id,
                page_size=opts.endpoint_page_size,
            )
            self.log.info(f"[sync] {label} Action1 endpoints={len(endpoints)}")

            mapping = map_devices_to_patches(entra_devices, endpoints, job.mappings)
        except Exception as e:
            message = _error_message(e)
            self.log.error(f"[sync] {label} Failed: {message}")
            failed = JobResult(
                tenant_name=job.tenant.name,
                organization_id=job.organization_id,
                dry_run=opts.dry_run,
                error=message,
            )
            return failed, totals

        planned = len(mapping.patches)
        to_process, limited_by = apply_patch_limits(mapping.patches, opts, totals.applied)

        self.log.info(
            f"[sync] {label} matched={len(mapping.matched)}, "
            f"unmatchedEntra={len(mapping.unmatched_entra)}, "
            f"ambiguous={len(mapping.ambiguous)}, "
            f"patchesPlanned={planned}, patchesToProcess={len(to_process)}"
            + (f" (LIMITED by {limited_by})" if limited_by else "")
        )
        for item in mapping.ambiguous:
            self.log.debug(
                f"[sync] {label} Ambiguous: {item.entra_device.get('displayName')} "
                f"reason={item.reason} candidates={len(item.candidates)}"
            )

        applied = 0
        patch_errors: List[PatchError] = []
        if not opts.dry_run:
            applied, patch_errors = self._apply_patches(job, label, to_process)

        result = JobResult(
            tenant_name=job.tenant.name,
            organization_id=job.organization_id,
            dry_run=opts.dry_run,
            entra_devices=len(entra_devices),
            action1_endpoints=len(endpoints),
            matched=len(mapping.matched),
            unmatched_entra=len(mapping.unmatched_entra),
            ambiguous=len(mapping.ambiguous),
            patches_planned=planned,
            patches_to_process=len(to_process),
            patches_applied=applied,
            patch_errors=patch_errors,
            limited_by=limited_by,
            sample_patches=mapping.patches[:SAMPLE_PATCH_COUNT],
        )

        self.log.info(f"[sync] {label} Done")
        return result, replace(totals, planned=totals.planned + planned, applied=totals.applied + applied)

    # =========================================================================
    # STEPS
    # =========================================================================

    def _get_entra_devices(self, job: SyncJob, label: str) -> List[Dict[str, Any]]:
        if not self.options.cache_entra_devices:
            return self.entra_client_factory(job.tenant).list_devices_with_groups()

        key = device_cache_key(job.tenant, self.options.cache_key_includes_tenant_label)
        if key in self._device_cache:
            self.log.info(f"[sync] {label} Entra cache: reused devices for {key}")
            return self._device_cache[key]

        devices = self.entra_client_factory(job.tenant).list_devices_with_groups()
        self._device_cache[key] = devices
        self.log.info(f"[sync] {label} Entra cache: stored devices for {key}")
        return devices

    @staticmethod
    def _validate_patch_item(item: Any):
        endpoint_id = getattr(item, "endpoint_id", None)
        body = getattr(item, "patch", None)
        if not endpoint_id or not isinstance(body, dict):
            raise PatchValidationError("Invalid patch item: missing endpoint_id or patch object")

    def _apply_patches(
        self,
        job: SyncJob,
        label: str,
        patches: List[PlannedPatch],
    ) -> Tuple[int, List[PatchError]]:
        """
        Send patches one at a time, in order.

        Returns:
            (number applied, errors). Not transactional: with
            stop_on_patch_error the loop stops but earlier patches stay applied.
        """
        applied = 0
        errors: List[PatchError] = []

        for item in patches:
            endpoint_id = getattr(item, "endpoint_id", None)
            try:
                self._validate_patch_item(item)

                if not item.patch:
                    self.log.debug(f"[sync] {label} Skipping empty patch endpointId={endpoint_id}")
                    continue

                self.action1.patch_managed_endpoint(job.organization_id, endpoint_id, item.patch)
                applied += 1
                self.log.info(f"[sync] {label} PATCH ok endpointId={endpoint_id} keys={len(item.patch)}")

            except Exception as e:
                message = _error_message(e)
                errors.append(PatchError(endpoint_id=endpoint_id, error=message))
                self.log.error(f"[sync] {label} PATCH failed endpointId={endpoint_id}: {message}")

                if self.options.stop_on_patch_error:
                    self.log.warning(f"[sync] {label} Stopping job due to stop_on_patch_error=True")
                    break

        return applied, errors


def run_sync(
    config: ConnectorConfig,
    log: Optional[Any] = None,
    options: Optional[Any] = None,
    action1_client: Optional[Action1Client] = None,
    entra_client_factory: Optional[Callable[[TenantConfig], Any]] = None,
) -> RunSummary:
    """
    Run the sync for every job in the configuration.

    Args:
        config: Validated ConnectorConfig with secrets materialized
        log: Logger-like sink (debug/info/warning/error); module logger if None
        options: SyncOptions, or a partial dict of option values
        action1_client: Optional pre-built Action1 client
        entra_client_factory: Optional callable tenant -> directory reader

    Returns:
        RunSummary describing every job

    Raises:
        AuthError: If the shared Action1 token cannot be obtained
        ConfigError: If options are invalid
    """
    if options is None or isinstance(options, dict):
        options = SyncOptions.from_mapping(options)

    engine = SyncEngine(
        config,
        options,
        log=log,
        action1_client=action1_client,
        entra_client_factory=entra_client_factory,
    )
    return engine.run()
