"""
================================================================================
Entra2Action1 - Entra ID to Action1 Custom Attribute Sync
================================================================================

Main entry point for the Entra2Action1 connector. This module provides:

1. Command-line interface for all operations
2. The sync run with its JSON report (and optional CSV export)
3. Secret management for the refs named in config.json
4. Small helpers to fill in and verify the configuration

Command-Line Usage:
-------------------
    # Preview what would be written (dry run is the default)
    python -m entra2action1.main sync --config config.json

    # Write custom attributes to Action1
    python -m entra2action1.main sync --config config.json --apply

    # Store a client secret (prompts when --value is omitted)
    python -m entra2action1.main secrets set --ref entra:tenant-a

    # Check the config file
    python -m entra2action1.main config validate --config config.json

    # List Action1 organizations (to find organizationIds)
    python -m entra2action1.main orgs --config config.json

    # Check one endpoint after an --apply run
    python -m entra2action1.main verify-attr --config config.json \\
        --org <ORG_ID> --endpoint <ENDPOINT_ID> --attr "Entra Groups"

Exit Codes:
-----------
    0   All jobs succeeded
    1   Fatal error (config, secrets, Action1 authentication, arguments)
    2   At least one job failed
    3   Patch errors in apply mode

Data Flow:
----------
1. Environment loaded from credentials.env (LOG_LEVEL, E2A1_SECRET_*)
2. config.json loaded and validated
3. Client secrets resolved from the secrets file by ref
4. Sync engine runs every (tenant, organization) job
5. Summary printed and saved to logs/sync_results_<timestamp>.json

Safety Features:
----------------
- Dry run enabled by default (no write operations without --apply)
- Per-job and per-run patch limits
- Secrets never printed or logged
"""

import argparse
import getpass
import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .action1_client import Action1Client
from .config import (
    RELAXED,
    STRICT,
    ConnectorConfig,
    build_config_template,
    get_sync_jobs,
    load_config,
    load_environment,
)
from .device_mapper import CUSTOM_PREFIX, get_endpoint_name, to_custom_key
from .errors import ApiError, ConnectorError
from .logger import get_logger, parse_log_level, setup_logger
from .secret_store import DEFAULT_SECRETS_FILE, SecretStore, materialize_secrets
from .sync_engine import RunSummary, SyncOptions, run_sync

logger = get_logger("entra2action1.main")

DEFAULT_CONFIG_FILE = "config.json"
RESULTS_DIR = Path("logs")


# =============================================================================
# HELPERS
# =============================================================================

def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    return number


def _mask(value: Optional[str]) -> str:
    """'12345678-aaaa' → '1234…aaaa'"""
    if not value:
        return "(missing)"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}…{value[-4:]}"


def _resolve_log_level(flag: Optional[str], config: Optional[ConnectorConfig] = None) -> int:
    """--log-level flag, then LOG_LEVEL, then config.logging.level."""
    configured = config.logging.level if config else None
    return parse_log_level(flag or os.getenv("LOG_LEVEL") or configured or "info")


# =============================================================================
# DATA EXPORT FUNCTIONS
# =============================================================================

def export_to_csv(data: list, filename: str, output_dir: Path) -> Path:
    """
    Export data to CSV file using pandas.

    Flattens nested structures (e.g. sample patches) into columns for easy
    viewing in Excel or other tools.

    Args:
        data: List of dictionaries to export
        filename: Output filename (e.g., "sync_results.csv")
        output_dir: Directory to save file

    Returns:
        Path to saved file
    """
    # Lazy import: pandas is only needed for --export
    import pandas as pd
    df = pd.json_normalize(data)
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / filename
    df.to_csv(filepath, index=False)
    logger.info(f"Exported {len(data)} records to {filepath}")
    return filepath


def save_results(summary: RunSummary, output_dir: Path = RESULTS_DIR, export_csv: bool = False) -> Path:
    """Write the run summary to logs/sync_results_<timestamp>.json."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir.mkdir(parents=True, exist_ok=True)

    results_file = output_dir / f"sync_results_{stamp}.json"
    with open(results_file, "w", encoding="utf-8") as f:
        json.dump(summary.to_dict(), f, indent=2, default=str)
    logger.info(f"Results saved to: {results_file}")

    if export_csv:
        export_to_csv([r.to_dict() for r in summary.results], f"sync_results_{stamp}.csv", output_dir)

    return results_file


def print_summary(summary: RunSummary):
    print("")
    print("=" * 70)
    print("SYNC COMPLETE")
    print("=" * 70)
    print(f"  Mode: {'DRY RUN' if summary.dry_run else 'LIVE'}")
    print(f"  Jobs: {summary.jobs} ({summary.jobs_failed} failed)")
    print(f"  Planned patches: {summary.total_planned_patches}")
    print(f"  Applied patches: {summary.total_applied_patches}")
    print(f"  Patch errors: {summary.patch_error_count}")

    for result in summary.results:
        prefix = f"  - {result.tenant_name} / {result.organization_id}:"
        if result.failed:
            print(f"{prefix} FAILED: {result.error}")
            continue
        line = (
            f"{prefix} matched={result.matched} unmatched={result.unmatched_entra} "
            f"ambiguous={result.ambiguous} planned={result.patches_planned} "
            f"toProcess={result.patches_to_process} applied={result.patches_applied}"
        )
        if result.limited_by:
            line += f" (limited by {result.limited_by})"
        print(line)
        for err in result.patch_errors[:10]:
            print(f"      ! endpoint {err.endpoint_id}: {err.error}")
        if len(result.patch_errors) > 10:
            print(f"      ... and {len(result.patch_errors) - 10} more")


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_sync(args) -> int:
    config = load_config(args.config, mode=STRICT)
    setup_logger(level=_resolve_log_level(args.log_level, config))

    store = SecretStore(args.secrets_file)
    resolved = materialize_secrets(config, store)

    # Limits left unset fall back to the engine defaults
    options = SyncOptions.from_mapping({
        "dry_run": not args.apply,
        "cache_entra_devices": args.cache_entra,
        "max_patches_per_job": args.max_patches_per_job,
        "max_total_patches": args.max_total_patches,
        "endpoint_page_size": args.endpoint_page_size,
        "stop_on_job_error": args.stop_on_job_error or None,
        "stop_on_patch_error": args.stop_on_patch_error or None,
    })

    if not options.dry_run:
        logger.warning("LIVE MODE: custom attributes will be written to Action1")

    summary = run_sync(resolved, options=options)

    print_summary(summary)
    save_results(summary, export_csv=args.export)

    if summary.has_failures:
        logger.warning(
            f"Sync finished with failures: jobsFailed={summary.jobs_failed} "
            f"patchErrors={summary.patch_error_count}"
        )

    return summary.exit_code()


def cmd_secrets(args) -> int:
    store = SecretStore(args.secrets_file)

    if args.action == "list":
        refs = store.list_refs()
        if not refs:
            print(f"No secrets stored in {store.path}")
        for ref in refs:
            print(ref)
        return 0

    if not args.ref:
        raise argparse.ArgumentTypeError(f"secrets {args.action} requires --ref")

    if args.action == "set":
        value = args.value if args.value is not None else getpass.getpass(f"Secret for '{args.ref}': ")
        store.set_secret(args.ref, value)
        print(f"Stored secret for ref '{args.ref}' in {store.path}")
        return 0

    if args.action == "get":
        if not store.has_secret(args.ref):
            print(f"Secret '{args.ref}': not set")
            return 1
        print(f"Secret '{args.ref}': set (length {len(store.get_secret(args.ref))})")
        return 0

    # delete
    if store.delete_secret(args.ref):
        print(f"Deleted secret for ref '{args.ref}'")
        return 0
    print(f"Secret '{args.ref}' was not stored in {store.path}")
    return 1


def cmd_config(args) -> int:
    path = Path(args.config)

    if args.action == "init":
        if path.exists():
            print(f"Refusing to overwrite existing config: {path}")
            return 1
        path.write_text(json.dumps(build_config_template(), indent=2) + "\n", encoding="utf-8")
        print(f"Wrote config template to {path}")
        print("Next: store the secrets named by each clientSecretRef with `secrets set --ref <ref>`")
        return 0

    if args.action == "validate":
        config = load_config(path, mode=STRICT)
        jobs = len(get_sync_jobs(config))
        print(f"Config OK: {len(config.tenants)} tenant(s), {jobs} job(s)")
        return 0

    # show
    config = load_config(path, mode=RELAXED)
    print(f"Action1: {config.action1.api_base_url}")
    print(f"  clientId: {_mask(config.action1.client_id)}")
    print(f"  clientSecretRef: {config.action1.client_secret_ref}")
    print(f"Logging level: {config.logging.level}")
    for tenant in config.tenants:
        print("")
        print(f"Tenant: {tenant.name}")
        print(f"  tenantId: {tenant.tenant_id}")
        print(f"  clientId: {_mask(tenant.client_id)}")
        print(f"  clientSecretRef: {tenant.client_secret_ref}")
        if not tenant.targets:
            print("  (no targets)")
        for index, target in enumerate(tenant.targets, start=1):
            print(f"  Target {index}: organizations={', '.join(target.organization_ids)}")
            for mapping in target.mappings:
                print(f"    {mapping.entra_property} -> {mapping.action1_custom_attribute}")
    return 0


def _action1_client(args) -> Action1Client:
    config = load_config(args.config, mode=RELAXED)
    setup_logger(level=_resolve_log_level(args.log_level, config))
    store = SecretStore(args.secrets_file)
    config.action1.client_secret = store.get_secret(config.action1.client_secret_ref)
    return Action1Client(config.action1)


def cmd_orgs(args) -> int:
    client = _action1_client(args)
    orgs = client.list_organizations()

    print(f"Action1 organizations: {len(orgs)}")
    for org in orgs:
        print(f"  {org.get('id')}  {org.get('name') or '(no name)'}")
    return 0


def cmd_verify_attr(args) -> int:
    client = _action1_client(args)
    try:
        endpoint = client.get_managed_endpoint(args.org, args.endpoint)
    except ApiError as e:
        if e.status == 404:
            print(f"Endpoint not found: {args.endpoint} (org {args.org})")
            return 2
        raise

    key = to_custom_key(args.attr)

    print("")
    print("=== ENDPOINT FOUND ===")
    print(f"id:   {endpoint.get('id') or args.endpoint}")
    print(f"name: {get_endpoint_name(endpoint) or '(unknown)'}")
    print("")
    print("=== CUSTOM VALUE ===")
    print(f"{key}: {endpoint.get(key)}")
    print("")
    print("=== ALL custom:* KEYS ON ENDPOINT ===")
    custom_keys = sorted(k for k in endpoint if k.lower().startswith(CUSTOM_PREFIX))
    if not custom_keys:
        print("(none)")
    for k in custom_keys:
        print(f"{k}: {endpoint[k]}")
    return 0


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="entra2action1",
        description="Entra2Action1 - Copy Entra ID device properties into Action1 custom attributes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  entra2action1 sync --config config.json            Preview (dry run)
  entra2action1 sync --config config.json --apply    Write to Action1
  entra2action1 secrets set --ref action1:main       Store a secret
  entra2action1 config validate --config config.json
        """
    )
    parser.add_argument(
        "--env-file",
        default="credentials.env",
        help="Path to environment file (default: credentials.env)"
    )

    # Options shared by every command that reads config.json
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Path to config.json")
    common.add_argument(
        "--secrets-file",
        default=DEFAULT_SECRETS_FILE,
        help=f"Path to secrets file (default: {DEFAULT_SECRETS_FILE})"
    )
    common.add_argument(
        "--log-level",
        choices=["debug", "info", "warn", "warning", "error"],
        help="Override logging level (default: LOG_LEVEL or config)"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # sync
    sync = sub.add_parser("sync", parents=[common], help="Run the sync")
    sync.add_argument("--dry-run", dest="apply", action="store_false",
                      help="Compute patches without writing (default)")
    sync.add_argument("--apply", dest="apply", action="store_true",
                      help="Write custom attributes to Action1")
    sync.add_argument("--cache-entra", dest="cache_entra", action="store_true",
                      help="Reuse Entra devices across jobs of one tenant (default)")
    sync.add_argument("--no-cache-entra", dest="cache_entra", action="store_false",
                      help="Fetch Entra devices for every job")
    sync.add_argument("--max-patches-per-job", type=_positive_int,
                      help="Most patches sent for one job (default: 50)")
    sync.add_argument("--max-total-patches", type=_positive_int,
                      help="Most patches sent across all jobs, also with --apply (default: 200)")
    sync.add_argument("--endpoint-page-size", type=_positive_int,
                      help="Action1 endpoints requested per page (default: 50)")
    sync.add_argument("--stop-on-job-error", action="store_true",
                      help="Abort remaining jobs after a failed job")
    sync.add_argument("--stop-on-patch-error", action="store_true",
                      help="Abort a job's remaining patches after a failed patch")
    sync.add_argument("--export", action="store_true", help="Also export job results to CSV")
    sync.set_defaults(func=cmd_sync, apply=False, cache_entra=None)

    # secrets
    secrets = sub.add_parser("secrets", help="Manage client secrets by ref")
    secrets.add_argument("action", choices=["set", "get", "delete", "list"])
    secrets.add_argument("--ref", help='Secret ref, e.g. "entra:tenant-a"')
    secrets.add_argument("--value", help="Secret value for 'set' (prompted if omitted)")
    secrets.add_argument("--secrets-file", default=DEFAULT_SECRETS_FILE)
    secrets.set_defaults(func=cmd_secrets)

    # config
    config = sub.add_parser("config", help="Show, validate or create config.json")
    config.add_argument("action", choices=["show", "validate", "init"])
    config.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Path to config.json")
    config.set_defaults(func=cmd_config)

    # orgs
    orgs = sub.add_parser("orgs", parents=[common], help="List Action1 organizations")
    orgs.set_defaults(func=cmd_orgs)

    # verify-attr
    verify = sub.add_parser("verify-attr", parents=[common], help="Show custom attributes of one endpoint")
    verify.add_argument("--org", required=True, help="Action1 organization ID")
    verify.add_argument("--endpoint", required=True, help="Action1 endpoint ID")
    verify.add_argument("--attr", default="Entra Groups", help="Custom attribute name")
    verify.set_defaults(func=cmd_verify_attr)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    load_environment(args.env_file)
    try:
        setup_logger(level=_resolve_log_level(getattr(args, "log_level", None)))
    except ValueError as e:
        print(f"[ERROR] {e}")
        return 1

    try:
        return args.func(args)
    except (ConnectorError, ValueError, argparse.ArgumentTypeError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
