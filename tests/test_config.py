"""
Tests for config.py: validation, error aggregation, job flattening.
"""

import copy
import json
import os
import tempfile
import unittest

from entra2action1.config import (
    DEFAULT_ACTION1_API_BASE_URL,
    RELAXED,
    build_config_template,
    get_sync_jobs,
    load_config,
    parse_config,
)
from entra2action1.errors import ConfigError


VALID = {
    "tenants": [
        {
            "name": "Tenant A",
            "tenantId": "tenant-a",
            "clientId": "client-a",
            "clientSecretRef": "entra:tenant-a",
            "targets": [
                {
                    "organizationIds": ["org1", "org2"],
                    "mappings": [{"entraProperty": "memberOf", "action1CustomAttribute": "Entra Groups"}],
                },
                {
                    "organizationIds": ["org3"],
                    "mappings": [{"entraProperty": "deviceOwnership", "action1CustomAttribute": "Ownership"}],
                },
            ],
        },
        {
            "name": "Tenant B",
            "tenantId": "tenant-b",
            "clientId": "client-b",
            "clientSecretRef": "entra:tenant-b",
            "targets": [
                {
                    "organizationIds": ["org4"],
                    "mappings": [{"entraProperty": "memberOf", "action1CustomAttribute": "Entra Groups"}],
                },
            ],
        },
    ],
    "action1": {
        "apiBaseUrl": "https://app.action1.com/api/3.0",
        "clientId": "a1-client",
        "clientSecretRef": "action1:main",
    },
    "logging": {"level": "debug"},
}


def raw_config():
    return copy.deepcopy(VALID)


class TestParseConfig(unittest.TestCase):

    def test_valid_config(self):
        config = parse_config(raw_config())
        self.assertEqual(len(config.tenants), 2)
        self.assertEqual(config.tenants[0].client_secret_ref, "entra:tenant-a")
        self.assertIsNone(config.tenants[0].client_secret)
        self.assertEqual(config.action1.token_url, "https://app.action1.com/api/3.0/oauth2/token")
        self.assertEqual(config.logging.level, "debug")

    def test_logging_defaults_to_info(self):
        raw = raw_config()
        del raw["logging"]
        self.assertEqual(parse_config(raw).logging.level, "info")

    def test_plaintext_secret_rejected(self):
        raw = raw_config()
        raw["tenants"][0]["clientSecret"] = "hunter2"
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertIn("tenants[0].clientSecret is not allowed", str(ctx.exception))

    def test_plaintext_action1_secret_rejected(self):
        raw = raw_config()
        raw["action1"]["clientSecret"] = "hunter2"
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_errors_are_aggregated(self):
        """Every problem is reported, not just the first."""
        raw = raw_config()
        del raw["tenants"][0]["clientId"]
        raw["tenants"][1]["targets"][0]["mappings"] = []
        del raw["action1"]["clientId"]

        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)

        errors = ctx.exception.errors
        self.assertEqual(len(errors), 3)
        self.assertIn("tenants[0].clientId is required", errors)
        self.assertIn("action1.clientId is required", errors)
        self.assertIn("3 problems found", str(ctx.exception))

    def test_single_error_message(self):
        raw = raw_config()
        del raw["action1"]["clientId"]
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertEqual(str(ctx.exception), "Config error: action1.clientId is required")

    def test_empty_tenants(self):
        raw = raw_config()
        raw["tenants"] = []
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_root_must_be_object(self):
        with self.assertRaises(ConfigError):
            parse_config([])

    def test_duplicate_secret_ref(self):
        raw = raw_config()
        raw["tenants"][1]["clientSecretRef"] = "entra:tenant-a"
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertIn('duplicate clientSecretRef "entra:tenant-a"', str(ctx.exception))

    def test_duplicate_tenant_id(self):
        raw = raw_config()
        raw["tenants"][1]["tenantId"] = "tenant-a"
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertIn('duplicate tenantId "tenant-a"', str(ctx.exception))

    def test_duplicate_org_within_tenant(self):
        raw = raw_config()
        raw["tenants"][0]["targets"][1]["organizationIds"] = ["org1"]
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertIn('duplicate organizationId "org1"', str(ctx.exception))

    def test_duplicate_org_across_tenants(self):
        raw = raw_config()
        raw["tenants"][1]["targets"][0]["organizationIds"] = ["org2"]
        with self.assertRaises(ConfigError) as ctx:
            parse_config(raw)
        self.assertIn("declared more than once across tenants", str(ctx.exception))

    def test_blank_org_id(self):
        raw = raw_config()
        raw["tenants"][1]["targets"][0]["organizationIds"] = ["  "]
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_targets_required_in_strict_mode(self):
        raw = raw_config()
        raw["tenants"][1]["targets"] = []
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_relaxed_mode_allows_missing_targets(self):
        raw = raw_config()
        del raw["tenants"][1]["targets"]
        config = parse_config(raw, mode=RELAXED)
        self.assertEqual(config.tenants[1].targets, [])


class TestGetSyncJobs(unittest.TestCase):

    def test_jobs_in_declaration_order(self):
        jobs = get_sync_jobs(parse_config(raw_config()))
        self.assertEqual(
            [(job.tenant.name, job.organization_id) for job in jobs],
            [("Tenant A", "org1"), ("Tenant A", "org2"), ("Tenant A", "org3"), ("Tenant B", "org4")],
        )

    def test_jobs_carry_target_mappings(self):
        jobs = get_sync_jobs(parse_config(raw_config()))
        self.assertEqual(jobs[0].mappings[0].action1_custom_attribute, "Entra Groups")
        self.assertEqual(jobs[2].mappings[0].entra_property, "deviceOwnership")


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_load_from_file(self):
        path = os.path.join(self.tmp.name, "config.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(raw_config(), f)
        self.assertEqual(len(load_config(path).tenants), 2)

    def test_missing_file(self):
        with self.assertRaises(ConfigError) as ctx:
            load_config(os.path.join(self.tmp.name, "nope.json"))
        self.assertIn("failed to read config file", str(ctx.exception))

    def test_invalid_json(self):
        path = os.path.join(self.tmp.name, "config.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(ConfigError) as ctx:
            load_config(path)
        self.assertIn("failed to parse config JSON", str(ctx.exception))


class TestTemplate(unittest.TestCase):

    def test_template_passes_validation(self):
        template = build_config_template()
        config = parse_config(template)
        self.assertEqual(config.action1.api_base_url, os.getenv("ACTION1_API_BASE_URL", DEFAULT_ACTION1_API_BASE_URL))
        self.assertEqual(len(get_sync_jobs(config)), 1)


if __name__ == "__main__":
    unittest.main()
