"""
Tests for main.py: CLI commands and exit codes.

The sync itself is replaced with a mock; logging setup and .env loading are
patched out so nothing is written outside the temp directory.
"""

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from entra2action1.main import main, save_results
from entra2action1.secret_store import SecretStore
from entra2action1.sync_engine import JobResult, RunSummary


def _summary(dry_run=True, error=None):
    result = JobResult("Tenant A", "org1", dry_run=dry_run, error=error)
    if error is None:
        result.patches_planned = 1
    return RunSummary(dry_run=dry_run, jobs=1, total_planned_patches=1, total_applied_patches=0, results=[result])


class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dir = Path(self.tmp.name)
        self.config_path = self.dir / "config.json"
        self.secrets_path = self.dir / "secrets.env"

        for target in ("entra2action1.main.setup_logger", "entra2action1.main.load_environment"):
            p = patch(target)
            p.start()
            self.addCleanup(p.stop)

        env = {k: v for k, v in os.environ.items() if not k.startswith("E2A1_SECRET_") and k != "LOG_LEVEL"}
        env_patch = patch.dict(os.environ, env, clear=True)
        env_patch.start()
        self.addCleanup(env_patch.stop)

    def run_cli(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(list(argv))
        return code, out.getvalue()

    def init_config(self):
        code, _ = self.run_cli("config", "init", "--config", str(self.config_path))
        self.assertEqual(code, 0)

    def store_secrets(self):
        store = SecretStore(self.secrets_path)
        store.set_secret("entra:tenant-a", "entra-secret")
        store.set_secret("action1:main", "a1-secret")


class TestConfigCommand(CliTestCase):

    def test_init_then_validate(self):
        self.init_config()
        self.assertIn("tenants", json.loads(self.config_path.read_text(encoding="utf-8")))

        code, out = self.run_cli("config", "validate", "--config", str(self.config_path))
        self.assertEqual(code, 0)
        self.assertIn("1 job(s)", out)

    def test_init_refuses_to_overwrite(self):
        self.init_config()
        code, out = self.run_cli("config", "init", "--config", str(self.config_path))
        self.assertEqual(code, 1)
        self.assertIn("Refusing to overwrite", out)

    def test_show_masks_client_ids(self):
        self.init_config()
        code, out = self.run_cli("config", "show", "--config", str(self.config_path))
        self.assertEqual(code, 0)
        self.assertIn("Tenant: Tenant A", out)
        self.assertIn("clientId: 0000…0000", out)

    def test_invalid_config_exits_1(self):
        self.config_path.write_text("{}", encoding="utf-8")
        code, _ = self.run_cli("config", "validate", "--config", str(self.config_path))
        self.assertEqual(code, 1)


class TestSecretsCommand(CliTestCase):

    def test_set_get_list_delete(self):
        secrets = ["--secrets-file", str(self.secrets_path)]

        code, _ = self.run_cli("secrets", "set", "--ref", "action1:main", "--value", "abc123", *secrets)
        self.assertEqual(code, 0)

        code, out = self.run_cli("secrets", "get", "--ref", "action1:main", *secrets)
        self.assertEqual(code, 0)
        self.assertIn("length 6", out)
        self.assertNotIn("abc123", out)

        code, out = self.run_cli("secrets", "list", *secrets)
        self.assertEqual(out.strip(), "action1:main")

        code, _ = self.run_cli("secrets", "delete", "--ref", "action1:main", *secrets)
        self.assertEqual(code, 0)

        code, out = self.run_cli("secrets", "get", "--ref", "action1:main", *secrets)
        self.assertEqual(code, 1)
        self.assertIn("not set", out)

    @patch("entra2action1.main.getpass.getpass", return_value="prompted")
    def test_set_prompts_without_value(self, mock_getpass):
        code, _ = self.run_cli("secrets", "set", "--ref", "entra:a", "--secrets-file", str(self.secrets_path))
        self.assertEqual(code, 0)
        self.assertEqual(SecretStore(self.secrets_path).get_secret("entra:a"), "prompted")

    def test_ref_required(self):
        code, _ = self.run_cli("secrets", "get", "--secrets-file", str(self.secrets_path))
        self.assertEqual(code, 1)


@patch("entra2action1.main.save_results")
@patch("entra2action1.main.run_sync")
class TestSyncCommand(CliTestCase):

    def sync_args(self, *extra):
        return ("sync", "--config", str(self.config_path), "--secrets-file", str(self.secrets_path)) + extra

    def test_dry_run_by_default(self, mock_run_sync, mock_save):
        self.init_config()
        self.store_secrets()
        mock_run_sync.return_value = _summary()

        code, out = self.run_cli(*self.sync_args())

        self.assertEqual(code, 0)
        self.assertIn("DRY RUN", out)
        config, = mock_run_sync.call_args.args
        options = mock_run_sync.call_args.kwargs["options"]
        self.assertTrue(options.dry_run)
        self.assertEqual(options.max_patches_per_job, 50)
        self.assertEqual(options.max_total_patches, 200)
        self.assertEqual(config.action1.client_secret, "a1-secret")
        mock_save.assert_called_once()

    def test_apply_and_limits(self, mock_run_sync, mock_save):
        self.init_config()
        self.store_secrets()
        mock_run_sync.return_value = _summary(dry_run=False)

        self.run_cli(*self.sync_args("--apply", "--max-total-patches", "10", "--no-cache-entra"))

        options = mock_run_sync.call_args.kwargs["options"]
        self.assertFalse(options.dry_run)
        self.assertEqual(options.max_total_patches, 10)
        self.assertFalse(options.cache_entra_devices)

    def test_failed_job_exit_code(self, mock_run_sync, mock_save):
        self.init_config()
        self.store_secrets()
        mock_run_sync.return_value = _summary(error="boom")

        code, out = self.run_cli(*self.sync_args())

        self.assertEqual(code, 2)
        self.assertIn("FAILED: boom", out)

    def test_missing_secrets_exit_1(self, mock_run_sync, mock_save):
        self.init_config()
        code, _ = self.run_cli(*self.sync_args())
        self.assertEqual(code, 1)
        mock_run_sync.assert_not_called()

    def test_failures_logged_as_warning(self, mock_run_sync, mock_save):
        self.init_config()
        self.store_secrets()
        mock_run_sync.return_value = _summary(error="boom")

        with self.assertLogs("entra2action1.main", level="WARNING") as logs:
            self.run_cli(*self.sync_args())

        self.assertTrue(any("jobsFailed=1" in line for line in logs.output))

    def test_help_states_limit_defaults(self, mock_run_sync, mock_save):
        out = io.StringIO()
        with redirect_stdout(out), self.assertRaises(SystemExit) as ctx:
            main(list(self.sync_args("--help")))

        self.assertEqual(ctx.exception.code, 0)
        help_text = " ".join(out.getvalue().split())
        self.assertIn("Most patches sent for one job (default: 50)", help_text)
        self.assertIn("also with --apply (default: 200)", help_text)
        self.assertIn("Action1 endpoints requested per page (default: 50)", help_text)
        mock_run_sync.assert_not_called()

    def test_non_positive_limit_rejected(self, mock_run_sync, mock_save):
        with redirect_stdout(io.StringIO()), patch("sys.stderr", io.StringIO()):
            with self.assertRaises(SystemExit):
                main(list(self.sync_args("--max-total-patches", "0")))


class TestSaveResults(unittest.TestCase):

    def test_writes_json_report(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = save_results(_summary(error="boom"), output_dir=Path(tmp))
            data = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(data["jobs_failed"], 1)
        self.assertEqual(data["results"][0], {
            "tenant_name": "Tenant A",
            "organization_id": "org1",
            "error": "boom",
            "dry_run": True,
        })


if __name__ == "__main__":
    unittest.main()
