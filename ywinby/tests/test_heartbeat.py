import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from ywinby import heartbeat
from ywinby.config import Settings, load_settings, write_client_config
from ywinby.identity import GoogleIdentityVerifier
from ywinby.push import generate_vapid_keys
from ywinby.scheduler import RunReport, Scheduler
from ywinby.store import JsonFileStore
from ywinby.supabase_store import SupabaseStore


class SettingsTests(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {"PUSH_PRIVKEY": "priv", "PUSH_PUBKEY": "pub"}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.storage, "json")
        self.assertEqual(settings.data_dir, "db")
        self.assertEqual(settings.scheduled_task_period, 3600)
        self.assertFalse(settings.block_registration)

    def test_required_values(self):
        with patch.dict(os.environ, {"PUSH_PUBKEY": "pub"}, clear=True):
            with self.assertRaises(RuntimeError):
                load_settings()

        env = {"PUSH_PRIVKEY": "priv", "PUSH_PUBKEY": "pub", "STORAGE": "supabase"}
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(RuntimeError):
                load_settings()

    def test_parses_typed_values(self):
        env = {
            "PUSH_PRIVKEY": "priv",
            "PUSH_PUBKEY": "pub",
            "SCHEDULED_TASK_PERIOD": "600",
            "BLOCK_REGISTRATION": "true",
            "SERVERLESS_TOKEN": "cron-secret",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.scheduled_task_period, 600)
        self.assertTrue(settings.block_registration)
        self.assertEqual(settings.serverless_token, "cron-secret")

        with patch.dict(os.environ, dict(env, SCHEDULED_TASK_PERIOD="soon"), clear=True):
            with self.assertRaises(RuntimeError):
                load_settings()

    def test_write_client_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            target = write_client_config(
                Settings(push_pubkey="pub-key", base_api_path="https://ywinby.example"), tmp
            )
            config = json.loads(target.read_text(encoding="utf-8"))

        self.assertEqual(config, {"api_url": "https://ywinby.example", "push_pubkey_base64": "pub-key"})


class HeartbeatTests(unittest.TestCase):
    def test_build_store_picks_backend(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertIsInstance(heartbeat.build_store(Settings(data_dir=tmp)), JsonFileStore)

        with patch.object(heartbeat.SupabaseStore, "from_credentials", return_value="remote") as mocked:
            store = heartbeat.build_store(Settings(storage="supabase", supabase_url="u", supabase_key="k"))

        self.assertEqual(store, "remote")
        mocked.assert_called_once_with("u", "k")
        self.assertTrue(issubclass(SupabaseStore, heartbeat.MessageStore))

    def test_build_service_wires_settings(self):
        private_key, _ = generate_vapid_keys()
        with tempfile.TemporaryDirectory() as tmp:
            settings = Settings(
                data_dir=tmp,
                push_privkey=private_key,
                client_id="client-id",
                scheduled_task_period=600,
                block_registration=True,
                serverless_token="cron-secret",
            )

            service = heartbeat.build_service(settings)

        self.assertIsInstance(service.store, JsonFileStore)
        self.assertIs(service.scheduler.store, service.store)
        self.assertIs(service.scheduler.dispatcher, service.dispatcher)
        self.assertIsInstance(service.verify_bearer.__self__, GoogleIdentityVerifier)
        self.assertEqual(service.verify_bearer.__self__.client_id, "client-id")
        self.assertEqual(service.scheduled_task_period, 600)
        self.assertTrue(service.block_registration)
        self.assertEqual(service.serverless_token, "cron-secret")

    def _env(self, tmp: str, **extra) -> dict:
        private_key, public_key = generate_vapid_keys()
        env = {
            "PUSH_PRIVKEY": private_key,
            "PUSH_PUBKEY": public_key,
            "DATA_DIR": os.path.join(tmp, "db"),
        }
        env.update(extra)
        return env

    def test_loop_is_not_started_when_runs_are_triggered_externally(self):
        with tempfile.TemporaryDirectory() as tmp:
            with (
                patch.dict(os.environ, self._env(tmp, SERVERLESS_TOKEN="cron-secret"), clear=True),
                patch.object(heartbeat, "STATIC_DIR", Path(tmp) / "static"),
                patch.object(heartbeat, "run_forever") as mocked_loop,
                redirect_stdout(io.StringIO()) as out,
            ):
                self.assertEqual(heartbeat.main(["--loop"]), 0)

        mocked_loop.assert_not_called()
        self.assertIn("not starting the resident scheduler", out.getvalue())

    def test_loop_starts_the_resident_scheduler(self):
        with tempfile.TemporaryDirectory() as tmp:
            with (
                patch.dict(os.environ, self._env(tmp, SCHEDULED_TASK_PERIOD="600"), clear=True),
                patch.object(heartbeat, "STATIC_DIR", Path(tmp) / "static"),
                patch.object(heartbeat, "run_forever", return_value=0) as mocked_loop,
                redirect_stdout(io.StringIO()),
            ):
                self.assertEqual(heartbeat.main(["--loop"]), 0)

        scheduler, every_seconds = mocked_loop.call_args.args
        self.assertIsInstance(scheduler, Scheduler)
        self.assertEqual(every_seconds, 600)

    def test_single_pass_goes_through_the_trigger_when_a_token_is_set(self):
        with tempfile.TemporaryDirectory() as tmp:
            with (
                patch.dict(os.environ, self._env(tmp, SERVERLESS_TOKEN="cron-secret"), clear=True),
                patch.object(heartbeat, "STATIC_DIR", Path(tmp) / "static"),
                patch.object(
                    heartbeat.Service, "trigger_scheduler_run", autospec=True, return_value=RunReport()
                ) as mocked_trigger,
                redirect_stdout(io.StringIO()),
            ):
                self.assertEqual(heartbeat.main([]), 0)

        self.assertEqual(mocked_trigger.call_args.args[1], "cron-secret")

    def test_generate_prints_a_key_pair(self):
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(heartbeat.main(["--generate"]), 0)

        self.assertIn("privateKey:", out.getvalue())
        self.assertIn("publicKey:", out.getvalue())

    def test_single_pass_over_an_empty_store(self):
        private_key, public_key = generate_vapid_keys()
        with tempfile.TemporaryDirectory() as tmp:
            env = {
                "PUSH_PRIVKEY": private_key,
                "PUSH_PUBKEY": public_key,
                "DATA_DIR": os.path.join(tmp, "db"),
            }
            with (
                patch.dict(os.environ, env, clear=True),
                patch.object(heartbeat, "STATIC_DIR", Path(tmp) / "static"),
                redirect_stdout(io.StringIO()),
            ):
                self.assertEqual(heartbeat.main([]), 0)

            self.assertTrue((Path(tmp) / "static" / "runtime-config.json").exists())
            self.assertTrue((Path(tmp) / "db" / "messages").is_dir())

    def test_run_retries_transient_failures_only(self):
        with (
            patch.object(heartbeat, "main", side_effect=[RuntimeError("503 Service Unavailable"), 0]) as mocked_main,
            patch.object(heartbeat.time, "sleep") as mocked_sleep,
            redirect_stdout(io.StringIO()),
        ):
            self.assertEqual(heartbeat.run(), 0)

        self.assertEqual(mocked_main.call_count, 2)
        mocked_sleep.assert_called_once_with(15)

        with (
            patch.object(heartbeat, "main", side_effect=RuntimeError("Missing required environment variable: PUSH_PRIVKEY")),
            redirect_stdout(io.StringIO()),
        ):
            self.assertEqual(heartbeat.run(), 1)

    def test_transient_error_detection(self):
        self.assertTrue(heartbeat.is_transient_error_message("ConnectionError: reset by peer"))
        self.assertTrue(heartbeat.is_transient_error_message("Read timeout"))
        self.assertFalse(heartbeat.is_transient_error_message("owner must not be empty"))


if __name__ == "__main__":
    unittest.main()
