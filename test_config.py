import contextlib
import io
import os
import unittest
from unittest.mock import patch

from rollcall.config import (
    AgentConfig,
    HubConfig,
    load_log_level,
    load_mode,
    normalize_server_url,
)
from rollcall.run_node import build_agent_config, build_hub_config, main, parse_args, prompt_missing


class TestHubConfig(unittest.TestCase):
    def test_defaults(self):
        config = HubConfig.from_env({})
        self.assertEqual(config, HubConfig("0.0.0.0", 8080, 30_000, 10_000))

    def test_values_from_environment(self):
        config = HubConfig.from_env({
            "HOST": "127.0.0.1", "PORT": "9001", "STALE_TIMEOUT": "45000", "SWEEP_INTERVAL": "5000",
        })
        self.assertEqual(config.host, "127.0.0.1")
        self.assertEqual(config.port, 9001)
        self.assertEqual(config.stale_timeout_ms, 45_000)
        self.assertEqual(config.sweep_interval_ms, 5_000)

    def test_invalid_values_are_rejected(self):
        for env in ({"PORT": "abc"}, {"PORT": "0"}, {"PORT": "70000"}, {"STALE_TIMEOUT": "-5"}):
            with self.subTest(env=env):
                with self.assertRaises(ValueError):
                    HubConfig.from_env(env)

    def test_flags_override_environment(self):
        args = parse_args(["--port", "9100", "--stale-timeout", "1000"])
        with patch.dict(os.environ, {"PORT": "9001", "SWEEP_INTERVAL": "500"}, clear=True):
            config = build_hub_config(args)
        self.assertEqual(config.port, 9100)
        self.assertEqual(config.stale_timeout_ms, 1000)
        self.assertEqual(config.sweep_interval_ms, 500)


class TestAgentConfig(unittest.TestCase):
    def test_name_and_location_fallbacks(self):
        config = AgentConfig.from_env({"NAME": "bob", "LOCATION": "Paris"})
        self.assertEqual((config.name, config.location), ("bob", "Paris"))

        config = AgentConfig.from_env({"CLIENT_NAME": "alice", "NAME": "bob"})
        self.assertEqual(config.name, "alice")
        self.assertTrue(config.missing)

    def test_with_defaults(self):
        config = AgentConfig().with_defaults()
        self.assertEqual(config.server_url, "ws://localhost:8080")
        self.assertEqual(config.name, "Anonymous")
        self.assertEqual(config.location, "")
        self.assertEqual(config.heartbeat_interval_ms, 5_000)
        self.assertEqual(config.reconnect_delay_ms, 5_000)

    def test_normalize_server_url(self):
        self.assertEqual(normalize_server_url("hub:9000"), "ws://hub:9000")
        self.assertEqual(normalize_server_url(" ws://hub:9000 "), "ws://hub:9000")
        self.assertEqual(normalize_server_url("wss://hub.example"), "wss://hub.example")

    def test_build_from_environment_and_flags(self):
        args = parse_args(["--location", "Berlin", "--heartbeat-interval", "1000"])
        env = {"SERVER_URL": "hub:9000", "NAME": "bob", "LOCATION": "Paris"}
        with patch.dict(os.environ, env, clear=True):
            config = build_agent_config(args, interactive=False)
        self.assertEqual(config.server_url, "ws://hub:9000")
        self.assertEqual(config.name, "bob")
        self.assertEqual(config.location, "Berlin")
        self.assertEqual(config.heartbeat_interval_ms, 1000)

    def test_prompt_fills_only_missing_values(self):
        answers = iter(["hub.local:7000", "Carol"])
        asked = []

        def ask(prompt):
            asked.append(prompt)
            return next(answers)

        with contextlib.redirect_stdout(io.StringIO()):
            config = prompt_missing(AgentConfig(location="Rome"), ask=ask)

        self.assertEqual(len(asked), 2)
        self.assertEqual(config.server_url, "ws://hub.local:7000")
        self.assertEqual(config.name, "Carol")
        self.assertEqual(config.location, "Rome")

    def test_blank_prompt_answers_fall_back_to_defaults(self):
        with contextlib.redirect_stdout(io.StringIO()):
            config = prompt_missing(AgentConfig(), ask=lambda prompt: "  ")
        config = config.with_defaults()
        self.assertEqual(config.server_url, "ws://localhost:8080")
        self.assertEqual(config.name, "Anonymous")


class TestModeAndMain(unittest.TestCase):
    def test_load_mode(self):
        self.assertEqual(load_mode({}), "server")
        self.assertEqual(load_mode({"MODE": "Client"}), "client")
        with self.assertRaises(ValueError):
            load_mode({"MODE": "relay"})

    def test_load_log_level(self):
        self.assertEqual(load_log_level({}), "INFO")
        self.assertEqual(load_log_level({"LOG_LEVEL": "debug"}), "DEBUG")

    def test_main_exits_with_status_1_on_bad_mode(self):
        stderr = io.StringIO()
        with patch.dict(os.environ, {"MODE": "relay"}, clear=True), contextlib.redirect_stderr(stderr):
            with self.assertRaises(SystemExit) as cm:
                main([])
        self.assertEqual(cm.exception.code, 1)
        self.assertIn("Invalid MODE", stderr.getvalue())

    def test_non_positive_flag_is_rejected(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                parse_args(["--port", "0"])


if __name__ == "__main__":
    unittest.main()
