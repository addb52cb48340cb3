import contextlib
import io
import sys
import tempfile
import unittest
from pathlib import Path


class TestDaemonMain(unittest.TestCase):
    def test_config_prints_effective_settings(self) -> None:
        import yaml

        from cabal.daemon_main import main

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "settings.yaml"
            p.write_text("max_agents: 4\nbridge: {port: 9100}\n", encoding="utf-8")
            out = io.StringIO()
            with contextlib.redirect_stdout(out):
                rc = main(["config", "--config", str(p)])
        self.assertEqual(rc, 0)
        doc = yaml.safe_load(out.getvalue())
        self.assertEqual(doc["max_agents"], 4)
        self.assertEqual(doc["bridge"]["port"], 9100)

    def test_invalid_config_exits_2(self) -> None:
        from cabal.daemon_main import main

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "settings.yaml"
            p.write_text("max_agents: 0\n", encoding="utf-8")
            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                rc = main(["config", "--config", str(p)])
        self.assertEqual(rc, 2)
        self.assertIn("invalid settings", err.getvalue())

    def test_run_flags_override_settings(self) -> None:
        import argparse

        from cabal.daemon_main import MOCK_AGENT_COMMAND, _settings_from_args

        with tempfile.TemporaryDirectory() as td:
            args = argparse.Namespace(
                config=str(Path(td) / "none.yaml"),
                host=None,
                port=0,
                web_port=8900,
                max_agents=2,
                mock=True,
            )
            s = _settings_from_args(args)
        self.assertEqual(s.max_agents, 2)
        self.assertEqual(s.agent_command, MOCK_AGENT_COMMAND)
        self.assertEqual(s.agent_command[0], sys.executable)
        self.assertEqual((s.bridge.host, s.bridge.port), ("127.0.0.1", 0))
        self.assertEqual((s.web.host, s.web.port), ("127.0.0.1", 8900))


if __name__ == "__main__":
    unittest.main()
