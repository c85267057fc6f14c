import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

import config_ollama
from fakes import ESC, ScriptedTerminal, char
from reconciler import CONTEXT_LENGTH, NUM_PARALLEL, ConfigSession, EditResult, NetworkMode
from service import AppContext, RecordingController
from tui_base import ScreenPainter


class ConfigTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.dir = Path(self._tmp.name)
        self.ctx = AppContext(override_dir=self.dir)
        self.ctx._checks["systemd"] = True
        self.controller = RecordingController()
        env = patch.dict(os.environ, {"NO_COLOR": "1"})
        env.start()
        self.addCleanup(env.stop)

    def run_main(self, *argv, terminal=None):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr), patch("config_ollama.configure_logging"):
            rc = config_ollama.main(list(argv), ctx=self.ctx, controller=self.controller, terminal=terminal)
        return rc, stdout.getvalue(), stderr.getvalue()


class FlagParsingTests(ConfigTestCase):
    def parse(self, *argv):
        args = config_ollama.build_parser().parse_args(list(argv))
        return config_ollama.request_from_args(args)

    def test_no_flags_is_interactive(self):
        request, error = self.parse()
        self.assertIsNone(error)
        self.assertTrue(request.interactive)

    def test_restart_alone_stays_interactive(self):
        request, _ = self.parse("--restart")
        self.assertTrue(request.interactive)

    def test_numeric_flags_are_validated(self):
        _, error = self.parse("--context-length", "abc")
        self.assertIn("--context-length", error)
        request, error = self.parse("--num-parallel", "2", "--expose")
        self.assertIsNone(error)
        self.assertEqual(request.num_parallel, "2")
        self.assertIs(request.network, NetworkMode.NETWORK)

    def test_expose_and_restrict_are_exclusive(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                config_ollama.build_parser().parse_args(["--expose", "--restrict"])
        self.assertEqual(ctx.exception.code, 1)


class MainTests(ConfigTestCase):
    def test_relative_models_dir_exits_without_writing(self):
        with patch("config_ollama.ensure_root") as guard:
            rc, _, err = self.run_main("--models-dir", "relative/path")
        self.assertEqual(rc, 1)
        self.assertIn("must be absolute", err)
        guard.assert_not_called()
        self.assertEqual(list(self.dir.iterdir()), [])

    def test_flags_write_and_reload(self):
        with patch("config_ollama.ensure_root") as guard:
            rc, out, _ = self.run_main("--context-length", "8192", "--num-parallel", "2")
        self.assertEqual(rc, 0)
        guard.assert_called_once()
        self.assertEqual(
            self.ctx.advanced_file.read_text(),
            '[Service]\nEnvironment="OLLAMA_CONTEXT_LENGTH=8192"\nEnvironment="OLLAMA_NUM_PARALLEL=2"\n',
        )
        self.assertEqual(self.controller.calls, ["daemon_reload"])
        self.assertIn("Configuration updated", out)

    def test_unchanged_flags_skip_root_and_reload(self):
        with patch("config_ollama.ensure_root") as guard:
            rc, out, _ = self.run_main("--restrict")
        self.assertEqual(rc, 0)
        guard.assert_not_called()
        self.assertEqual(self.controller.calls, [])
        self.assertIn("No change needed", out)
        self.assertIn("No changes were made", out)

    def test_restart_flag_restarts(self):
        with patch("config_ollama.ensure_root"), patch("reconciler.restart_ollama") as restart:
            rc, _, _ = self.run_main("--expose", "--restart")
        self.assertEqual(rc, 0)
        self.assertTrue(self.ctx.network_file.exists())
        restart.assert_called_once()

    def test_status_needs_no_root(self):
        self.ctx.advanced_file.write_text('[Service]\nEnvironment="KV_CACHE_TYPE=q8_0"\n')
        with patch("config_ollama.ensure_root") as guard:
            rc, out, _ = self.run_main("--status")
        self.assertEqual(rc, 0)
        guard.assert_not_called()
        self.assertIn("q8_0", out)
        self.assertIn("RESTRICTED", out)

    def test_missing_unit_is_reported(self):
        self.controller.known = False
        rc, _, err = self.run_main("--expose")
        self.assertEqual(rc, 1)
        self.assertIn("ollama.service was not found", err)

    def test_self_test_passes(self):
        rc, out, _ = self.run_main("--test")
        self.assertEqual(rc, 0)
        self.assertIn("All self-tests passed", out)


class InteractiveTests(ConfigTestCase):
    def run_menu(self, keys, confirms=(), lines=()):
        terminal = ScriptedTerminal(keys, confirms, lines)
        painter = ScreenPainter(io.StringIO(), width=100)
        with redirect_stdout(io.StringIO()):
            rc = config_ollama.run_interactive(
                ConfigSession.load(self.ctx), self.ctx, self.controller, terminal, painter=painter
            )
        return rc, terminal

    def test_stage_and_save(self):
        # 3) context length, preset 3 (8192); 4) parallel, preset 2; save; decline restart
        rc, terminal = self.run_menu([char("3"), char("3"), char("4"), char("2"), char("s")], confirms=[False])
        self.assertEqual(rc, 0)
        self.assertEqual(
            self.ctx.advanced_file.read_text(),
            '[Service]\nEnvironment="OLLAMA_CONTEXT_LENGTH=8192"\nEnvironment="OLLAMA_NUM_PARALLEL=2"\n',
        )
        self.assertEqual(self.controller.calls, ["daemon_reload"])

    def test_custom_value_via_line_editor(self):
        rc, _ = self.run_menu([char("3"), char("c"), char("s")], confirms=[False], lines=["12288"])
        self.assertEqual(rc, 0)
        self.assertIn("OLLAMA_CONTEXT_LENGTH=12288", self.ctx.advanced_file.read_text())

    def test_quit_with_changes_asks_first(self):
        rc, terminal = self.run_menu([char("1"), char("e"), ESC, char("q")], confirms=[False, True])
        self.assertEqual(rc, 0)
        self.assertEqual(len(terminal.questions), 2)
        self.assertFalse(self.ctx.network_file.exists())

    def test_save_without_changes_writes_nothing(self):
        rc, _ = self.run_menu([char("s")])
        self.assertEqual(rc, 0)
        self.assertEqual(list(self.dir.iterdir()), [])
        self.assertEqual(self.controller.calls, [])

    def test_discard_clears_pending(self):
        rc, _ = self.run_menu([char("1"), char("e"), char("c"), char("s")])
        self.assertEqual(rc, 0)
        self.assertFalse(self.ctx.network_file.exists())


class EditorTests(ConfigTestCase):
    def test_invalid_custom_number_is_rejected(self):
        session = ConfigSession.load(self.ctx)
        terminal = ScriptedTerminal([char("c")], lines=["12ab"])
        painter = ScreenPainter(io.StringIO(), width=100)
        result, message = config_ollama.edit_setting(
            config_ollama.SETTINGS_BY_KEY[NUM_PARALLEL], session, terminal, painter
        )
        self.assertIs(result, EditResult.CANCELLED)
        self.assertIn("non-negative", message)
        self.assertFalse(session.has_changes())

    def test_remove_option_unsets(self):
        self.ctx.advanced_file.write_text('[Service]\nEnvironment="OLLAMA_CONTEXT_LENGTH=4096"\n')
        session = ConfigSession.load(self.ctx)
        terminal = ScriptedTerminal([char("r")])
        painter = ScreenPainter(io.StringIO(), width=100)
        result, _ = config_ollama.edit_setting(config_ollama.SETTINGS_BY_KEY[CONTEXT_LENGTH], session, terminal, painter)
        self.assertIs(result, EditResult.CHANGED)
        self.assertIsNone(session.value(CONTEXT_LENGTH))

    def test_main_menu_shows_pending_arrow(self):
        session = ConfigSession.load(self.ctx)
        session.expose()
        frame = "\n".join(config_ollama.render_main_menu(session))
        self.assertIn("RESTRICTED → EXPOSED", frame)


if __name__ == "__main__":
    unittest.main()
