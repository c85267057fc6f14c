import io
import os
import subprocess
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import ollama_ctl
from ollama_api import GIB, RunningModel
from service import AppContext, RecordingController
from tui_base import ExternalCommandError, ScreenPainter, ServiceNotRespondingError


class FakeClient:
    base_url = "http://localhost:11434"

    def __init__(self, frames):
        self.frames = list(frames)

    def running_models(self):
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame


class StatusTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.ctx = AppContext(override_dir=Path(self._tmp.name))
        self.ctx._checks.update({"systemd": True, "cmd:nvidia-smi": False})
        env = patch.dict(os.environ, {"NO_COLOR": "1"})
        env.start()
        self.addCleanup(env.stop)

    def test_report_covers_service_network_settings_and_ui(self):
        self.ctx.advanced_file.write_text('[Service]\nEnvironment="OLLAMA_CONTEXT_LENGTH=8192"\n')
        controller = RecordingController(environment="Environment=OLLAMA_HOST=0.0.0.0")
        lines = ollama_ctl.status_report(self.ctx, controller, alive=lambda url: url.endswith("11434"))
        text = "\n".join(lines)
        self.assertIn("Service:  active", text)
        self.assertIn("API:      responding", text)
        self.assertIn("exposed to the network", text)
        self.assertIn("8192", text)
        self.assertIn("RAM:", text)
        self.assertIn("UI:       not responding", text)

    def test_gpu_summary_parses_nvidia_smi(self):
        self.ctx._checks["cmd:nvidia-smi"] = True
        output = "NVIDIA GeForce RTX 4090, 1024, 24564, 7\n"
        with patch("ollama_ctl.run", return_value=subprocess.CompletedProcess([], 0, output, "")):
            lines = ollama_ctl.gpu_summary(self.ctx)
        self.assertEqual(lines, ["NVIDIA GeForce RTX 4090: 1024 / 24564 MiB, 7% utilisation"])

    def test_restart_command(self):
        controller = RecordingController()
        stdout = io.StringIO()
        with redirect_stdout(stdout), patch("ollama_ctl.configure_logging"), patch("ollama_ctl.ensure_root"), patch(
            "service.wait_for_service"
        ):
            rc = ollama_ctl.main(["restart", "--no-gpu-reset"], ctx=self.ctx, controller=controller)
        self.assertEqual(rc, 0)
        self.assertEqual(controller.calls, ["stop", "start"])
        self.assertIn("restarted successfully", stdout.getvalue())

    def test_stop_needs_known_unit(self):
        controller = RecordingController(known=False)
        stderr = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(stderr), patch("ollama_ctl.configure_logging"):
            rc = ollama_ctl.main(["stop"], ctx=self.ctx, controller=controller)
        self.assertEqual(rc, 1)
        self.assertEqual(controller.calls, [])

    def test_logs_default_to_follow(self):
        controller = RecordingController()
        with patch("ollama_ctl.managed_process") as managed, redirect_stdout(io.StringIO()):
            managed.return_value.__enter__.return_value.wait.return_value = 0
            rc = ollama_ctl.show_logs(self.ctx, controller, [])
        self.assertEqual(rc, 0)
        managed.assert_called_once_with(["journalctl", "-u", "ollama.service", "-f"])

    def test_logs_pass_arguments_through(self):
        with patch("ollama_ctl.managed_process") as managed, redirect_stdout(io.StringIO()):
            managed.return_value.__enter__.return_value.wait.return_value = 0
            ollama_ctl.show_logs(self.ctx, RecordingController(), ["-n", "50"])
        managed.assert_called_once_with(["journalctl", "-u", "ollama.service", "-n", "50"])


class DiagnoseTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        root = Path(self._tmp.name)
        override_dir = root / "ollama.service.d"
        override_dir.mkdir()
        (override_dir / "10-expose-network.conf").write_text('[Service]\nEnvironment="OLLAMA_HOST=0.0.0.0"\n')
        self.webui_dir = root / "openwebui"
        self.webui_dir.mkdir()
        (self.webui_dir / "docker-compose.yaml").write_text("services:\n  open-webui:\n    image: ghcr.io/open-webui/open-webui:main\n")
        self.ctx = AppContext(override_dir=override_dir, webui_dir=self.webui_dir)
        self.ctx._checks.update(
            {
                "systemd": True,
                "cmd:uname": True,
                "cmd:id": True,
                "cmd:lscpu": False,
                "cmd:df": True,
                "cmd:docker": True,
                "cmd:nvidia-smi": False,
                "cmd:ollama": True,
                "cmd:systemctl": True,
                "cmd:ss": False,
                "cmd:ufw": False,
                "cmd:firewall-cmd": False,
            }
        )
        self.calls = []
        env = patch.dict(os.environ, {"NO_COLOR": "1", "SUDO_USER": "operator"})
        env.start()
        self.addCleanup(env.stop)

    def runner(self, cmd, timeout=None, cwd=None):
        self.calls.append((cmd, cwd))
        if cmd[0] == "ollama":
            return subprocess.CompletedProcess(cmd, 1, "", "boom\n")
        return subprocess.CompletedProcess(cmd, 0, f"{cmd[0]} output\n", "")

    def report(self):
        controller = RecordingController(
            environment="Environment=OLLAMA_HOST=0.0.0.0", journal="first line\nsecond line\n"
        )
        return ollama_ctl.diagnostic_report(
            self.ctx,
            controller,
            compose=["docker", "compose"],
            runner=self.runner,
            alive=lambda url: False,
            now=datetime(2024, 1, 2, 3, 4, 5),
        )

    def test_report_has_every_section(self):
        lines = self.report()
        self.assertEqual(lines[1], "Generated on: 2024-01-02 03:04:05")
        for title in (
            "System Information",
            "Dependency Versions",
            "GPU Information",
            "Ollama Diagnostics",
            "OpenWebUI Diagnostics",
            "Network Diagnostics",
        ):
            self.assertIn(f"===== {title} =====", lines)
        self.assertEqual(lines[-1], "Diagnostic report complete.")

    def test_command_results_are_reported(self):
        lines = self.report()
        self.assertIn("  CPU Info: Not found", lines)
        self.assertIn("  User Groups for 'operator':", lines)
        self.assertIn("  Ollama Version: Failed (code: 1)", lines)
        self.assertIn("    boom", lines)
        self.assertIn("  Listening Ports: Not found", lines)
        self.assertIn("  nvidia-smi not found. Skipping GPU diagnostics.", lines)

    def test_service_and_override_details(self):
        lines = self.report()
        self.assertIn("  Network Exposure: Exposed (0.0.0.0)", lines)
        self.assertIn('    Environment="OLLAMA_HOST=0.0.0.0"', lines)
        self.assertIn("    second line", lines)
        self.assertIn((["systemctl", "status", "ollama.service", "--no-pager"], None), self.calls)

    def test_compose_commands_run_in_project_directory(self):
        lines = self.report()
        self.assertIn("    image: ghcr.io/open-webui/open-webui:main", lines)
        self.assertIn((["docker", "compose", "ps"], str(self.webui_dir)), self.calls)
        self.assertIn((["docker", "compose", "logs", "--tail=20"], str(self.webui_dir)), self.calls)

    def test_missing_compose_is_noted(self):
        controller = RecordingController()
        lines = ollama_ctl.diagnostic_report(self.ctx, controller, compose=None, runner=self.runner, alive=lambda url: False)
        self.assertIn("  Docker Compose Version: Not found", lines)
        self.assertFalse(any(cmd[:2] == ["docker", "compose"] for cmd, _ in self.calls))

    def test_output_option_writes_file(self):
        target = Path(self._tmp.name) / "diag-report.txt"
        stdout = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(io.StringIO()), patch("ollama_ctl.configure_logging"), patch(
            "ollama_ctl.compose_command", return_value=["docker", "compose"]
        ), patch("ollama_ctl.diagnostic_report", return_value=["report", "body"]):
            rc = ollama_ctl.main(["diagnose", "-o", str(target)], ctx=self.ctx, controller=RecordingController())
        self.assertEqual(rc, 0)
        self.assertEqual(target.read_text(), "report\nbody\n")
        self.assertIn("saved to", stdout.getvalue())

    def test_unwritable_output_is_reported(self):
        with self.assertRaises(ExternalCommandError):
            ollama_ctl.write_report(["x"], Path(self._tmp.name) / "missing" / "report.txt")


class WatchTests(unittest.TestCase):
    def setUp(self):
        env = patch.dict(os.environ, {"NO_COLOR": "1"})
        env.start()
        self.addCleanup(env.stop)

    def test_running_table_columns(self):
        lines = ollama_ctl.running_table([RunningModel("llama3:8b", 5 * GIB, 5 * GIB, 8192)])
        self.assertEqual(lines[0].split(), ["NAME", "SIZE", "PROCESSOR", "CONTEXT"])
        self.assertEqual(lines[1].split(), ["llama3:8b", "5.00", "GB", "GPU", "8192"])

    def test_frame_reports_connection_failure(self):
        client = FakeClient([ServiceNotRespondingError("down")])
        lines = ollama_ctl.watch_frame(client, now=datetime(2024, 1, 2, 3, 4, 5))
        self.assertIn("Could not connect", lines[0])
        self.assertTrue(lines[-1].startswith("2024-01-02 03:04:05"))

    def test_watch_redraws_in_place(self):
        client = FakeClient([[], [RunningModel("phi3", GIB, 0, None)]])
        stream = io.StringIO()
        sleeps = []
        ollama_ctl.watch(client, painter=ScreenPainter(stream, width=80), sleep=sleeps.append, frames=2)
        output = stream.getvalue()
        self.assertIn("No models are currently loaded", output)
        self.assertIn("\r\033[2A", output)
        self.assertIn("phi3", output)
        self.assertEqual(sleeps, [1.0])

    def test_self_test(self):
        stdout = io.StringIO()
        with redirect_stdout(stdout), patch("ollama_ctl.configure_logging"):
            rc = ollama_ctl.main(["--test"])
        self.assertEqual(rc, 0)


if __name__ == "__main__":
    unittest.main()
