"""Browser runner that shells out to the Playwright test CLI."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path

from change_pipeline.models import RunMode, RunnerOutcome

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 4000
POLL_S = 0.1


class PlaywrightCliRunner:
    """Run ``<command> <script> [--headed] --timeout=<ms>`` inside the script's workspace.

    The child runs in its own process group so that stopping a run also takes
    down the browser processes Playwright spawned.
    """

    def __init__(
        self,
        *,
        command: str = "npx playwright test",
        base_url: str = "",
        process_timeout_s: float | None = None,
        terminate_grace_s: float = 5.0,
    ) -> None:
        self.command = shlex.split(command)
        if not self.command:
            raise ValueError("runner command must not be empty")
        self.base_url = base_url
        self.process_timeout_s = process_timeout_s
        self.terminate_grace_s = terminate_grace_s

    def build_command(self, script_path: Path, mode: RunMode, test_timeout_ms: int) -> list[str]:
        args = [*self.command, script_path.name]
        if mode is RunMode.MANUAL:
            args.append("--headed")
        # Playwright's --timeout bounds the whole test, not a single step.
        args.append(f"--timeout={test_timeout_ms}")
        return args

    def run(
        self,
        script_path: Path,
        mode: RunMode,
        test_timeout_ms: int,
        stop_event: threading.Event | None = None,
    ) -> RunnerOutcome:
        args = self.build_command(script_path, mode, test_timeout_ms)
        env = dict(os.environ)
        if self.base_url:
            env["BASE_URL"] = self.base_url
        deadline = None if self.process_timeout_s is None else time.monotonic() + self.process_timeout_s
        logger.info("browser_runner event=start mode=%s script=%s", mode.value, script_path)
        with subprocess.Popen(
            args,
            cwd=script_path.parent,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=os.name == "posix",
        ) as process:
            while True:
                try:
                    stdout, stderr = process.communicate(timeout=POLL_S)
                    break
                except subprocess.TimeoutExpired:
                    if stop_event is not None and stop_event.is_set():
                        self._stop(process)
                        logger.info("browser_runner event=stopped mode=%s pid=%d", mode.value, process.pid)
                        return RunnerOutcome(passed=False, diagnostic=f"Browser run of {script_path.name} stopped")
                    if deadline is not None and time.monotonic() >= deadline:
                        self._stop(process)
                        return RunnerOutcome(
                            passed=False,
                            diagnostic=(
                                f"Timeout {int((self.process_timeout_s or 0) * 1000)}ms exceeded "
                                f"running {script_path.name}"
                            ),
                        )

        output = "\n".join(part for part in (stdout, stderr) if part).strip()
        passed = process.returncode == 0
        logger.info(
            "browser_runner event=finished mode=%s returncode=%d passed=%s",
            mode.value,
            process.returncode,
            passed,
        )
        return RunnerOutcome(passed=passed, diagnostic="" if passed else output[-MAX_DIAGNOSTIC_CHARS:])

    def _stop(self, process: subprocess.Popen[str]) -> None:
        """Terminate the child's process group, escalating to kill, and reap it."""
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.terminate_grace_s)
        except subprocess.TimeoutExpired:
            logger.warning("browser_runner event=kill pid=%d", process.pid)
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            process.wait()
        try:
            process.communicate(timeout=self.terminate_grace_s)
        except subprocess.TimeoutExpired:
            # A descendant outside the group still holds the pipes.
            logger.warning("browser_runner event=pipes_held pid=%d", process.pid)

    @staticmethod
    def _signal(process: subprocess.Popen[str], signum: int) -> None:
        if os.name == "posix":
            try:
                os.killpg(process.pid, signum)
            except ProcessLookupError:
                pass
        elif signum == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
