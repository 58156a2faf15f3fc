from __future__ import annotations

import logging
import shlex
import subprocess
from typing import List

from .errors import ActionFailure

logger = logging.getLogger("shutdownd.action")

DEFAULT_SHUTDOWN_CMD = "shutdown -h now"


class ShutdownCommand:
    """Runs the OS shutdown command once. Any failure raises ActionFailure."""

    def __init__(self, cmd: str = DEFAULT_SHUTDOWN_CMD, *, dry_run: bool = False, timeout_sec: float = 60.0) -> None:
        self.argv: List[str] = shlex.split(cmd)
        if not self.argv:
            raise ValueError("shutdown command is empty")
        self.dry_run = dry_run
        self.timeout_sec = timeout_sec

    def __call__(self) -> None:
        if self.dry_run:
            logger.warning("Dry run; not executing shutdown command: %s", shlex.join(self.argv))
            return

        logger.warning("Executing shutdown command: %s", shlex.join(self.argv))
        try:
            subprocess.run(self.argv, check=True, timeout=self.timeout_sec)
        except subprocess.CalledProcessError as exc:
            raise ActionFailure(f"failed to call shutdown: exit status {exc.returncode}") from exc
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ActionFailure(f"failed to call shutdown: {exc}") from exc
