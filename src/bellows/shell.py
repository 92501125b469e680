import logging
import subprocess
import time
from pathlib import Path
from typing import Dict, Any, Sequence

from common.cancel import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
POLL_INTERVAL = 0.1


class ShellRunner:
    def __init__(self, root_path: str | Path, timeout: float = DEFAULT_TIMEOUT):
        self.root_path = Path(root_path)
        self.timeout = timeout

    def run_command(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> Dict[str, Any]:
        limit = timeout or self.timeout
        try:
            process = subprocess.Popen(
                command,
                shell=isinstance(command, str),
                cwd=self.root_path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            return {
                "success": False,
                "error": str(e),
                "stdout": "",
                "stderr": "",
                "exit_code": -1,
            }

        deadline = time.monotonic() + limit
        error = None
        while True:
            try:
                stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    error = "Command aborted"
                elif time.monotonic() >= deadline:
                    error = f"Command timed out after {limit}s"
                else:
                    continue
                process.kill()
                stdout, stderr = process.communicate()
                logger.info(f"{error}: {command}")
                break

        if error:
            return {
                "success": False,
                "error": error,
                "stdout": stdout,
                "stderr": stderr,
                "exit_code": process.returncode,
            }
        return {
            "success": process.returncode == 0,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": process.returncode,
        }
