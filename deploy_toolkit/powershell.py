"""PowerShell command helpers shared by the Exchange commands."""
from __future__ import annotations

import base64
import logging
import subprocess

from .config import PowerShellConfig

logger = logging.getLogger(__name__)


def encode_command(script: str) -> str:
    """Encode a script the way ``powershell -EncodedCommand`` expects (base64 UTF-16LE)."""

    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def run_powershell(settings: PowerShellConfig, script: str) -> str:
    """Execute a script with the configured PowerShell and surface friendly errors."""

    command = [
        settings.executable,
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-EncodedCommand",
        encode_command(script),
    ]
    logger.info(
        "Running PowerShell script with %s (%s lines).",
        settings.executable,
        len(script.splitlines()),
    )

    try:
        completed = subprocess.run(
            command,
            timeout=settings.timeout,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(f"PowerShell executable not found: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip()
        raise RuntimeError(
            f"PowerShell script failed with exit code {exc.returncode}."
            + (f" {detail}" if detail else "")
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError("PowerShell script timed out.") from exc

    if completed.stderr and completed.stderr.strip():
        logger.warning("PowerShell reported: %s", completed.stderr.strip())
    return completed.stdout or ""


__all__ = ["encode_command", "run_powershell"]
