"""Fire-and-forget launches of allow-listed pipeline scripts."""

import logging
import re
import subprocess

from pipeline_monitor.config import Config
from pipeline_monitor.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_ARG_RE = re.compile(r"^[A-Za-z0-9._=-]+$")


def trigger_script(config: Config, script, args=None) -> dict:
    """Start ``<scripts_dir>/<script>.sh`` detached, appending output to its log."""
    if not isinstance(script, str) or script not in config.triggerable_scripts:
        raise ValidationError(
            f"Invalid script. Allowed: {', '.join(config.triggerable_scripts)}"
        )
    args = args or []
    if not isinstance(args, list) or not all(
        isinstance(a, str) and _ARG_RE.match(a) for a in args
    ):
        raise ValidationError("args must match [A-Za-z0-9._=-]+")

    script_path = config.scripts_dir / f"{script}.sh"
    if not script_path.exists():
        raise NotFoundError(f"Script not found: {script_path}")

    log_path = config.scripts_dir / f"{script}.log"
    with open(log_path, "a") as f:
        proc = subprocess.Popen(
            ["bash", str(script_path), *args],
            cwd=config.project_dir,
            stdin=subprocess.DEVNULL,
            stdout=f,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info("Triggered %s (PID %s)", script, proc.pid)
    return {"triggered": True, "script": script}
