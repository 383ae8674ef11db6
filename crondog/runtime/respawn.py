"""One-shot container restart, as run by ``crondog restart <target>``.

Logs the attempt and the outcome in the same words the generated crontab
jobs use, so manual restarts and scheduled ones read alike in the logs.
"""

from __future__ import annotations

import logging

from crondog.runtime.base import ContainerSource

__all__ = ["restart_container"]

logger = logging.getLogger(__name__)


def restart_container(source: ContainerSource, target: str, timeout: int) -> int:
    """Restart *target* and return a process exit status (0 ok, 1 failed)."""
    if not target:
        logger.error("Container name not provided.")
        return 1

    logger.info("Restarting container: %s (timeout %d s)", target, timeout)
    if source.restart(target, timeout):
        logger.info("SUCCESS restart container: %s", target)
        return 0

    logger.error("FAILED restart container: %s", target)
    return 1
