from __future__ import annotations

import logging
import sys
import time
from enum import Enum
from typing import Callable

from cloudrun_deploy.gcloud_utils import GcloudCommandError, run_gcloud_command, sanitize_error_message

logger = logging.getLogger("cloudrun_deploy.resource_status")

POLL_INTERVAL_SECONDS = 30
READY_STATUS = "ACTIVE"


class ResourceType(str, Enum):
    SSL_CERTIFICATE = "ssl-certificate"
    LOAD_BALANCER = "load-balancer"


def _status_command(resource_type: ResourceType, resource_name: str) -> list[str]:
    if resource_type == ResourceType.SSL_CERTIFICATE:
        return ["compute", "ssl-certificates", "describe", resource_name, "--global", "--format=value(managed.status)"]
    return ["compute", "forwarding-rules", "describe", resource_name, "--global", "--format=value(status)"]


def get_resource_status(resource_type: ResourceType | str, resource_name: str, project_id: str | None = None) -> str:
    """One poll. Returns the raw status string ("" when gcloud reports nothing)."""
    args = _status_command(ResourceType(resource_type), resource_name)
    if project_id:
        args.append(f"--project={project_id}")
    return run_gcloud_command(args).stdout.strip()


def wait_for_resource_ready(
    resource_type: ResourceType | str,
    resource_name: str,
    max_wait_minutes: float = 30,
    *,
    project_id: str | None = None,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until the resource reports ACTIVE. False on timeout; a failed poll counts as not ready."""
    rtype = ResourceType(resource_type)
    max_wait_seconds = max_wait_minutes * 60
    start = clock()

    print(f"[status] ⏳ Waiting for {rtype.value} {resource_name} (up to {max_wait_minutes} minutes)...")

    while True:
        elapsed = clock() - start
        if elapsed >= max_wait_seconds:
            break

        try:
            status = get_resource_status(rtype, resource_name, project_id)
        except GcloudCommandError as e:
            logger.debug("Status poll failed: %s", e)
            print(f"[status] ⚠️ Could not read status yet: {sanitize_error_message(e)}", file=sys.stderr)
            status = ""

        elapsed_display = int(clock() - start)
        print(f"[status] {rtype.value} status: {status or 'UNKNOWN'} ({elapsed_display}s elapsed)")
        if status == READY_STATUS:
            print(f"[status] ✅ {resource_name} is ready")
            return True

        sleep(poll_interval)

    print(f"[status] ⚠️ Timed out after {max_wait_minutes} minutes waiting for {resource_name}", file=sys.stderr)
    return False
