#!/usr/bin/env python3
"""Shared Google Cloud CLI utilities."""

from __future__ import annotations

import json
import logging
import random
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("cloudrun_deploy.gcloud")


# Lowercase substrings that mark a gcloud failure as transient.
TRANSIENT_ERROR_PATTERNS: tuple[str, ...] = (
    # network / connectivity
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network unreachable",
    "dns resolution failed",
    "temporary failure",
    # Google API
    "rate limit exceeded",
    "quota exceeded",
    "too many requests",
    "service unavailable",
    "internal server error",
    "backend error",
    "deadline exceeded",
    "unavailable",
    # HTTP status codes
    "429",
    "500",
    "502",
    "503",
    "504",
    # gcloud operations
    "operation failed due to concurrent modification",
    "resource is being created",
    "another operation is in progress",
    "resourceinuse",
)

# Checked before the transient list: these never succeed on retry.
NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "permission_denied",
    "permission denied",
    "does not have permission",
    "unauthenticated",
    "invalid_argument",
    "invalid argument",
)

# timeout(1), command errors and signals
RETRYABLE_EXIT_CODES: frozenset[int] = frozenset({124, 125, 126, 127, 130, 143})

NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "was not found",
    "not found",
    "not_found",
    "notfound",
    "does not exist",
)

ALREADY_EXISTS_PATTERNS: tuple[str, ...] = (
    "already exists",
    "already_exists",
    "alreadyexists",
)


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    returncode: int = 0


class GcloudCommandError(subprocess.CalledProcessError):
    """Non-zero exit from gcloud; str() includes the captured stderr."""

    @property
    def message(self) -> str:
        cmd = " ".join(self.cmd) if isinstance(self.cmd, (list, tuple)) else str(self.cmd)
        err = (self.stderr or "").strip() or (self.output or "").strip()
        msg = f"Command failed: {cmd} (exit code {self.returncode})"
        if err:
            msg += f"\n{err}"
        return msg

    def __str__(self) -> str:
        return self.message


def error_text(error: BaseException) -> str:
    """Lowercased provider error text; gcloud failures use stderr/stdout only, never the command line."""
    if isinstance(error, subprocess.CalledProcessError):
        parts = [val for val in (error.stderr, error.output) if isinstance(val, str) and val]
    else:
        parts = [str(error)]
    return "\n".join(parts).lower()


def is_not_found_error(error: BaseException) -> bool:
    text = error_text(error)
    return any(p in text for p in NOT_FOUND_PATTERNS)


def is_already_exists_error(error: BaseException) -> bool:
    text = error_text(error)
    return any(p in text for p in ALREADY_EXISTS_PATTERNS)


def is_retryable_error(error: BaseException) -> bool:
    """Classify a failure as transient (worth retrying) or permanent."""
    text = error_text(error)

    if is_not_found_error(error) or is_already_exists_error(error):
        logger.debug("Error marked as non-retryable (resource state): %s", error)
        return False

    if any(p in text for p in NON_RETRYABLE_PATTERNS):
        logger.debug("Error marked as non-retryable (permanent class): %s", error)
        return False

    if any(p in text for p in TRANSIENT_ERROR_PATTERNS):
        logger.debug("Error marked as retryable: %s", error)
        return True

    code = getattr(error, "returncode", None)
    if code in RETRYABLE_EXIT_CODES:
        logger.debug("Exit code %s marked as retryable", code)
        return True

    logger.debug("Error marked as non-retryable: %s", error)
    return False


def sanitize_error_message(error: BaseException) -> str:
    """Strip local filesystem paths from an error message before showing it."""
    message = str(error) or "Unknown error occurred"
    message = re.sub(r"(?<![\w.:/])/[^\s/]+/[^\s]+", "[PATH]", message)
    message = re.sub(r"[A-Z]:\\[^\s]+", "[PATH]", message)
    return message


def run_gcloud_command(
    args: list[str],
    *,
    capture_output: bool = True,
    ignore_errors: bool = False,
) -> CommandResult:
    """Run a gcloud command."""
    cmd = ["gcloud"] + args
    logger.debug("Executing: %s", " ".join(cmd))

    if not shutil.which("gcloud"):
        if ignore_errors:
            return CommandResult(stdout="", stderr="gcloud not found", returncode=127)
        raise RuntimeError("Google Cloud CLI (gcloud) is not installed. Please install it.")

    start = time.monotonic()
    result = subprocess.run(
        cmd,
        stdout=subprocess.PIPE if capture_output else None,
        stderr=subprocess.PIPE,
        text=True,
        check=False,
    )
    elapsed_ms = int((time.monotonic() - start) * 1000)

    if result.returncode != 0:
        logger.debug("Command failed after %sms: %s", elapsed_ms, (result.stderr or "").strip())
        if ignore_errors:
            return CommandResult(stdout=result.stdout or "", stderr=result.stderr or "", returncode=result.returncode)
        raise GcloudCommandError(result.returncode, cmd, output=result.stdout, stderr=result.stderr)

    logger.debug("Command completed in %sms", elapsed_ms)
    return CommandResult(stdout=result.stdout or "", stderr=result.stderr or "", returncode=0)


def gcloud_value(args: list[str]) -> str:
    return run_gcloud_command(args).stdout.strip()


def run_gcloud_json(args: list[str]) -> Any:
    out = run_gcloud_command(args).stdout.strip()
    if not out:
        return None
    return json.loads(out)


def run_gcloud_command_with_retry(
    args: list[str],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    exponential_backoff: bool = True,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> CommandResult:
    """Run a gcloud command, retrying transient failures with backoff.

    Non-retryable errors are raised on the first attempt. When every attempt
    fails with a transient error the last one is raised. At least one attempt
    is always made.
    """
    max_retries = max(1, max_retries)
    last_error: BaseException | None = None

    for attempt in range(1, max_retries + 1):
        try:
            logger.debug("Command attempt %s/%s: gcloud %s", attempt, max_retries, " ".join(args))
            return run_gcloud_command(args)
        except GcloudCommandError as e:
            last_error = e
            if not is_retryable_error(e):
                raise
            if attempt == max_retries:
                logger.debug("Final attempt failed: %s", e)
                break

            delay = base_delay
            if exponential_backoff:
                delay = base_delay * (2 ** (attempt - 1))
            if jitter:
                # +/- 25%
                delay += (random.random() - 0.5) * 2 * (delay * 0.25)

            print(
                f"[gcloud] Transient failure (attempt {attempt}/{max_retries}). Retrying in {delay:.1f}s...",
                file=sys.stderr,
            )
            sleep(delay)

    assert last_error is not None
    raise last_error


class TtlCache:
    """Small key/value cache whose entries expire after `ttl_seconds`."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Any, tuple[float, Any]] = {}

    def get(self, key: Any, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return default
        return value

    def set(self, key: Any, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def __contains__(self, key: Any) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def clear(self) -> None:
        self._entries.clear()


API_STATUS_TTL_SECONDS = 30 * 60
_api_status_cache = TtlCache(API_STATUS_TTL_SECONDS)


def get_api_status_cache() -> TtlCache:
    return _api_status_cache


def reset_api_status_cache() -> None:
    _api_status_cache.clear()


REQUIRED_APIS: dict[str, str] = {
    "compute.googleapis.com": "Compute Engine API",
    "run.googleapis.com": "Cloud Run Admin API",
}


def is_service_enabled(project_id: str, api: str) -> bool:
    cache = get_api_status_cache()
    key = (project_id, api)
    cached = cache.get(key)
    if cached is not None:
        logger.debug("Using cached status for %s: %s", api, cached)
        return bool(cached)

    out = gcloud_value(
        [
            "services",
            "list",
            "--enabled",
            f"--project={project_id}",
            f"--filter=config.name:{api}",
            "--format=value(config.name)",
        ]
    )
    enabled = api in out.split()
    cache.set(key, enabled)
    return enabled


def ensure_service_enabled(project_id: str, api: str) -> bool:
    """Enable an API on the project if needed. Returns False (with a warning) on failure."""
    try:
        if is_service_enabled(project_id, api):
            return True
        print(f"[gcloud] Enabling {api}...")
        run_gcloud_command(["services", "enable", api, f"--project={project_id}"])
        get_api_status_cache().set((project_id, api), True)
        return True
    except GcloudCommandError as e:
        print(f"[gcloud] ⚠️ Could not enable {api}: {sanitize_error_message(e)}", file=sys.stderr)
        return False


def check_required_apis(project_id: str) -> dict[str, dict[str, Any]]:
    status: dict[str, dict[str, Any]] = {}
    for api, name in REQUIRED_APIS.items():
        try:
            status[api] = {"name": name, "enabled": is_service_enabled(project_id, api)}
        except GcloudCommandError as e:
            status[api] = {"name": name, "enabled": False, "error": str(e)}
    return status


def gcloud_logged_in() -> bool:
    result = run_gcloud_command(
        ["auth", "list", "--filter=status:ACTIVE", "--format=value(account)"],
        ignore_errors=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())
