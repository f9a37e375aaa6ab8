import subprocess
from unittest.mock import patch

import pytest

from cloudrun_deploy.gcloud_utils import (
    CommandResult,
    GcloudCommandError,
    TtlCache,
    check_required_apis,
    ensure_service_enabled,
    is_already_exists_error,
    is_not_found_error,
    is_retryable_error,
    run_gcloud_command,
    run_gcloud_command_with_retry,
    run_gcloud_json,
    sanitize_error_message,
)


def _err(stderr: str, returncode: int = 1) -> GcloudCommandError:
    return GcloudCommandError(returncode, ["gcloud", "compute", "x"], output="", stderr=stderr)


def test_run_gcloud_command_success():
    with patch("shutil.which", return_value="/usr/bin/gcloud"), patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 0
        mock_run.return_value.stdout = "34.1.2.3\n"
        mock_run.return_value.stderr = ""

        res = run_gcloud_command(["compute", "addresses", "list"])
        assert res == CommandResult(stdout="34.1.2.3\n", stderr="", returncode=0)
        mock_run.assert_called_once()
        args = mock_run.call_args[0][0]
        assert args == ["gcloud", "compute", "addresses", "list"]


def test_run_gcloud_command_failure_raises_called_process_error():
    with patch("shutil.which", return_value="/usr/bin/gcloud"), patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        mock_run.return_value.stdout = ""
        mock_run.return_value.stderr = "ERROR: The resource 'x' was not found"

        with pytest.raises(subprocess.CalledProcessError) as exc:
            run_gcloud_command(["compute", "addresses", "describe", "x"])
        assert "was not found" in str(exc.value)
        assert is_not_found_error(exc.value)


def test_run_gcloud_command_ignore_errors_returns_code():
    with patch("shutil.which", return_value="/usr/bin/gcloud"), patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 2
        mock_run.return_value.stdout = ""
        mock_run.return_value.stderr = "boom"

        res = run_gcloud_command(["auth", "list"], ignore_errors=True)
        assert res.returncode == 2
        assert res.stderr == "boom"


def test_run_gcloud_command_missing_cli():
    with patch("shutil.which", return_value=None), patch("subprocess.run") as mock_run:
        with pytest.raises(RuntimeError):
            run_gcloud_command(["version"])
        mock_run.assert_not_called()


def test_run_gcloud_json_parses_stdout():
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.return_value = CommandResult(stdout='{"name": "svc"}', stderr="")
        assert run_gcloud_json(["run", "services", "describe", "svc"]) == {"name": "svc"}

        mock_gc.return_value = CommandResult(stdout="", stderr="")
        assert run_gcloud_json(["run", "services", "describe", "svc"]) is None


@pytest.mark.parametrize(
    "stderr,expected",
    [
        ("ERROR: Deadline exceeded while waiting", True),
        ("HTTPError 503: Service Unavailable", True),
        ("Rate limit exceeded for quota metric", True),
        ("ERROR: PERMISSION_DENIED: caller does not have permission", False),
        ("ERROR: INVALID_ARGUMENT: bad domain", False),
        ("ERROR: something unexpected", False),
    ],
)
def test_is_retryable_error_patterns(stderr, expected):
    assert is_retryable_error(_err(stderr)) is expected


def test_is_retryable_error_exit_codes():
    assert is_retryable_error(_err("", returncode=124)) is True
    assert is_retryable_error(_err("", returncode=143)) is True
    assert is_retryable_error(_err("", returncode=1)) is False


def test_permission_error_beats_transient_pattern():
    assert is_retryable_error(_err("permission denied (503)")) is False


def test_already_exists_classification():
    assert is_already_exists_error(_err("ERROR: The resource 'x' already exists"))
    assert not is_already_exists_error(_err("ERROR: The resource 'x' was not found"))


def test_classification_ignores_command_line():
    cmd = ["gcloud", "compute", "addresses", "describe", "shop-ip", "--project=shop-150023", "--timeout=504"]
    missing = GcloudCommandError(1, cmd, output="", stderr="ERROR: The resource 'shop-ip' was not found")
    assert is_not_found_error(missing)
    assert is_retryable_error(missing) is False

    in_use = GcloudCommandError(
        1,
        ["gcloud", "compute", "backend-services", "delete", "notfound-backend", "--project=x-500"],
        output="",
        stderr="ERROR: The resource 'backend' is already being used by 'url-map'",
    )
    assert not is_not_found_error(in_use)
    assert not is_already_exists_error(in_use)
    assert is_retryable_error(in_use) is False


def test_not_found_and_already_exists_are_never_retried():
    assert is_retryable_error(_err("ERROR: The resource 'shop-500-ip' was not found")) is False
    assert is_retryable_error(_err("ERROR: The resource 'shop-503-ip' already exists")) is False


def test_retry_with_zero_attempts_still_runs_once():
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.side_effect = _err("503 service unavailable")
        with pytest.raises(GcloudCommandError):
            run_gcloud_command_with_retry(["compute", "x"], max_retries=0, sleep=lambda _: None)
        assert mock_gc.call_count == 1

        mock_gc.side_effect = None
        mock_gc.return_value = CommandResult(stdout="ok", stderr="")
        assert run_gcloud_command_with_retry(["compute", "x"], max_retries=-2).stdout == "ok"


def test_retry_recovers_from_transient_failure():
    sleeps: list[float] = []
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.side_effect = [_err("503 service unavailable"), CommandResult(stdout="ok", stderr="")]
        res = run_gcloud_command_with_retry(["compute", "x"], jitter=False, sleep=sleeps.append)

    assert res.stdout == "ok"
    assert mock_gc.call_count == 2
    assert sleeps == [1.0]


def test_retry_raises_non_retryable_immediately():
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.side_effect = _err("permission denied")
        with pytest.raises(GcloudCommandError):
            run_gcloud_command_with_retry(["compute", "x"], sleep=lambda _: None)
        assert mock_gc.call_count == 1


def test_retry_exhausts_attempts_with_backoff():
    sleeps: list[float] = []
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.side_effect = _err("connection reset by peer")
        with pytest.raises(GcloudCommandError):
            run_gcloud_command_with_retry(["compute", "x"], max_retries=3, jitter=False, sleep=sleeps.append)
        assert mock_gc.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_retry_jitter_stays_within_quarter():
    sleeps: list[float] = []
    with patch("cloudrun_deploy.gcloud_utils.run_gcloud_command") as mock_gc:
        mock_gc.side_effect = [_err("timed out"), CommandResult(stdout="", stderr="")]
        run_gcloud_command_with_retry(["compute", "x"], base_delay=4.0, sleep=sleeps.append)
    assert 3.0 <= sleeps[0] <= 5.0


def test_ttl_cache_expires():
    now = [0.0]
    cache = TtlCache(10, clock=lambda: now[0])
    cache.set("k", True)
    assert cache.get("k") is True
    assert "k" in cache
    now[0] = 10.0
    assert cache.get("k") is None
    assert "k" not in cache


def test_sanitize_error_message_strips_paths():
    msg = sanitize_error_message(RuntimeError("failed reading /home/dev/secret/key.json now"))
    assert "/home/dev" not in msg
    assert "[PATH]" in msg
    assert sanitize_error_message(RuntimeError("")) == "Unknown error occurred"


def test_api_status_is_cached(fake_gcloud):
    assert check_required_apis("demo-project")["compute.googleapis.com"]["enabled"] is True
    check_required_apis("demo-project")
    assert len(fake_gcloud.calls_for("list", "services")) == 2


def test_ensure_service_enabled_enables_missing_api(fake_gcloud):
    fake_gcloud.enabled_apis.discard("vpcaccess.googleapis.com")
    assert ensure_service_enabled("demo-project", "vpcaccess.googleapis.com") is True
    assert fake_gcloud.names_for("enable", "services") == ["vpcaccess.googleapis.com"]

    # Cached as enabled afterwards.
    assert ensure_service_enabled("demo-project", "vpcaccess.googleapis.com") is True
    assert len(fake_gcloud.calls_for("enable", "services")) == 1


def test_ensure_service_enabled_only_warns_on_failure(fake_gcloud, capsys):
    fake_gcloud.enabled_apis.discard("vpcaccess.googleapis.com")
    fake_gcloud.fail_on("enable", "services", stderr="ERROR: PERMISSION_DENIED")
    assert ensure_service_enabled("demo-project", "vpcaccess.googleapis.com") is False
    assert "Could not enable" in capsys.readouterr().err
