from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    # Allow tests to import `cloudrun_deploy.*` without installing the project.
    repo_root = Path(__file__).parents[2]
    sys.path.append(str(repo_root))


VERBS = {"describe", "create", "delete", "add-backend", "update", "list", "enable"}


class FakeGcloud:
    """In-memory stand-in for the gcloud CLI.

    Models resource existence per (collection, name) so tests can assert on
    idempotence, ordering and error handling through the recorded calls.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.resources: dict[tuple[str, str], dict] = {}
        self.failures: list[dict] = []
        self.enabled_apis = {"compute.googleapis.com", "run.googleapis.com", "vpcaccess.googleapis.com"}
        self.logged_in = True
        self.connector_state = "READY"
        self.ssl_status = "PROVISIONING"
        self.rule_status = "ACTIVE"
        self._next_ip = 10

    # -- seeding / fault injection -------------------------------------------------

    def add(self, collection: str, name: str, **attrs) -> None:
        self.resources[(collection, name)] = dict(attrs)

    def exists(self, collection: str, name: str) -> bool:
        return (collection, name) in self.resources

    def fail_on(self, verb: str, collection: str, *, name: str | None = None, stderr: str = "ERROR: internal error", times: int | None = None) -> None:
        self.failures.append({"verb": verb, "collection": collection, "name": name, "stderr": stderr, "times": times})

    # -- inspection ------------------------------------------------------------------

    def parse(self, args: list[str]) -> tuple[str, str, str | None, dict[str, str]]:
        idx = next(i for i, a in enumerate(args) if a in VERBS)
        collection = " ".join(args[:idx])
        verb = args[idx]
        flags: dict[str, str] = {}
        positional: list[str] = []
        for a in args[idx + 1 :]:
            if a.startswith("--"):
                k, _, v = a[2:].partition("=")
                flags[k] = v
            else:
                positional.append(a)
        name = positional[0] if positional else flags.get("domain")
        return collection, verb, name, flags

    def calls_for(self, verb: str, collection: str | None = None) -> list[list[str]]:
        out = []
        for call in self.calls:
            c, v, _, _ = self.parse(call)
            if v == verb and (collection is None or c.endswith(collection)):
                out.append(call)
        return out

    def names_for(self, verb: str, collection: str | None = None) -> list[str]:
        return [self.parse(c)[2] for c in self.calls_for(verb, collection)]

    def collections_for(self, verb: str) -> list[str]:
        return [self.parse(c)[0] for c in self.calls_for(verb)]

    # -- the command -----------------------------------------------------------------

    def __call__(self, args, *, capture_output=True, ignore_errors=False):
        from cloudrun_deploy.gcloud_utils import CommandResult, GcloudCommandError

        self.calls.append(list(args))
        try:
            return CommandResult(stdout=self._dispatch(list(args)), stderr="", returncode=0)
        except GcloudCommandError as e:
            if ignore_errors:
                return CommandResult(stdout="", stderr=e.stderr or "", returncode=e.returncode)
            raise

    def _error(self, args: list[str], stderr: str):
        from cloudrun_deploy.gcloud_utils import GcloudCommandError

        return GcloudCommandError(1, ["gcloud", *args], output="", stderr=stderr)

    def _dispatch(self, args: list[str]) -> str:
        if args[:2] == ["auth", "list"]:
            if not self.logged_in:
                return ""
            return "tester@example.com\n"

        collection, verb, name, flags = self.parse(args)

        for failure in self.failures:
            if failure["verb"] != verb or not collection.endswith(failure["collection"]):
                continue
            if failure["name"] is not None and failure["name"] != name:
                continue
            if failure["times"] is not None:
                if failure["times"] <= 0:
                    continue
                failure["times"] -= 1
            raise self._error(args, failure["stderr"])

        if collection == "services":
            if verb == "list":
                api = flags.get("filter", "").split(":", 1)[-1]
                return f"{api}\n" if api in self.enabled_apis else ""
            if verb == "enable":
                self.enabled_apis.add(name or "")
                return ""

        if collection == "run services" and verb == "update":
            return ""

        key = (collection, name or "")
        if verb == "describe":
            if key not in self.resources:
                raise self._error(args, f"ERROR: (gcloud.{collection.replace(' ', '.')}.describe) The resource '{name}' was not found")
            return self._render(self.resources[key], name or "", flags.get("format", ""))

        if verb == "create":
            if key in self.resources:
                raise self._error(args, f"ERROR: (gcloud.{collection.replace(' ', '.')}.create) The resource '{name}' already exists")
            self.resources[key] = self._new_resource(collection, flags)
            return ""

        if verb == "add-backend":
            if key not in self.resources:
                raise self._error(args, f"ERROR: The resource '{name}' was not found")
            neg = flags["network-endpoint-group"]
            group = f"https://www.googleapis.com/compute/v1/projects/p/regions/r/networkEndpointGroups/{neg}"
            self.resources[key].setdefault("backends", []).append({"group": group})
            return ""

        if verb == "delete":
            if key not in self.resources:
                raise self._error(args, f"ERROR: (gcloud.{collection.replace(' ', '.')}.delete) The resource '{name}' was not found")
            del self.resources[key]
            return ""

        raise AssertionError(f"unexpected gcloud call: {args}")

    def _new_resource(self, collection: str, flags: dict[str, str]) -> dict:
        if collection == "compute addresses":
            self._next_ip += 1
            prefix = "34.120.0" if "global" in flags else "35.200.0"
            return {"address": f"{prefix}.{self._next_ip}"}
        if collection.endswith("connectors"):
            return {"state": self.connector_state}
        if collection == "compute ssl-certificates":
            return {"managed.status": self.ssl_status}
        if collection == "compute forwarding-rules":
            return {"status": self.rule_status}
        if collection == "compute backend-services":
            return {"backends": []}
        return {}

    def _render(self, resource: dict, name: str, fmt: str) -> str:
        if fmt == "json":
            payload = {"name": name}
            payload.update({k: v for k, v in resource.items() if "." not in k})
            return json.dumps(payload)
        if fmt.startswith("value(") and fmt.endswith(")"):
            field = fmt[len("value(") : -1]
            if field == "metadata.name":
                return f"{name}\n"
            return f"{resource.get(field, '')}\n"
        return f"name: {name}\n"


@pytest.fixture
def fake_gcloud(monkeypatch):
    from cloudrun_deploy import domain_migration, gcloud_utils, load_balancer, resource_status

    fake = FakeGcloud()
    for module in (gcloud_utils, load_balancer, domain_migration, resource_status):
        monkeypatch.setattr(module, "run_gcloud_command", fake)
    gcloud_utils.reset_api_status_cache()
    yield fake
    gcloud_utils.reset_api_status_cache()
