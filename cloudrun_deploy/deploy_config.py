"""Deterministic deploy configuration schema and persisted deployment state.

This module is the single source of truth for:
- which keys exist in `.env.deploy` and whether they are mandatory / defaulted
- the value objects handed to the provisioning core (ProvisioningConfig)
- the record of what was provisioned (ResourceDescriptor), persisted as YAML

Design goals:
- No heuristic classification (no guessing key names).
- Fail fast with clear error messages.
- Configuration objects are immutable; changes produce new instances.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from dotenv import dotenv_values

from cloudrun_deploy.resource_names import ResourceNameSet, resolve_service_name

DEFAULT_STATE_FILE = Path(".cloudrun-deploy") / "state.yaml"


class VarsEnum(str, Enum):
    # Project / placement
    GCP_PROJECT_ID = "GCP_PROJECT_ID"
    GCP_REGION = "GCP_REGION"
    SERVICE_NAME = "SERVICE_NAME"

    # Custom domain / load balancer
    CUSTOM_DOMAIN = "CUSTOM_DOMAIN"
    USE_LOAD_BALANCER = "USE_LOAD_BALANCER"
    USE_MANAGED_SSL = "USE_MANAGED_SSL"

    # Outbound static IP (Cloud NAT)
    USE_STATIC_IP = "USE_STATIC_IP"
    NETWORK_NAME = "NETWORK_NAME"

    # Domain mapping -> load balancer migration
    ENABLE_LOAD_BALANCER_MIGRATION = "ENABLE_LOAD_BALANCER_MIGRATION"
    CREATE_STATIC_OUTBOUND_IP = "CREATE_STATIC_OUTBOUND_IP"


@dataclass(frozen=True)
class ConfigKeySpec:
    key: VarsEnum
    mandatory: bool
    default: str | None = None


class ConfigValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[env] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


DEPLOY_SCHEMA: tuple[ConfigKeySpec, ...] = (
    ConfigKeySpec(key=VarsEnum.GCP_PROJECT_ID, mandatory=True),
    ConfigKeySpec(key=VarsEnum.GCP_REGION, mandatory=False, default="us-central1"),
    ConfigKeySpec(key=VarsEnum.SERVICE_NAME, mandatory=False),
    ConfigKeySpec(key=VarsEnum.CUSTOM_DOMAIN, mandatory=False),
    ConfigKeySpec(key=VarsEnum.USE_LOAD_BALANCER, mandatory=False, default="false"),
    ConfigKeySpec(key=VarsEnum.USE_MANAGED_SSL, mandatory=False, default="false"),
    ConfigKeySpec(key=VarsEnum.USE_STATIC_IP, mandatory=False, default="false"),
    ConfigKeySpec(key=VarsEnum.NETWORK_NAME, mandatory=False),
    ConfigKeySpec(key=VarsEnum.ENABLE_LOAD_BALANCER_MIGRATION, mandatory=False, default="false"),
    ConfigKeySpec(key=VarsEnum.CREATE_STATIC_OUTBOUND_IP, mandatory=False, default="false"),
)


def _schema_keys(schema: Iterable[ConfigKeySpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse dotenv file strictly.

    - Comments are ignored.
    - Keys are preserved even if they have empty values (""), so unknown keys are still detected.
    """
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        val = "" if v is None else str(v).strip()
        kv[key] = val
    return kv


def write_dotenv_values(*, path: Path, updates: Mapping[str, str]) -> None:
    """Update an existing dotenv file in-place; a missing file is left alone.

    - Preserves existing lines/comments.
    - Replaces existing KEY=... lines for keys in `updates`.
    - Appends missing keys at the end in sorted order.
    """
    if not updates:
        return

    if not path.exists():
        return

    original_lines = path.read_text().splitlines()
    remaining = {k: str(v) for k, v in updates.items() if str(v).strip()}
    if not remaining:
        return

    out: list[str] = []
    for line in original_lines:
        s = line.strip()
        if not s or s.startswith("#") or "=" not in line:
            out.append(line)
            continue

        key = line.split("=", 1)[0].strip()
        if key in remaining:
            out.append(f"{key}={remaining.pop(key)}")
            continue

        out.append(line)

    if remaining:
        if out and out[-1].strip() != "":
            out.append("")
        for key in sorted(remaining.keys()):
            out.append(f"{key}={remaining[key]}")

    path.write_text("\n".join(out) + "\n")


def validate_known_keys(schema: Iterable[ConfigKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted([k for k in kv.keys() if k not in allowed])
    if unknown:
        raise ConfigValidationError(context=context, problems=["Unknown key(s): " + ", ".join(unknown)])


def apply_defaults(schema: Iterable[ConfigKeySpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if spec.key.value in out and str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def validate_required(schema: Iterable[ConfigKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    missing: list[str] = []
    for spec in schema:
        if not spec.mandatory:
            continue
        if not str(kv.get(spec.key.value) or "").strip():
            missing.append(spec.key.value)
    if missing:
        raise ConfigValidationError(context=context, problems=["Missing mandatory key(s): " + ", ".join(sorted(missing))])


def truthy(val: str | None) -> bool:
    v = str(val or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


_PROJECT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
_REGION_RE = re.compile(r"^[a-z]+-[a-z]+\d+$")
_DOMAIN_RE = re.compile(r"^[a-z0-9]+([-.][a-z0-9]+)*\.[a-z]{2,}$", re.IGNORECASE)


def project_id_problem(project_id: str) -> str | None:
    if not _PROJECT_ID_RE.match(project_id or ""):
        return (
            f"{VarsEnum.GCP_PROJECT_ID.value} must be 6-30 characters, start with a letter, "
            "and contain only lowercase letters, numbers, and hyphens"
        )
    return None


def region_problem(region: str) -> str | None:
    if region != "global" and not _REGION_RE.match(region or ""):
        return f'{VarsEnum.GCP_REGION.value} must look like "us-central1" or "europe-west1"'
    return None


def custom_domain_problem(domain: str) -> str | None:
    if "*" in domain:
        return "Wildcard domains are not supported. Specify an exact domain."
    if domain.endswith(".run.app"):
        return "Cannot use .run.app domains as custom domains; Cloud Run serves these itself."
    if not _DOMAIN_RE.match(domain):
        return f"Invalid domain format for SSL certificate: {domain} (use example.com or sub.example.com)"
    return None


def validate_cross_field_rules(*, deploy_kv: Mapping[str, str], context: str) -> None:
    """Extra validation for rules that can't be expressed with (mandatory/default) alone."""
    problems: list[str] = []

    project_id = str(deploy_kv.get(VarsEnum.GCP_PROJECT_ID.value) or "").strip()
    if project_id:
        problem = project_id_problem(project_id)
        if problem:
            problems.append(problem)

    region = str(deploy_kv.get(VarsEnum.GCP_REGION.value) or "").strip()
    if region:
        problem = region_problem(region)
        if problem:
            problems.append(problem)

    domain = str(deploy_kv.get(VarsEnum.CUSTOM_DOMAIN.value) or "").strip()
    if domain:
        problem = custom_domain_problem(domain)
        if problem:
            problems.append(problem)

    for flag in (VarsEnum.USE_LOAD_BALANCER, VarsEnum.USE_STATIC_IP):
        if truthy(deploy_kv.get(flag.value)) and not domain:
            problems.append(f"{VarsEnum.CUSTOM_DOMAIN.value} is required when {flag.value}=true")

    if problems:
        raise ConfigValidationError(context=context, problems=problems)


@dataclass(frozen=True)
class ProvisioningConfig:
    project_id: str
    region: str
    service_name: str
    custom_domain: str
    use_static_outbound_ip: bool = False
    network_name: str | None = None


@dataclass(frozen=True)
class ResourceDescriptor:
    """What was provisioned for one service's custom domain."""

    names: ResourceNameSet
    ip_address: str
    nat_ip_address: str | None = None
    vpc_connector_name: str | None = None

    @property
    def has_outbound_nat(self) -> bool:
        return bool(self.nat_ip_address)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ip_address": self.ip_address, "names": self.names.to_dict()}
        if self.nat_ip_address:
            out["nat_ip_address"] = self.nat_ip_address
        if self.vpc_connector_name:
            out["vpc_connector_name"] = self.vpc_connector_name
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceDescriptor":
        ip_address = str(data.get("ip_address") or "").strip()
        names = data.get("names")
        if not ip_address or not isinstance(names, Mapping):
            raise ValueError("load balancer resources must contain 'ip_address' and 'names'")
        return cls(
            names=ResourceNameSet.from_dict(names),
            ip_address=ip_address,
            nat_ip_address=str(data.get("nat_ip_address") or "").strip() or None,
            vpc_connector_name=str(data.get("vpc_connector_name") or "").strip() or None,
        )


@dataclass(frozen=True)
class DeployConfig:
    project_id: str
    region: str
    service_name: str
    custom_domain: str | None = None
    use_load_balancer: bool = False
    use_static_ip: bool = False
    use_managed_ssl: bool = False
    enable_load_balancer_migration: bool = False
    create_static_outbound_ip: bool = False
    network_name: str | None = None
    load_balancer_resources: ResourceDescriptor | None = None

    def provisioning_config(self, *, use_static_outbound_ip: bool | None = None) -> ProvisioningConfig:
        if not self.custom_domain:
            raise ValueError("A custom domain is required to provision a load balancer")
        outbound = self.use_static_ip if use_static_outbound_ip is None else use_static_outbound_ip
        return ProvisioningConfig(
            project_id=self.project_id,
            region=self.region,
            service_name=self.service_name,
            custom_domain=self.custom_domain,
            use_static_outbound_ip=bool(outbound),
            network_name=self.network_name,
        )

    def with_load_balancer(self, descriptor: ResourceDescriptor) -> "DeployConfig":
        return replace(
            self,
            use_load_balancer=True,
            use_managed_ssl=True,
            use_static_ip=descriptor.has_outbound_nat,
            load_balancer_resources=descriptor,
        )

    def without_load_balancer(self) -> "DeployConfig":
        return replace(self, load_balancer_resources=None)

    def to_env_values(self) -> dict[str, str]:
        """Flag values written back to `.env.deploy`."""
        return {
            VarsEnum.USE_LOAD_BALANCER.value: str(self.use_load_balancer).lower(),
            VarsEnum.USE_MANAGED_SSL.value: str(self.use_managed_ssl).lower(),
            VarsEnum.USE_STATIC_IP.value: str(self.use_static_ip).lower(),
        }


def collect_deploy_values(
    *,
    deploy_env_path: Path | None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, str | None] | None = None,
) -> dict[str, str]:
    """Merge `.env.deploy`, process env and CLI overrides (in that order) and apply defaults."""
    context = f"deploy ({deploy_env_path.name if deploy_env_path else 'env'})"
    file_kv: dict[str, str] = {}
    if deploy_env_path is not None and deploy_env_path.exists():
        file_kv = parse_dotenv_file(deploy_env_path)
        validate_known_keys(DEPLOY_SCHEMA, file_kv, context=context)

    env = os.environ if environ is None else environ
    schema_keys = _schema_keys(DEPLOY_SCHEMA)
    env_kv = {k: str(v).strip() for k, v in env.items() if k in schema_keys and str(v).strip()}

    merged = dict(file_kv)
    merged.update(env_kv)
    for k, v in (overrides or {}).items():
        if v is not None and str(v).strip():
            merged[k] = str(v).strip()

    return apply_defaults(DEPLOY_SCHEMA, merged)


def load_state(state_path: Path) -> dict[str, Any]:
    if not state_path.exists():
        return {}
    payload = yaml.safe_load(state_path.read_text(encoding="utf-8"))
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigValidationError(context=f"state ({state_path})", problems=["State file is not a mapping"])
    return payload


def save_state(state_path: Path, config: DeployConfig) -> None:
    """Persist the provisioned descriptor (or its absence) for later runs."""
    payload = load_state(state_path)
    payload["service_name"] = config.service_name
    payload["project_id"] = config.project_id
    payload["region"] = config.region
    if config.load_balancer_resources is not None:
        payload["load_balancer_resources"] = config.load_balancer_resources.to_dict()
    else:
        payload.pop("load_balancer_resources", None)

    state_path.parent.mkdir(parents=True, exist_ok=True)
    state_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def build_deploy_config(
    kv: Mapping[str, str],
    *,
    state: Mapping[str, Any] | None = None,
    repo_root: Path | None = None,
    context: str = "deploy",
) -> DeployConfig:
    validate_required(DEPLOY_SCHEMA, kv, context=context)
    validate_cross_field_rules(deploy_kv=kv, context=context)

    descriptor: ResourceDescriptor | None = None
    raw_resources = (state or {}).get("load_balancer_resources")
    if raw_resources:
        try:
            descriptor = ResourceDescriptor.from_dict(raw_resources)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigValidationError(context="state", problems=[f"Invalid load_balancer_resources: {e}"])

    return DeployConfig(
        project_id=kv[VarsEnum.GCP_PROJECT_ID.value].strip(),
        region=kv[VarsEnum.GCP_REGION.value].strip(),
        service_name=resolve_service_name(kv.get(VarsEnum.SERVICE_NAME.value), repo_root=repo_root),
        custom_domain=(kv.get(VarsEnum.CUSTOM_DOMAIN.value) or "").strip() or None,
        use_load_balancer=truthy(kv.get(VarsEnum.USE_LOAD_BALANCER.value)),
        use_static_ip=truthy(kv.get(VarsEnum.USE_STATIC_IP.value)),
        use_managed_ssl=truthy(kv.get(VarsEnum.USE_MANAGED_SSL.value)),
        enable_load_balancer_migration=truthy(kv.get(VarsEnum.ENABLE_LOAD_BALANCER_MIGRATION.value)),
        create_static_outbound_ip=truthy(kv.get(VarsEnum.CREATE_STATIC_OUTBOUND_IP.value)),
        network_name=(kv.get(VarsEnum.NETWORK_NAME.value) or "").strip() or None,
        load_balancer_resources=descriptor,
    )


def load_deploy_config(
    *,
    deploy_env_path: Path | None,
    state_path: Path,
    repo_root: Path | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, str | None] | None = None,
) -> DeployConfig:
    kv = collect_deploy_values(deploy_env_path=deploy_env_path, environ=environ, overrides=overrides)
    context = f"deploy ({deploy_env_path.name if deploy_env_path else 'env'} + env)"
    return build_deploy_config(kv, state=load_state(state_path), repo_root=repo_root, context=context)
