"""HTTPS load balancer (and optional Cloud NAT) for a Cloud Run custom domain.

Resource chain, in creation order:

    static IP -> [network, firewall rules, NAT IP, router, NAT, VPC connector]
    -> SSL certificate -> serverless NEG -> backend service -> URL map
    -> HTTPS proxy -> forwarding rule

Every stage is check-then-create: describe the resource by name, reuse it if
found, create it on "not found". A create that loses a race ("already exists")
counts as success, so provisioning is safe to re-run. Nothing is rolled back
here; callers decide whether to tear down after a ProvisioningError.

Teardown walks the same chain in reverse and never raises.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Protocol

from cloudrun_deploy.deploy_config import DeployConfig, ProvisioningConfig, ResourceDescriptor
from cloudrun_deploy.gcloud_utils import (
    CommandResult,
    GcloudCommandError,
    ensure_service_enabled,
    is_already_exists_error,
    is_not_found_error,
    run_gcloud_command,
    run_gcloud_command_with_retry,
    sanitize_error_message,
)
from cloudrun_deploy.resource_names import ResourceNameSet, generate_resource_names, network_name_for_service

logger = logging.getLogger("cloudrun_deploy.load_balancer")

DEFAULT_NETWORK = "default"
INTERNAL_SOURCE_RANGE = "10.128.0.0/9"
VPC_CONNECTOR_RANGE = "10.8.0.0/28"
VPC_ACCESS_API = "vpcaccess.googleapis.com"


class ProvisioningStage(str, Enum):
    STATIC_IP = "static-ip"
    NETWORK = "network"
    FIREWALL = "firewall-rules"
    NAT_IP = "nat-ip"
    ROUTER = "router"
    NAT = "nat"
    VPC_CONNECTOR = "vpc-connector"
    SSL_CERTIFICATE = "ssl-certificate"
    NEG = "network-endpoint-group"
    BACKEND_SERVICE = "backend-service"
    URL_MAP = "url-map"
    TARGET_PROXY = "target-proxy"
    FORWARDING_RULE = "forwarding-rule"
    DESCRIPTOR = "descriptor"


class ProvisioningError(RuntimeError):
    def __init__(self, stage: ProvisioningStage, underlying_message: str):
        super().__init__(f"Provisioning failed at stage '{stage.value}': {underlying_message}")
        self.stage = stage
        self.underlying_message = underlying_message


class ProjectPlacement(Protocol):
    project_id: str
    region: str


@contextmanager
def _stage(stage: ProvisioningStage) -> Iterator[None]:
    try:
        yield
    except GcloudCommandError as e:
        print(f"[lb] ❌ Stage '{stage.value}' failed: {sanitize_error_message(e)}", file=sys.stderr)
        raise ProvisioningError(stage, str(e)) from e


def _describe(args: list[str]) -> CommandResult | None:
    """Describe a resource (transient failures retried); None when it does not exist."""
    try:
        return run_gcloud_command_with_retry(args)
    except GcloudCommandError as e:
        if is_not_found_error(e):
            logger.debug("Not found: gcloud %s", " ".join(args))
            return None
        raise


def _create(args: list[str]) -> bool:
    """Create a resource; False when it already exists (lost a creation race)."""
    try:
        run_gcloud_command(args)
        return True
    except GcloudCommandError as e:
        if is_already_exists_error(e):
            print("[lb] ✅ Already exists (created concurrently), continuing")
            return False
        raise


def _ensure_resource(*, label: str, name: str, describe_args: list[str], create_args: list[str]) -> bool:
    """Check-then-create. Returns True when this call created the resource."""
    print(f"[lb] Checking for existing {label}: {name}")
    if _describe(describe_args) is not None:
        print(f"[lb] ✅ Using existing {label}: {name}")
        return False
    print(f"[lb] Creating {label}: {name}")
    return _create(create_args)


def _ensure_address(*, label: str, name: str, scope: list[str], project_id: str) -> str:
    describe_args = ["compute", "addresses", "describe", name, *scope, f"--project={project_id}", "--format=value(address)"]
    print(f"[lb] Checking for existing {label}: {name}")
    existing = _describe(describe_args)
    if existing is not None and existing.stdout.strip():
        address = existing.stdout.strip()
        print(f"[lb] ✅ Using existing {label}: {address}")
        return address

    print(f"[lb] Creating {label}: {name}")
    _create(["compute", "addresses", "create", name, *scope, f"--project={project_id}"])
    address = run_gcloud_command(describe_args).stdout.strip()
    print(f"[lb] ✅ {label} created: {address}")
    return address


def _resolve_network(config: ProvisioningConfig) -> str:
    project = f"--project={config.project_id}"
    preferred = config.network_name or DEFAULT_NETWORK
    if _describe(["compute", "networks", "describe", preferred, project]) is not None:
        print(f"[lb] ✅ Using existing network: {preferred}")
        return preferred

    fallback = network_name_for_service(config.service_name)
    print(f"[lb] ⚠️ Network '{preferred}' not found, using per-service network: {fallback}")
    _ensure_resource(
        label="VPC network",
        name=fallback,
        describe_args=["compute", "networks", "describe", fallback, project],
        create_args=["compute", "networks", "create", fallback, "--subnet-mode=auto", project],
    )
    return fallback


def firewall_rule_specs(network: str) -> list[tuple[str, list[str]]]:
    return [
        (f"{network}-allow-internal", [f"--network={network}", "--allow=tcp,udp,icmp", f"--source-ranges={INTERNAL_SOURCE_RANGE}"]),
        (f"{network}-allow-ssh", [f"--network={network}", "--allow=tcp:22", "--source-ranges=0.0.0.0/0"]),
        (f"{network}-allow-https", [f"--network={network}", "--allow=tcp:443", "--source-ranges=0.0.0.0/0"]),
    ]


def _ensure_firewall_rules(config: ProvisioningConfig, network: str) -> None:
    project = f"--project={config.project_id}"
    for rule_name, rule_args in firewall_rule_specs(network):
        _ensure_resource(
            label="firewall rule",
            name=rule_name,
            describe_args=["compute", "firewall-rules", "describe", rule_name, project],
            create_args=["compute", "firewall-rules", "create", rule_name, *rule_args, project],
        )


def _ensure_vpc_connector(config: ProvisioningConfig, network: str, connector: str) -> None:
    scope = [f"--region={config.region}", f"--project={config.project_id}"]
    base = ["compute", "networks", "vpc-access", "connectors"]
    create_args = [*base, "create", connector, f"--network={network}", f"--range={VPC_CONNECTOR_RANGE}", *scope]

    ensure_service_enabled(config.project_id, VPC_ACCESS_API)

    print(f"[lb] Checking for existing VPC connector: {connector}")
    existing = _describe([*base, "describe", connector, *scope, "--format=value(state)"])
    if existing is None:
        print(f"[lb] Creating VPC connector: {connector}")
        _create(create_args)
        return

    state = existing.stdout.strip()
    if state == "READY":
        print(f"[lb] ✅ Using existing VPC connector: {connector}")
    elif state == "ERROR":
        print(f"[lb] ⚠️ VPC connector {connector} is in ERROR state, recreating...")
        run_gcloud_command([*base, "delete", connector, *scope, "--quiet"])
        _create(create_args)
    else:
        # CREATING / DELETING: left as is.
        print(f"[lb] ⚠️ VPC connector {connector} is {state or 'UNKNOWN'}, continuing without waiting")


def _provision_outbound_nat(config: ProvisioningConfig, names: ResourceNameSet) -> None:
    project = f"--project={config.project_id}"
    region = f"--region={config.region}"
    print("[lb] 🌐 Setting up Cloud NAT for outbound static IP...")

    with _stage(ProvisioningStage.NETWORK):
        network = _resolve_network(config)

    with _stage(ProvisioningStage.FIREWALL):
        _ensure_firewall_rules(config, network)

    with _stage(ProvisioningStage.NAT_IP):
        nat_ip = _ensure_address(label="NAT IP", name=names.nat_ip, scope=[region], project_id=config.project_id)

    with _stage(ProvisioningStage.ROUTER):
        _ensure_resource(
            label="Cloud Router",
            name=names.router,
            describe_args=["compute", "routers", "describe", names.router, region, project],
            create_args=["compute", "routers", "create", names.router, f"--network={network}", region, project],
        )

    with _stage(ProvisioningStage.NAT):
        _ensure_resource(
            label="Cloud NAT",
            name=names.nat,
            describe_args=["compute", "routers", "nats", "describe", names.nat, f"--router={names.router}", region, project],
            create_args=[
                "compute",
                "routers",
                "nats",
                "create",
                names.nat,
                f"--router={names.router}",
                region,
                f"--nat-external-ip-pool={names.nat_ip}",
                "--nat-all-subnet-ip-ranges",
                project,
            ],
        )
    print(f"[lb] ✅ Cloud NAT configured - outbound traffic will use: {nat_ip}")

    with _stage(ProvisioningStage.VPC_CONNECTOR):
        _ensure_vpc_connector(config, network, names.vpc_connector)


def _neg_attached(backend: CommandResult, neg_name: str) -> bool:
    try:
        payload = json.loads(backend.stdout or "{}")
    except json.JSONDecodeError:
        return False
    if not isinstance(payload, dict):
        return False
    for entry in payload.get("backends") or []:
        group = str((entry or {}).get("group") or "")
        if group.rstrip("/").split("/")[-1] == neg_name:
            return True
    return False


def _ensure_backend_service(config: ProvisioningConfig, names: ResourceNameSet) -> None:
    project = f"--project={config.project_id}"
    print(f"[lb] Checking for existing backend service: {names.backend_service}")
    existing = _describe(
        ["compute", "backend-services", "describe", names.backend_service, "--global", project, "--format=json"]
    )
    if existing is None:
        print(f"[lb] Creating backend service: {names.backend_service}")
        _create(
            [
                "compute",
                "backend-services",
                "create",
                names.backend_service,
                "--global",
                "--load-balancing-scheme=EXTERNAL_MANAGED",
                "--protocol=HTTP",
                project,
            ]
        )
    elif _neg_attached(existing, names.neg):
        print(f"[lb] ✅ Using existing backend service: {names.backend_service}")
        return
    else:
        print(f"[lb] ⚠️ Backend service {names.backend_service} exists without {names.neg}, re-attaching")

    print(f"[lb] Attaching {names.neg} to {names.backend_service}")
    _create(
        [
            "compute",
            "backend-services",
            "add-backend",
            names.backend_service,
            "--global",
            f"--network-endpoint-group={names.neg}",
            f"--network-endpoint-group-region={config.region}",
            project,
        ]
    )


def provision_load_balancer(config: ProvisioningConfig) -> ResourceDescriptor:
    """Create or reuse every resource for the custom domain and return the descriptor."""
    names = generate_resource_names(config.service_name)
    project = f"--project={config.project_id}"
    region = f"--region={config.region}"

    print(f"\n[lb] 🔧 Creating load balancer resources for {config.custom_domain}...\n")

    with _stage(ProvisioningStage.STATIC_IP):
        ip_address = _ensure_address(label="static IP", name=names.static_ip, scope=["--global"], project_id=config.project_id)

    if config.use_static_outbound_ip:
        _provision_outbound_nat(config, names)

    with _stage(ProvisioningStage.SSL_CERTIFICATE):
        _ensure_resource(
            label="SSL certificate",
            name=names.ssl_cert,
            describe_args=["compute", "ssl-certificates", "describe", names.ssl_cert, "--global", project],
            create_args=[
                "compute",
                "ssl-certificates",
                "create",
                names.ssl_cert,
                f"--domains={config.custom_domain}",
                "--global",
                project,
            ],
        )

    with _stage(ProvisioningStage.NEG):
        _ensure_resource(
            label="network endpoint group",
            name=names.neg,
            describe_args=["compute", "network-endpoint-groups", "describe", names.neg, region, project],
            create_args=[
                "compute",
                "network-endpoint-groups",
                "create",
                names.neg,
                region,
                "--network-endpoint-type=serverless",
                f"--cloud-run-service={config.service_name}",
                project,
            ],
        )

    with _stage(ProvisioningStage.BACKEND_SERVICE):
        _ensure_backend_service(config, names)

    with _stage(ProvisioningStage.URL_MAP):
        _ensure_resource(
            label="URL map",
            name=names.url_map,
            describe_args=["compute", "url-maps", "describe", names.url_map, "--global", project],
            create_args=[
                "compute",
                "url-maps",
                "create",
                names.url_map,
                f"--default-service={names.backend_service}",
                "--global",
                project,
            ],
        )

    with _stage(ProvisioningStage.TARGET_PROXY):
        _ensure_resource(
            label="HTTPS target proxy",
            name=names.target_proxy,
            describe_args=["compute", "target-https-proxies", "describe", names.target_proxy, "--global", project],
            create_args=[
                "compute",
                "target-https-proxies",
                "create",
                names.target_proxy,
                f"--url-map={names.url_map}",
                f"--ssl-certificates={names.ssl_cert}",
                "--global",
                project,
            ],
        )

    with _stage(ProvisioningStage.FORWARDING_RULE):
        _ensure_resource(
            label="global forwarding rule",
            name=names.forwarding_rule,
            describe_args=["compute", "forwarding-rules", "describe", names.forwarding_rule, "--global", project],
            create_args=[
                "compute",
                "forwarding-rules",
                "create",
                names.forwarding_rule,
                "--load-balancing-scheme=EXTERNAL_MANAGED",
                f"--target-https-proxy={names.target_proxy}",
                f"--address={names.static_ip}",
                "--global",
                "--ports=443",
                project,
            ],
        )

    nat_ip_address: str | None = None
    vpc_connector_name: str | None = None
    if config.use_static_outbound_ip:
        with _stage(ProvisioningStage.DESCRIPTOR):
            nat_ip_address = run_gcloud_command(
                ["compute", "addresses", "describe", names.nat_ip, region, project, "--format=value(address)"]
            ).stdout.strip() or None
        vpc_connector_name = names.vpc_connector

    print("\n[lb] ✅ Load balancer created successfully!\n")
    return ResourceDescriptor(
        names=names,
        ip_address=ip_address,
        nat_ip_address=nat_ip_address,
        vpc_connector_name=vpc_connector_name,
    )


def format_dns_instructions(domain: str, ip_address: str) -> str:
    return "\n".join(
        [
            "📌 DNS Configuration Required:",
            "",
            "Add the following DNS record for your domain:",
            "  Type: A",
            f"  Name: {domain}",
            f"  Value: {ip_address}",
            "",
            "Note: DNS propagation may take up to 48 hours",
            "SSL certificate provisioning may take up to 30 minutes after DNS resolves",
        ]
    )


def format_outbound_ip_instructions(nat_ip_address: str) -> str:
    return "\n".join(
        [
            "🌐 Static Outbound IP Configuration:",
            "Your application will use this static IP for outbound connections:",
            f"  Static IP: {nat_ip_address}",
            "",
            f"💡 Add this IP to your database firewall / network access allow-list: {nat_ip_address}",
        ]
    )


def configure_service_vpc_egress(config: DeployConfig, descriptor: ResourceDescriptor) -> bool:
    """Route all Cloud Run egress through the VPC connector (and so the NAT IP)."""
    if not descriptor.vpc_connector_name:
        return False
    print("[lb] 🔗 Configuring Cloud Run to use VPC connector for static outbound IP...")
    try:
        run_gcloud_command(
            [
                "run",
                "services",
                "update",
                config.service_name,
                f"--vpc-connector={descriptor.vpc_connector_name}",
                "--vpc-egress=all-traffic",
                f"--region={config.region}",
                f"--project={config.project_id}",
            ]
        )
    except GcloudCommandError as e:
        print("[lb] ⚠️ Failed to configure VPC connector; outbound traffic will not use the static IP", file=sys.stderr)
        print(f"[lb]    Error: {sanitize_error_message(e)}", file=sys.stderr)
        return False

    print("[lb] ✅ Cloud Run configured to use static outbound IP")
    if descriptor.nat_ip_address:
        print(f"[lb]    Outbound connections will use: {descriptor.nat_ip_address}")
    return True


@dataclass(frozen=True)
class TeardownStep:
    label: str
    args: list[str]


def build_teardown_steps(project_id: str, region: str, descriptor: ResourceDescriptor) -> list[TeardownStep]:
    """Deletion plan: the exact reverse of creation order."""
    names = descriptor.names
    project = f"--project={project_id}"
    regional = [f"--region={region}", project, "--quiet"]
    global_ = ["--global", project, "--quiet"]

    steps = [
        TeardownStep("forwarding rule", ["compute", "forwarding-rules", "delete", names.forwarding_rule, *global_]),
        TeardownStep("target HTTPS proxy", ["compute", "target-https-proxies", "delete", names.target_proxy, *global_]),
        TeardownStep("URL map", ["compute", "url-maps", "delete", names.url_map, *global_]),
        TeardownStep("backend service", ["compute", "backend-services", "delete", names.backend_service, *global_]),
        TeardownStep("network endpoint group", ["compute", "network-endpoint-groups", "delete", names.neg, *regional]),
        TeardownStep("SSL certificate", ["compute", "ssl-certificates", "delete", names.ssl_cert, *global_]),
    ]

    if descriptor.has_outbound_nat:
        steps.append(
            TeardownStep(
                "Cloud NAT",
                ["compute", "routers", "nats", "delete", names.nat, f"--router={names.router}", *regional],
            )
        )
    if descriptor.vpc_connector_name:
        steps.append(
            TeardownStep(
                "VPC connector",
                ["compute", "networks", "vpc-access", "connectors", "delete", descriptor.vpc_connector_name, *regional],
            )
        )
    if descriptor.has_outbound_nat:
        steps.append(TeardownStep("Cloud Router", ["compute", "routers", "delete", names.router, *regional]))
        steps.append(TeardownStep("NAT static IP address", ["compute", "addresses", "delete", names.nat_ip, *regional]))

    steps.append(TeardownStep("static IP address", ["compute", "addresses", "delete", names.static_ip, *global_]))
    return steps


def teardown_load_balancer(config: ProjectPlacement, descriptor: ResourceDescriptor) -> int:
    """Best-effort delete of every resource in the descriptor. Returns the number of real failures."""
    print("\n[lb] 🧹 Cleaning up load balancer resources...\n")

    error_count = 0
    for step in build_teardown_steps(config.project_id, config.region, descriptor):
        print(f"[lb] Deleting {step.label}...")
        try:
            run_gcloud_command(step.args)
            print(f"[lb] ✓ {step.label} deleted")
        except Exception as e:
            if is_not_found_error(e):
                print(f"[lb]   {step.label} not found (already deleted)")
                continue
            print(f"[lb] ❌ Failed to delete {step.label}: {sanitize_error_message(e)}", file=sys.stderr)
            error_count += 1

    if error_count == 0:
        print("\n[lb] ✅ All load balancer resources cleaned up successfully")
    else:
        print(f"\n[lb] ⚠️ Cleaned up with {error_count} errors", file=sys.stderr)
    return error_count


@dataclass(frozen=True)
class LoadBalancerStatus:
    ssl_status: str
    forwarding_rule_active: bool
    ip_address: str


def check_load_balancer_status(config: ProjectPlacement, descriptor: ResourceDescriptor) -> LoadBalancerStatus | None:
    project = f"--project={config.project_id}"
    try:
        ssl_status = run_gcloud_command(
            [
                "compute",
                "ssl-certificates",
                "describe",
                descriptor.names.ssl_cert,
                "--global",
                project,
                "--format=value(managed.status)",
            ]
        ).stdout.strip()
        rule_status = run_gcloud_command(
            [
                "compute",
                "forwarding-rules",
                "describe",
                descriptor.names.forwarding_rule,
                "--global",
                project,
                "--format=value(status)",
            ]
        ).stdout.strip()
    except GcloudCommandError as e:
        print(f"[lb] ❌ Failed to check load balancer status: {sanitize_error_message(e)}", file=sys.stderr)
        return None

    return LoadBalancerStatus(
        ssl_status=ssl_status or "UNKNOWN",
        forwarding_rule_active=rule_status == "ACTIVE",
        ip_address=descriptor.ip_address,
    )
