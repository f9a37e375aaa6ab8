#!/usr/bin/env python3
"""Provision and manage the HTTPS load balancer in front of a Cloud Run service.

Subcommands:
- provision:       migrate a legacy domain mapping if allowed, then create/reuse
                   the load balancer (and optional Cloud NAT) and persist state
- migrate-domain:  force the domain mapping -> load balancer migration
- teardown:        delete every load balancer resource recorded in state
- status:          show the recorded resources and their live status
- wait-ready:      poll an SSL certificate / forwarding rule until ACTIVE

Configuration resolution: CLI flag -> process env -> .env.deploy -> defaults.
Provisioned resources are recorded in `.cloudrun-deploy/state.yaml`.

Security note: this script shells out to `gcloud`.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from cloudrun_deploy.deploy_config import (
    DEFAULT_STATE_FILE,
    ConfigValidationError,
    DeployConfig,
    VarsEnum,
    load_deploy_config,
    save_state,
    write_dotenv_values,
)
from cloudrun_deploy.domain_migration import MigrationState, migrate_domain_mapping
from cloudrun_deploy.gcloud_utils import check_required_apis, gcloud_logged_in
from cloudrun_deploy.load_balancer import (
    ProvisioningError,
    check_load_balancer_status,
    configure_service_vpc_egress,
    format_dns_instructions,
    format_outbound_ip_instructions,
    provision_load_balancer,
    teardown_load_balancer,
)
from cloudrun_deploy.resource_status import ResourceType, wait_for_resource_ready

logger = logging.getLogger("cloudrun_deploy.cli")

DEFAULT_ENV_FILE = ".env.deploy"


def log_info(message: str, *, icon: str = "ℹ️") -> None:
    print(f"[gcp-deploy] {icon} {message}")


def log_error(message: str) -> None:
    print(f"[gcp-deploy] ❌ {message}", file=sys.stderr)


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", default=None, help=f"Deploy env file (default: {DEFAULT_ENV_FILE} in the repo root)")
    common.add_argument("--state-file", default=None, help=f"Deployment state file (default: {DEFAULT_STATE_FILE})")
    common.add_argument("--project", default=None, help="GCP project id (overrides GCP_PROJECT_ID)")
    common.add_argument("--region", default=None, help="GCP region (overrides GCP_REGION)")
    common.add_argument("--service-name", default=None, help="Cloud Run service name (overrides SERVICE_NAME)")
    common.add_argument("--custom-domain", default=None, help="Custom domain (overrides CUSTOM_DOMAIN)")
    common.add_argument("--network", default=None, help="VPC network for Cloud NAT (overrides NETWORK_NAME)")
    common.add_argument("--verbose", action="store_true", help="Log executed gcloud commands and timings")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    parser = argparse.ArgumentParser(description="Cloud Run custom domain load balancer deployment")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("provision", parents=[common], help="Create or reuse load balancer resources")
    p.add_argument("--skip-migration", action="store_true", help="Do not check for a legacy domain mapping")
    p.add_argument(
        "--reconcile",
        action="store_true",
        help="Re-run every check-then-create stage even if resources are already recorded in state",
    )
    p.add_argument(
        "--static-outbound-ip",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Route egress through Cloud NAT with a static IP (overrides USE_STATIC_IP)",
    )
    p.add_argument("--wait-ssl", type=float, default=None, metavar="MINUTES", help="Wait for the SSL certificate")

    sub.add_parser("migrate-domain", parents=[common], help="Migrate a domain mapping to a load balancer")

    t = sub.add_parser("teardown", parents=[common], help="Delete the recorded load balancer resources")
    t.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("status", parents=[common], help="Show recorded resources and their live status")

    w = sub.add_parser("wait-ready", parents=[common], help="Wait until a resource reports ACTIVE")
    w.add_argument(
        "--type",
        dest="resource_type",
        choices=[r.value for r in ResourceType],
        default=ResourceType.SSL_CERTIFICATE.value,
    )
    w.add_argument("--name", default=None, help="Resource name (default: taken from recorded state)")
    w.add_argument("--max-wait-minutes", type=float, default=30)

    return parser


def _resolve_paths(args: argparse.Namespace, repo_root: Path) -> tuple[Path, Path]:
    env_path = Path(args.env_file).expanduser() if args.env_file else repo_root / DEFAULT_ENV_FILE
    state_path = Path(args.state_file).expanduser() if args.state_file else repo_root / DEFAULT_STATE_FILE
    return env_path, state_path


def _load_config(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> DeployConfig:
    overrides = {
        VarsEnum.GCP_PROJECT_ID.value: args.project,
        VarsEnum.GCP_REGION.value: args.region,
        VarsEnum.SERVICE_NAME.value: args.service_name,
        VarsEnum.CUSTOM_DOMAIN.value: args.custom_domain,
        VarsEnum.NETWORK_NAME.value: args.network,
    }
    static_outbound = getattr(args, "static_outbound_ip", None)
    if static_outbound is not None:
        overrides[VarsEnum.USE_STATIC_IP.value] = str(static_outbound).lower()

    try:
        return load_deploy_config(
            deploy_env_path=env_path,
            state_path=state_path,
            repo_root=repo_root,
            overrides=overrides,
        )
    except ConfigValidationError as e:
        print(e.format(), file=sys.stderr)
        raise SystemExit(2)


def _require_login() -> None:
    if not gcloud_logged_in():
        raise SystemExit("Not logged in to gcloud. Run: gcloud auth login")


def _persist(config: DeployConfig, *, env_path: Path, state_path: Path) -> None:
    save_state(state_path, config)
    write_dotenv_values(path=env_path, updates=config.to_env_values())
    log_info(f"State saved to {state_path}", icon="💾")


def _print_instructions(config: DeployConfig) -> None:
    descriptor = config.load_balancer_resources
    if descriptor is None or not config.custom_domain:
        return
    print()
    print(format_dns_instructions(config.custom_domain, descriptor.ip_address))
    if descriptor.nat_ip_address:
        print()
        print(format_outbound_ip_instructions(descriptor.nat_ip_address))
    print()


def cmd_provision(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> None:
    config = _load_config(args, env_path=env_path, state_path=state_path, repo_root=repo_root)
    if not config.custom_domain:
        raise SystemExit("CUSTOM_DOMAIN is required to provision a load balancer")

    _require_login()

    for api, info in check_required_apis(config.project_id).items():
        if not info.get("enabled"):
            print(f"[gcp-deploy] ⚠️ {info['name']} ({api}) is not enabled on {config.project_id}", file=sys.stderr)

    if not args.skip_migration:
        config, result = migrate_domain_mapping(config)
        if result.state == MigrationState.BLOCKED:
            raise SystemExit("A domain mapping still serves this domain; migrate it before provisioning.")
        if not result.success:
            raise SystemExit(1)
        if result.state == MigrationState.SUCCEEDED:
            _persist(config, env_path=env_path, state_path=state_path)

    if config.load_balancer_resources is None or args.reconcile:
        provisioning = config.provisioning_config(
            use_static_outbound_ip=config.use_static_ip or config.create_static_outbound_ip
        )
        try:
            descriptor = provision_load_balancer(provisioning)
        except ProvisioningError as e:
            log_error(str(e))
            log_error("Resources created so far were kept; re-run provision to resume.")
            raise SystemExit(1)
        config = config.with_load_balancer(descriptor)
        _persist(config, env_path=env_path, state_path=state_path)
    else:
        log_info(f"Using load balancer recorded in {state_path} (pass --reconcile to re-check every resource)")

    descriptor = config.load_balancer_resources
    assert descriptor is not None
    if descriptor.vpc_connector_name:
        configure_service_vpc_egress(config, descriptor)

    _print_instructions(config)

    if args.wait_ssl:
        ready = wait_for_resource_ready(
            ResourceType.SSL_CERTIFICATE,
            descriptor.names.ssl_cert,
            args.wait_ssl,
            project_id=config.project_id,
        )
        if not ready:
            print("[gcp-deploy] ⚠️ SSL certificate is not active yet; check again with `status`.", file=sys.stderr)

    log_info("Done.", icon="✅")


def cmd_migrate_domain(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> None:
    config = _load_config(args, env_path=env_path, state_path=state_path, repo_root=repo_root)
    config = replace(config, enable_load_balancer_migration=True)
    if not config.custom_domain:
        raise SystemExit("CUSTOM_DOMAIN is required to migrate a domain mapping")

    _require_login()

    config, result = migrate_domain_mapping(config)
    if result.state == MigrationState.NOT_NEEDED:
        assert result.decision is not None
        log_info(f"No migration needed ({result.decision.reason.value}).")
        return
    if not result.success or result.resource_descriptor is None:
        if result.rollback_performed:
            log_error("Migration failed; load balancer resources were rolled back.")
        raise SystemExit(1)

    _persist(config, env_path=env_path, state_path=state_path)
    if result.resource_descriptor.vpc_connector_name:
        configure_service_vpc_egress(config, result.resource_descriptor)
    log_info("Done.", icon="✅")


def _confirm(prompt: str) -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(f"{prompt} [y/N]: ").strip().lower()
    return answer in {"y", "yes"}


def cmd_teardown(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> None:
    config = _load_config(args, env_path=env_path, state_path=state_path, repo_root=repo_root)
    descriptor = config.load_balancer_resources
    if descriptor is None:
        log_info(f"No load balancer recorded in {state_path}; nothing to tear down.")
        return

    if not args.yes and not _confirm(f"Delete load balancer resources for {config.service_name} in {config.project_id}?"):
        raise SystemExit("Teardown cancelled (pass --yes to skip confirmation)")

    errors = teardown_load_balancer(config, descriptor)
    if errors:
        log_error(f"Teardown finished with {errors} errors; state kept so it can be retried.")
        raise SystemExit(1)

    save_state(state_path, config.without_load_balancer())
    log_info("Load balancer removed from state.", icon="✅")


def cmd_status(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> None:
    config = _load_config(args, env_path=env_path, state_path=state_path, repo_root=repo_root)
    print(f"[gcp-deploy] Project:        {config.project_id}")
    print(f"[gcp-deploy] Region:         {config.region}")
    print(f"[gcp-deploy] Service:        {config.service_name}")
    print(f"[gcp-deploy] Custom domain:  {config.custom_domain or '-'}")

    descriptor = config.load_balancer_resources
    if descriptor is None:
        print("[gcp-deploy] Load balancer:  not provisioned")
        return

    print(f"[gcp-deploy] Load balancer IP: {descriptor.ip_address}")
    if descriptor.nat_ip_address:
        print(f"[gcp-deploy] Outbound IP:      {descriptor.nat_ip_address}")
    for field_name, value in descriptor.names.to_dict().items():
        print(f"[gcp-deploy]   {field_name}: {value}")

    status = check_load_balancer_status(config, descriptor)
    if status is None:
        raise SystemExit(1)
    print(f"[gcp-deploy] SSL certificate:  {status.ssl_status}")
    print(f"[gcp-deploy] Forwarding rule:  {'ACTIVE' if status.forwarding_rule_active else 'not active'}")


def cmd_wait_ready(args: argparse.Namespace, *, env_path: Path, state_path: Path, repo_root: Path) -> None:
    config = _load_config(args, env_path=env_path, state_path=state_path, repo_root=repo_root)
    resource_type = ResourceType(args.resource_type)

    name = str(args.name or "").strip()
    if not name:
        descriptor = config.load_balancer_resources
        if descriptor is None:
            raise SystemExit("No load balancer recorded in state; pass --name")
        if resource_type == ResourceType.SSL_CERTIFICATE:
            name = descriptor.names.ssl_cert
        else:
            name = descriptor.names.forwarding_rule

    if not wait_for_resource_ready(resource_type, name, args.max_wait_minutes, project_id=config.project_id):
        raise SystemExit(1)


COMMANDS = {
    "provision": cmd_provision,
    "migrate-domain": cmd_migrate_domain,
    "teardown": cmd_teardown,
    "status": cmd_status,
    "wait-ready": cmd_wait_ready,
}


def main(argv: list[str] | None = None, repo_root_override: Path | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    repo_root = repo_root_override or Path.cwd()
    env_path, state_path = _resolve_paths(args, repo_root)
    logger.debug("env file: %s, state file: %s", env_path, state_path)

    COMMANDS[args.command](args, env_path=env_path, state_path=state_path, repo_root=repo_root)


if __name__ == "__main__":
    main()
