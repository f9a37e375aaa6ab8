"""Move a custom domain from a Cloud Run domain mapping to the HTTPS load balancer.

Flow: detect -> config check -> migrate. Migration provisions the load
balancer first and only then deletes the domain mapping; if anything fails
after provisioning, the freshly created resources are torn down again.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace
from enum import Enum

from cloudrun_deploy.deploy_config import DeployConfig, ResourceDescriptor
from cloudrun_deploy.gcloud_utils import (
    GcloudCommandError,
    is_not_found_error,
    run_gcloud_command,
    run_gcloud_json,
    sanitize_error_message,
)
from cloudrun_deploy.load_balancer import (
    format_dns_instructions,
    format_outbound_ip_instructions,
    provision_load_balancer,
    teardown_load_balancer,
)

logger = logging.getLogger("cloudrun_deploy.domain_migration")


class MigrationReason(str, Enum):
    NO_CUSTOM_DOMAIN = "no_custom_domain"
    ALREADY_USING_LOAD_BALANCER = "already_using_load_balancer"
    HAS_DOMAIN_MAPPING = "has_domain_mapping"
    NO_EXISTING_DOMAIN_MAPPING = "no_existing_domain_mapping"
    CHECK_FAILED = "check_failed"


class MigrationState(str, Enum):
    NOT_NEEDED = "not_needed"
    DETECTED = "detected"
    CONFIG_CHECK = "config_check"
    BLOCKED = "blocked"
    MIGRATING = "migrating"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationDecision:
    needed: bool
    reason: MigrationReason
    error: str | None = None


@dataclass(frozen=True)
class MigrationResult:
    success: bool
    state: MigrationState
    resource_descriptor: ResourceDescriptor | None = None
    error: str | None = None
    rollback_performed: bool = False
    # Every state passed through, ending with `state`.
    states: tuple[MigrationState, ...] = ()
    decision: MigrationDecision | None = None


@dataclass(frozen=True)
class DomainMappingInfo:
    domain: str
    exists: bool
    mapped_service: str | None = None
    records: tuple[str, ...] = ()
    error: str | None = None


def _domain_mapping_args(verb: str, config: DeployConfig) -> list[str]:
    return [
        "run",
        "domain-mappings",
        verb,
        f"--domain={config.custom_domain}",
        f"--region={config.region}",
        f"--project={config.project_id}",
        "--platform=managed",
    ]


def detect_migration_needed(config: DeployConfig) -> MigrationDecision:
    """Decide whether the custom domain is still served by a domain mapping.

    Only a confirmed mapping counts; a failed lookup is reported as not needed.
    """
    if not config.custom_domain:
        return MigrationDecision(needed=False, reason=MigrationReason.NO_CUSTOM_DOMAIN)

    if config.load_balancer_resources is not None:
        return MigrationDecision(needed=False, reason=MigrationReason.ALREADY_USING_LOAD_BALANCER)

    try:
        out = run_gcloud_command([*_domain_mapping_args("describe", config), "--format=value(metadata.name)"])
    except GcloudCommandError as e:
        if is_not_found_error(e):
            return MigrationDecision(needed=False, reason=MigrationReason.NO_EXISTING_DOMAIN_MAPPING)
        logger.debug("Domain mapping lookup failed: %s", e)
        return MigrationDecision(needed=False, reason=MigrationReason.CHECK_FAILED, error=sanitize_error_message(e))

    if out.stdout.strip():
        return MigrationDecision(needed=True, reason=MigrationReason.HAS_DOMAIN_MAPPING)
    return MigrationDecision(needed=False, reason=MigrationReason.NO_EXISTING_DOMAIN_MAPPING)


def check_migration_config(config: DeployConfig, decision: MigrationDecision) -> bool:
    if not decision.needed:
        return False

    if config.enable_load_balancer_migration:
        return True

    if config.use_load_balancer and config.load_balancer_resources is None:
        print("[migrate] Load balancer requested and a domain mapping exists; migration will run.")
        return True

    print("\n[migrate] ⚠️ Domain mapping detected for", config.custom_domain)
    print("[migrate] Domain mappings are a preview feature and do not support a static outbound IP.")
    print("[migrate] To migrate to a load balancer with a managed SSL certificate:")
    print("[migrate]   - set ENABLE_LOAD_BALANCER_MIGRATION=true in .env.deploy, or")
    print("[migrate]   - run: gcp_deploy migrate-domain")
    return False


def get_domain_mapping_info(config: DeployConfig) -> DomainMappingInfo:
    """Best-effort snapshot of the current mapping; never raises for gcloud failures."""
    domain = config.custom_domain or ""
    try:
        payload = run_gcloud_json([*_domain_mapping_args("describe", config), "--format=json"])
    except GcloudCommandError as e:
        if is_not_found_error(e):
            return DomainMappingInfo(domain=domain, exists=False)
        return DomainMappingInfo(domain=domain, exists=False, error=sanitize_error_message(e))
    except ValueError as e:
        return DomainMappingInfo(domain=domain, exists=False, error=str(e))

    if not isinstance(payload, dict):
        return DomainMappingInfo(domain=domain, exists=False)

    spec = payload.get("spec") or {}
    status = payload.get("status") or {}
    records = tuple(
        f"{r.get('type', '?')} {r.get('rrdata', '')}".strip()
        for r in status.get("resourceRecords") or []
        if isinstance(r, dict)
    )
    return DomainMappingInfo(
        domain=domain,
        exists=True,
        mapped_service=spec.get("routeName"),
        records=records,
    )


def remove_existing_domain_mapping(config: DeployConfig) -> bool:
    print(f"[migrate] Removing domain mapping for {config.custom_domain}...")
    try:
        run_gcloud_command([*_domain_mapping_args("delete", config), "--quiet"])
    except GcloudCommandError as e:
        if is_not_found_error(e):
            print("[migrate]   Domain mapping not found (already removed)")
            return True
        print(f"[migrate] ❌ Failed to remove domain mapping: {sanitize_error_message(e)}", file=sys.stderr)
        return False

    print("[migrate] ✅ Domain mapping removed")
    return True


def _enter(states: list[MigrationState], state: MigrationState) -> None:
    logger.debug("Migration state: %s", state.value)
    states.append(state)


def perform_migration(config: DeployConfig, states: list[MigrationState] | None = None) -> MigrationResult:
    """Provision the load balancer, then drop the domain mapping.

    `states` is extended in place with MIGRATING and the states that follow;
    the full trail is also returned on the result.
    """
    trail = states if states is not None else []
    _enter(trail, MigrationState.MIGRATING)
    print(f"\n[migrate] 🔄 Migrating {config.custom_domain} from domain mapping to load balancer...\n")

    info = get_domain_mapping_info(config)
    if info.exists:
        print(f"[migrate] Current mapping: {info.domain} -> {info.mapped_service or 'unknown service'}")
        for record in info.records:
            print(f"[migrate]   DNS record: {record}")

    descriptor: ResourceDescriptor | None = None
    rollback_needed = False
    try:
        provisioning = config.provisioning_config(
            use_static_outbound_ip=config.use_static_ip or config.create_static_outbound_ip
        )
        descriptor = provision_load_balancer(provisioning)
        rollback_needed = True

        if not remove_existing_domain_mapping(config):
            raise RuntimeError(f"Failed to remove domain mapping for {config.custom_domain}")

        print()
        print(format_dns_instructions(config.custom_domain or "", descriptor.ip_address))
        print("[migrate] ⚠️ Update the A record above; the old domain mapping records no longer serve traffic.")
        if descriptor.nat_ip_address:
            print()
            print(format_outbound_ip_instructions(descriptor.nat_ip_address))

        print("\n[migrate] ✅ Migration completed.")
        _enter(trail, MigrationState.SUCCEEDED)
        return MigrationResult(
            success=True,
            state=MigrationState.SUCCEEDED,
            resource_descriptor=descriptor,
            states=tuple(trail),
        )
    except Exception as e:
        print(f"[migrate] ❌ Migration failed: {sanitize_error_message(e)}", file=sys.stderr)
        if rollback_needed and descriptor is not None:
            _enter(trail, MigrationState.ROLLING_BACK)
            print("[migrate] Rolling back load balancer resources created during migration...", file=sys.stderr)
            errors = teardown_load_balancer(config, descriptor)
            if errors:
                print(f"[migrate] ⚠️ Rollback finished with {errors} errors; clean up manually.", file=sys.stderr)
        _enter(trail, MigrationState.FAILED)
        return MigrationResult(
            success=False,
            state=MigrationState.FAILED,
            error=str(e),
            rollback_performed=MigrationState.ROLLING_BACK in trail,
            states=tuple(trail),
        )


def migrate_domain_mapping(config: DeployConfig) -> tuple[DeployConfig, MigrationResult]:
    """Run detect -> config check -> migrate.

    Returns the config to continue with (updated with the load balancer on
    success, otherwise the input unchanged) and the result. A failed mapping
    lookup is warned about and treated as nothing to migrate.
    """
    states: list[MigrationState] = []
    decision = detect_migration_needed(config)
    logger.debug("Migration decision: %s", decision)
    if decision.error:
        print(f"[migrate] ⚠️ Could not check domain mapping: {decision.error}", file=sys.stderr)
    if not decision.needed:
        _enter(states, MigrationState.NOT_NEEDED)
        return config, MigrationResult(
            success=True,
            state=MigrationState.NOT_NEEDED,
            states=tuple(states),
            decision=decision,
        )

    _enter(states, MigrationState.DETECTED)
    _enter(states, MigrationState.CONFIG_CHECK)
    if not check_migration_config(config, decision):
        _enter(states, MigrationState.BLOCKED)
        return config, MigrationResult(
            success=False,
            state=MigrationState.BLOCKED,
            error=f"A domain mapping still serves {config.custom_domain}; migration is not enabled.",
            states=tuple(states),
            decision=decision,
        )

    result = replace(perform_migration(config, states), decision=decision)
    if not result.success or result.resource_descriptor is None:
        return config, result
    return config.with_load_balancer(result.resource_descriptor), result
