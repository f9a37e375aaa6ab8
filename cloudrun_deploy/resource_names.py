"""Deterministic resource names derived from the logical service name.

Every load balancer / NAT resource is named `{sanitized_service}-{suffix}`.
These names are persisted in deployment state and used by teardown, so the
suffixes must stay stable.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

MAX_NAME_LENGTH = 63
DEFAULT_SERVICE_NAME = "cloudrun-app"


def sanitize_service_name(name: str) -> str:
    """Normalise a name to Cloud Run / Compute rules.

    Lowercase, only letters, digits and hyphens, starts with a letter,
    no trailing hyphen, at most 63 characters.
    """
    sanitized = str(name or "").lower()
    sanitized = re.sub(r"[^a-z0-9-]", "-", sanitized)
    sanitized = re.sub(r"^[^a-z]+", "", sanitized)
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized.rstrip("-")[:MAX_NAME_LENGTH]

    if not sanitized or not sanitized[0].isalpha():
        sanitized = "app-" + (sanitized or "service")

    return sanitized.rstrip("-") or DEFAULT_SERVICE_NAME


def resolve_service_name(explicit: str | None = None, *, repo_root: Path | None = None) -> str:
    """Explicit name, else the repository directory name, else a fixed default."""
    if explicit and explicit.strip():
        return sanitize_service_name(explicit)
    if repo_root is not None and repo_root.name:
        return sanitize_service_name(repo_root.name)
    return DEFAULT_SERVICE_NAME


@dataclass(frozen=True)
class ResourceNameSet:
    static_ip: str
    ssl_cert: str
    neg: str
    backend_service: str
    url_map: str
    target_proxy: str
    forwarding_rule: str
    nat_ip: str
    router: str
    nat: str
    vpc_connector: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceNameSet":
        return cls(**{k: str(data[k]) for k in cls.__dataclass_fields__})


def generate_resource_names(service_name: str) -> ResourceNameSet:
    base = sanitize_service_name(service_name)
    return ResourceNameSet(
        static_ip=f"{base}-ip",
        ssl_cert=f"{base}-ssl-cert",
        neg=f"{base}-neg",
        backend_service=f"{base}-backend",
        url_map=f"{base}-url-map",
        target_proxy=f"{base}-https-proxy",
        forwarding_rule=f"{base}-https-rule",
        nat_ip=f"{base}-nat-ip",
        router=f"{base}-router",
        nat=f"{base}-nat",
        vpc_connector=f"{service_name}-connector",
    )


def network_name_for_service(service_name: str) -> str:
    return f"{sanitize_service_name(service_name)}-network"
