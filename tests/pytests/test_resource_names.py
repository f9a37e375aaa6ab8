from __future__ import annotations

from pathlib import Path

import pytest

from cloudrun_deploy.resource_names import (
    DEFAULT_SERVICE_NAME,
    MAX_NAME_LENGTH,
    ResourceNameSet,
    generate_resource_names,
    network_name_for_service,
    resolve_service_name,
    sanitize_service_name,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("My_App", "my-app"),
        ("123abc", "abc"),
        ("--Foo--Bar--", "foo-bar"),
        ("web.api v2", "web-api-v2"),
        ("", "app-service"),
        ("999", "app-service"),
    ],
)
def test_sanitize_service_name(raw: str, expected: str) -> None:
    assert sanitize_service_name(raw) == expected


def test_sanitize_truncates_to_max_length() -> None:
    out = sanitize_service_name("a" * 100)
    assert len(out) == MAX_NAME_LENGTH
    assert not out.endswith("-")


def test_resolve_service_name_prefers_explicit(tmp_path: Path) -> None:
    assert resolve_service_name("My Service", repo_root=tmp_path) == "my-service"


def test_resolve_service_name_falls_back_to_repo_dir(tmp_path: Path) -> None:
    repo = tmp_path / "Cool_Repo"
    repo.mkdir()
    assert resolve_service_name(None, repo_root=repo) == "cool-repo"
    assert resolve_service_name("   ", repo_root=repo) == "cool-repo"


def test_resolve_service_name_default() -> None:
    assert resolve_service_name(None) == DEFAULT_SERVICE_NAME


def test_generate_resource_names_is_deterministic() -> None:
    names = generate_resource_names("shop")
    assert names == generate_resource_names("shop")
    assert names == ResourceNameSet(
        static_ip="shop-ip",
        ssl_cert="shop-ssl-cert",
        neg="shop-neg",
        backend_service="shop-backend",
        url_map="shop-url-map",
        target_proxy="shop-https-proxy",
        forwarding_rule="shop-https-rule",
        nat_ip="shop-nat-ip",
        router="shop-router",
        nat="shop-nat",
        vpc_connector="shop-connector",
    )


def test_generate_resource_names_sanitizes_prefix() -> None:
    names = generate_resource_names("Shop_Front")
    assert names.static_ip == "shop-front-ip"
    assert names.forwarding_rule == "shop-front-https-rule"


def test_name_set_dict_round_trip() -> None:
    names = generate_resource_names("shop")
    assert ResourceNameSet.from_dict(names.to_dict()) == names


def test_network_name_for_service() -> None:
    assert network_name_for_service("Shop") == "shop-network"
