"""
Tests for the api-server, propagation and manual discovery mechanisms and the
discovery registry.
"""

import json
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import call, patch

import pytest

from meshharness.config.settings import Settings
from meshharness.discovery import create_discovery_registry
from meshharness.discovery.api_server import AGGREGATOR_NAME, APIServerDiscoveryProvider
from meshharness.discovery.api_server import CONFIG_MAP_NAME as API_CONFIG_MAP
from meshharness.discovery.base import MANAGED_BY_LABEL, ServiceDiscoveryRegistry
from meshharness.discovery.manual import CONFIG_MAP_NAME as MANUAL_CONFIG_MAP
from meshharness.discovery.manual import ManualDiscoveryProvider
from meshharness.discovery.propagation import (
    CONFIG_MAP_NAME as PROPAGATION_CONFIG_MAP,
    PROPAGATED_SELECTOR,
    PROPAGATOR_NAME,
    STATE_CONFIG_MAP_NAME,
    PropagationDiscoveryProvider,
    sync_is_recent
)
from meshharness.exceptions import ConfigInvalidError, DiscoveryInstallError, DiscoveryNotFoundError
from meshharness.models import DiscoveryState, ServiceDiscoveryConfig

from conftest import FakeHandle, ObjectStore, api_error


NOW = datetime(2024, 5, 1, 12, 0, 0)


def discovery_config(mechanism, options=None, clusters=("primary", "remote-a")):
    return ServiceDiscoveryConfig(type=mechanism, enabled=True, clusters=list(clusters), options=options or {})


def deployment(ready=1, desired=1):
    return SimpleNamespace(spec=SimpleNamespace(replicas=desired), status=SimpleNamespace(ready_replicas=ready))


def handle_with(config_maps=None, deployments=None):
    handle = FakeHandle("primary")
    handle.core_v1.read_namespaced_config_map.side_effect = ObjectStore(config_maps).read
    handle.apps_v1.read_namespaced_deployment.side_effect = ObjectStore(deployments).read
    return handle


def service(name, namespace):
    return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace))


@pytest.mark.unit
class TestAPIServerDiscovery:
    """Test API-server aggregation discovery."""

    def test_url_must_be_http(self):
        with pytest.raises(ConfigInvalidError, match="api_server_url"):
            APIServerDiscoveryProvider().validate_config(
                discovery_config("api-server", {"api_server_url": "ftp://registry"})
            )

    def test_url_required(self):
        with pytest.raises(ConfigInvalidError):
            APIServerDiscoveryProvider().validate_config(discovery_config("api-server"))

    async def test_install(self):
        handle = handle_with()
        config = discovery_config("api-server", {"api_server_url": "https://registry.mesh/", "sync_interval": 30})

        await APIServerDiscoveryProvider(managed_by="ci").install(handle, config)

        _, config_map = handle.core_v1.create_namespaced_config_map.call_args.args
        assert config_map.metadata.name == API_CONFIG_MAP
        assert config_map.metadata.labels[MANAGED_BY_LABEL] == "ci"
        assert config_map.data["api-server-url"] == "https://registry.mesh"
        assert config_map.data["local-cluster"] == "primary"

        handle.core_v1.create_namespaced_service_account.assert_called_once()
        assert handle.rbac_v1.create_cluster_role.call_args.args[0].metadata.name == AGGREGATOR_NAME
        handle.rbac_v1.create_cluster_role_binding.assert_called_once()

        _, body = handle.apps_v1.create_namespaced_deployment.call_args.args
        pod = body.spec.template.spec
        assert pod.service_account_name == AGGREGATOR_NAME
        assert "sleep 30" in pod.containers[0].command[-1]

    async def test_install_replaces_existing_objects(self):
        handle = handle_with()
        handle.rbac_v1.create_cluster_role.side_effect = api_error(409)
        handle.apps_v1.create_namespaced_deployment.side_effect = api_error(409)

        await APIServerDiscoveryProvider().install(
            handle, discovery_config("api-server", {"api_server_url": "http://registry"})
        )

        assert handle.rbac_v1.replace_cluster_role.call_args.args[0] == AGGREGATOR_NAME
        assert handle.apps_v1.replace_namespaced_deployment.call_args.args[:2] == (AGGREGATOR_NAME, "kube-system")

    async def test_install_failure(self):
        handle = handle_with()
        handle.rbac_v1.create_cluster_role.side_effect = api_error(403)

        with pytest.raises(DiscoveryInstallError):
            await APIServerDiscoveryProvider().install(
                handle, discovery_config("api-server", {"api_server_url": "http://registry"})
            )

        handle.apps_v1.create_namespaced_deployment.assert_not_called()

    async def test_uninstall_tolerates_missing_objects(self):
        handle = handle_with()
        for fn in (handle.apps_v1.delete_namespaced_deployment,
                   handle.rbac_v1.delete_cluster_role_binding,
                   handle.rbac_v1.delete_cluster_role,
                   handle.core_v1.delete_namespaced_service_account,
                   handle.core_v1.delete_namespaced_config_map):
            fn.side_effect = api_error(404)

        await APIServerDiscoveryProvider().uninstall(handle)

        handle.core_v1.delete_namespaced_config_map.assert_called_once_with(API_CONFIG_MAP, "kube-system")

    async def test_uninstall_failure(self):
        handle = handle_with()
        handle.apps_v1.delete_namespaced_deployment.side_effect = api_error(500)

        with pytest.raises(DiscoveryInstallError, match="uninstall failed"):
            await APIServerDiscoveryProvider().uninstall(handle)

    async def test_status_not_installed(self):
        status = await APIServerDiscoveryProvider().status(handle_with())
        assert status.state == DiscoveryState.NOT_INSTALLED

    async def test_status_installed(self):
        handle = handle_with(
            {API_CONFIG_MAP: SimpleNamespace(data={"clusters": "primary,remote-a"})},
            {AGGREGATOR_NAME: deployment()}
        )

        status = await APIServerDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.INSTALLED
        assert status.healthy
        assert status.services_discovered == 2

    async def test_status_degraded(self):
        handle = handle_with(
            {API_CONFIG_MAP: SimpleNamespace(data={"clusters": "primary"})},
            {AGGREGATOR_NAME: deployment(ready=0)}
        )

        status = await APIServerDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.DEGRADED
        assert status.error == "0/1 replicas ready"

    async def test_health_checks(self):
        handle = handle_with({API_CONFIG_MAP: SimpleNamespace(data={})}, {AGGREGATOR_NAME: deployment()})
        handle.rbac_v1.read_cluster_role_binding.side_effect = api_error(404)

        checks = {check.name: check for check in await APIServerDiscoveryProvider().health_check(handle)}

        assert list(checks) == ["deployment", "configuration", "rbac"]
        assert checks["deployment"].healthy
        assert checks["configuration"].healthy
        assert not checks["rbac"].healthy
        assert "ClusterRoleBinding" in checks["rbac"].message


@pytest.mark.unit
class TestPropagationDiscovery:
    """Test service propagation discovery."""

    def test_sync_is_recent(self):
        recent = (NOW - timedelta(seconds=100)).isoformat() + "Z"
        stale = (NOW - timedelta(seconds=700)).isoformat() + "Z"

        assert sync_is_recent(recent, 60, now=NOW)
        assert not sync_is_recent(stale, 300, now=NOW)
        assert not sync_is_recent(None, 300, now=NOW)
        assert not sync_is_recent("yesterday", 300, now=NOW)

    async def test_install(self):
        handle = handle_with()
        config = discovery_config("propagation", {
            "selector_labels": {"mesh": "on", "app": "web"},
            "namespaces": ["default", "prod"],
            "sync_interval": 120,
        })

        with patch("meshharness.discovery.propagation._utcnow", return_value=NOW):
            await PropagationDiscoveryProvider().install(handle, config)

        bodies = {c.args[1].metadata.name: c.args[1] for c in handle.core_v1.create_namespaced_config_map.call_args_list}
        assert bodies[PROPAGATION_CONFIG_MAP].data["selector-labels"] == "app=web,mesh=on"
        assert bodies[PROPAGATION_CONFIG_MAP].data["namespaces"] == "default,prod"
        assert bodies[STATE_CONFIG_MAP_NAME].data == {
            "last-sync": "2024-05-01T12:00:00Z",
            "propagated-services": "0",
        }
        assert handle.apps_v1.create_namespaced_deployment.call_args.args[1].metadata.name == PROPAGATOR_NAME

    async def test_uninstall_removes_propagated_services(self):
        handle = handle_with()
        handle.core_v1.list_service_for_all_namespaces.return_value = SimpleNamespace(
            items=[service("web", "default"), service("api", "prod")]
        )

        await PropagationDiscoveryProvider().uninstall(handle)

        handle.core_v1.list_service_for_all_namespaces.assert_called_once_with(label_selector=PROPAGATED_SELECTOR)
        assert handle.core_v1.delete_namespaced_service.call_args_list == [
            call("web", "default"), call("api", "prod")
        ]
        deleted = [c.args[0] for c in handle.core_v1.delete_namespaced_config_map.call_args_list]
        assert deleted == [PROPAGATION_CONFIG_MAP, STATE_CONFIG_MAP_NAME]

    async def test_status_counts_propagated_objects(self):
        handle = handle_with(
            {PROPAGATION_CONFIG_MAP: SimpleNamespace(data={"sync-interval": "60"})},
            {PROPAGATOR_NAME: deployment()}
        )
        handle.core_v1.list_service_for_all_namespaces.return_value = SimpleNamespace(
            items=[service("web", "default")]
        )
        handle.core_v1.list_endpoints_for_all_namespaces.return_value = SimpleNamespace(items=[
            SimpleNamespace(subsets=[SimpleNamespace(addresses=["a", "b"]), SimpleNamespace(addresses=None)]),
            SimpleNamespace(subsets=None),
        ])

        status = await PropagationDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.INSTALLED
        assert status.services_discovered == 1
        assert status.endpoints_discovered == 2

    async def test_status_not_installed(self):
        status = await PropagationDiscoveryProvider().status(handle_with())
        assert status.state == DiscoveryState.NOT_INSTALLED

    async def test_stale_sync_fails_health_check(self):
        handle = handle_with(
            {
                PROPAGATION_CONFIG_MAP: SimpleNamespace(data={"sync-interval": "60"}),
                STATE_CONFIG_MAP_NAME: SimpleNamespace(data={"last-sync": "2024-05-01T11:50:00Z"}),
            },
            {PROPAGATOR_NAME: deployment()}
        )

        with patch("meshharness.discovery.propagation._utcnow", return_value=NOW):
            checks = {check.name: check for check in await PropagationDiscoveryProvider().health_check(handle)}

        assert checks["deployment"].healthy
        assert checks["propagation-state"].healthy
        assert not checks["sync"].healthy
        assert checks["sync"].details["sync_interval"] == 60

    async def test_recent_sync_passes_health_check(self):
        handle = handle_with(
            {STATE_CONFIG_MAP_NAME: SimpleNamespace(data={"last-sync": "2024-05-01T11:59:00Z"})},
            {PROPAGATOR_NAME: deployment()}
        )

        with patch("meshharness.discovery.propagation._utcnow", return_value=NOW):
            checks = {check.name: check for check in await PropagationDiscoveryProvider().health_check(handle)}

        assert checks["sync"].healthy


@pytest.mark.unit
class TestManualDiscovery:
    """Test manual discovery."""

    async def test_install_records_services(self):
        handle = handle_with()
        config = discovery_config("manual", {"services": [
            {"name": "web", "cluster": "remote-a", "endpoints": ["10.0.0.5:80", "10.0.0.6:80"]},
        ]})

        await ManualDiscoveryProvider().install(handle, config)

        _, body = handle.core_v1.create_namespaced_config_map.call_args.args
        services = json.loads(body.data["services"])
        assert services == [{
            "name": "web", "namespace": "default", "cluster": "remote-a",
            "endpoints": ["10.0.0.5:80", "10.0.0.6:80"],
        }]
        assert body.data["installed-at"].endswith("Z")

    async def test_status_configured(self):
        services = [{"name": "web", "endpoints": ["a:1", "b:1"]}, {"name": "db", "endpoints": ["c:1"]}]
        handle = handle_with({MANUAL_CONFIG_MAP: SimpleNamespace(data={"services": json.dumps(services)})})

        status = await ManualDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.CONFIGURED
        assert status.healthy
        assert status.services_discovered == 2
        assert status.endpoints_discovered == 3

    async def test_status_not_configured(self):
        status = await ManualDiscoveryProvider().status(handle_with())
        assert status.state == DiscoveryState.NOT_CONFIGURED
        assert not status.installed

    async def test_unreadable_service_list(self):
        handle = handle_with({MANUAL_CONFIG_MAP: SimpleNamespace(data={"services": "{not json"})})
        status = await ManualDiscoveryProvider().status(handle)
        assert status.state == DiscoveryState.ERROR

    async def test_health_check(self):
        checks = await ManualDiscoveryProvider().health_check(handle_with())
        assert [(check.name, check.healthy) for check in checks] == [("manual-configuration", False)]


@pytest.mark.unit
class TestDiscoveryRegistry:
    """Test discovery mechanism lookup."""

    def test_builtin_mechanisms(self):
        registry = create_discovery_registry(Settings())
        assert registry.list() == ["api-server", "dns", "manual", "propagation"]

    def test_settings_namespace_applied(self):
        settings = Settings(discovery={"namespace": "mesh-system", "managed_by": "ci"})
        provider = create_discovery_registry(settings).get("DNS")
        assert provider.namespace == "mesh-system"
        assert provider.labels("x")[MANAGED_BY_LABEL] == "ci"

    def test_unknown_mechanism(self):
        with pytest.raises(DiscoveryNotFoundError) as exc_info:
            create_discovery_registry(Settings()).get("consul")
        assert "dns" in exc_info.value.details["available"]

    def test_disabled_config_skips_lookup(self):
        ServiceDiscoveryRegistry().validate_config(ServiceDiscoveryConfig(type="consul", enabled=False))

    def test_enabled_config_validated_by_its_mechanism(self):
        registry = create_discovery_registry(Settings())
        with pytest.raises(ConfigInvalidError):
            registry.validate_config(discovery_config("dns", {"nameservers": []}))
