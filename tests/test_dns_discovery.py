"""
Tests for DNS-based service discovery and Corefile editing.
"""

from types import SimpleNamespace

import pytest

from meshharness.discovery.dns import (
    BEGIN_MARKER,
    CONFIG_MAP_NAME,
    END_MARKER,
    CorefileError,
    DNSDiscoveryProvider,
    DNSOptions,
    has_federation_block,
    remove_federation_block,
    render_federation_block,
    upsert_federation_block
)
from meshharness.exceptions import ConfigInvalidError, DiscoveryInstallError
from meshharness.models import DiscoveryState, ServiceDiscoveryConfig

from conftest import FakeHandle, ObjectStore, api_error


COREFILE = """.:53 {
    errors
    health
    kubernetes cluster.local in-addr.arpa ip6.arpa {
       pods insecure
       fallthrough in-addr.arpa ip6.arpa
    }
    forward . /etc/resolv.conf
    cache 30
}
"""

OPTIONS = DNSOptions(nameservers=["10.96.0.10", "10.96.0.11:5353"], ttl=15)


def dns_config(**overrides):
    fields = {
        "type": "dns",
        "enabled": True,
        "clusters": ["primary", "remote-a"],
        "options": {"nameservers": ["10.96.0.10"]},
    }
    fields.update(overrides)
    return ServiceDiscoveryConfig(**fields)


def with_block(corefile=COREFILE, clusters=("primary", "remote-a")):
    return upsert_federation_block(corefile, render_federation_block(list(clusters), DNSOptions(nameservers=["10.96.0.10"])))


def ready_deployment(ready=1):
    return SimpleNamespace(spec=SimpleNamespace(replicas=1), status=SimpleNamespace(ready_replicas=ready))


def dns_handle(objects):
    handle = FakeHandle("primary")
    handle.core_v1.read_namespaced_config_map.side_effect = ObjectStore(objects).read
    handle.core_v1.read_namespaced_endpoints.return_value = SimpleNamespace(
        subsets=[SimpleNamespace(addresses=["10.244.0.2", "10.244.0.3"])]
    )
    handle.apps_v1.read_namespaced_deployment.return_value = ready_deployment()
    return handle


def corefile_map(corefile):
    return SimpleNamespace(data={"Corefile": corefile})


@pytest.mark.unit
class TestCorefileEditing:
    """Test the marked federation block in a Corefile."""

    def test_render(self):
        block = render_federation_block(["primary", "remote-a"], OPTIONS)
        lines = block.splitlines()

        assert lines[0] == BEGIN_MARKER
        assert lines[-1] == END_MARKER
        assert "primary.cluster.local:53 {" in lines
        assert "remote-a.cluster.local:53 {" in lines
        assert "    cache 15" in lines
        assert "    forward . 10.96.0.10 10.96.0.11:5353" in lines

    def test_upsert_appends_and_keeps_existing_config(self):
        updated = with_block()

        assert updated.startswith(COREFILE)
        assert has_federation_block(updated)
        assert not has_federation_block(COREFILE)

    def test_upsert_is_idempotent(self):
        assert with_block(with_block()) == with_block()

    def test_upsert_replaces_existing_block(self):
        updated = with_block(with_block(), clusters=["primary", "remote-b"])

        assert updated.count(BEGIN_MARKER) == 1
        assert "remote-b.cluster.local:53" in updated
        assert "remote-a.cluster.local:53" not in updated

    def test_remove_restores_existing_config(self):
        assert remove_federation_block(with_block()) == COREFILE

    def test_remove_without_block_is_noop(self):
        assert remove_federation_block(COREFILE) == COREFILE

    def test_duplicate_markers_rejected(self):
        corefile = with_block() + BEGIN_MARKER + "\n"
        with pytest.raises(CorefileError):
            has_federation_block(corefile)

    def test_end_before_begin_rejected(self):
        corefile = COREFILE + END_MARKER + "\n" + BEGIN_MARKER + "\n"
        with pytest.raises(CorefileError):
            remove_federation_block(corefile)


@pytest.mark.unit
class TestDNSValidation:
    """Test DNS discovery configuration validation."""

    def test_disabled_config_is_valid(self):
        DNSDiscoveryProvider().validate_config({"enabled": False})

    def test_enabled_requires_clusters(self):
        with pytest.raises(ConfigInvalidError, match="names no participating clusters"):
            DNSDiscoveryProvider().validate_config(dns_config(clusters=[]))

    def test_requires_nameservers(self):
        with pytest.raises(ConfigInvalidError, match="nameservers"):
            DNSDiscoveryProvider().validate_config(dns_config(options={}))

    @pytest.mark.parametrize("nameserver", ["10.0.0.10", "10.0.0.10:53", "dns.internal", "fd00::10"])
    def test_valid_nameservers(self, nameserver):
        DNSDiscoveryProvider().validate_config(dns_config(options={"nameservers": [nameserver]}))

    @pytest.mark.parametrize("nameserver", ["not a host", "-bad.example", ""])
    def test_invalid_nameservers(self, nameserver):
        with pytest.raises(ConfigInvalidError):
            DNSDiscoveryProvider().validate_config(dns_config(options={"nameservers": [nameserver]}))

    def test_ttl_bounds(self):
        with pytest.raises(ConfigInvalidError):
            DNSDiscoveryProvider().validate_config(
                dns_config(options={"nameservers": ["10.0.0.10"], "ttl": 7200})
            )


@pytest.mark.unit
class TestDNSInstall:
    """Test installing and removing DNS discovery."""

    async def test_install_writes_config_and_corefile(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})

        await DNSDiscoveryProvider(namespace="mesh-system").install(handle, dns_config())

        namespace, body = handle.core_v1.create_namespaced_config_map.call_args.args
        assert namespace == "mesh-system"
        assert body.metadata.name == CONFIG_MAP_NAME
        assert body.data["clusters"] == "primary,remote-a"
        assert body.data["resolv.conf"] == "nameserver 10.96.0.10\n"

        name, coredns_namespace, patch = handle.core_v1.patch_namespaced_config_map.call_args.args
        assert (name, coredns_namespace) == ("coredns", "kube-system")
        assert patch["data"]["Corefile"] == with_block()
        handle.apps_v1.patch_namespaced_deployment.assert_called_once()

    async def test_reinstall_leaves_corefile_untouched(self):
        handle = dns_handle({"coredns": corefile_map(with_block())})

        await DNSDiscoveryProvider().install(handle, dns_config())

        handle.core_v1.patch_namespaced_config_map.assert_not_called()
        handle.apps_v1.patch_namespaced_deployment.assert_not_called()

    async def test_existing_config_map_replaced(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})
        handle.core_v1.create_namespaced_config_map.side_effect = api_error(409)

        await DNSDiscoveryProvider().install(handle, dns_config())

        assert handle.core_v1.replace_namespaced_config_map.call_args.args[0] == CONFIG_MAP_NAME

    async def test_missing_corefile(self):
        handle = dns_handle({})

        with pytest.raises(DiscoveryInstallError, match="Corefile not found") as exc_info:
            await DNSDiscoveryProvider().install(handle, dns_config())

        assert exc_info.value.details["cluster"] == "primary"

    async def test_malformed_corefile(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE + BEGIN_MARKER + "\n")})

        with pytest.raises(DiscoveryInstallError):
            await DNSDiscoveryProvider().install(handle, dns_config())

        handle.core_v1.patch_namespaced_config_map.assert_not_called()

    async def test_api_failure_wrapped(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})
        handle.core_v1.create_namespaced_config_map.side_effect = api_error(403)

        with pytest.raises(DiscoveryInstallError, match="install failed"):
            await DNSDiscoveryProvider().install(handle, dns_config())

    async def test_invalid_config_rejected_before_any_call(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})

        with pytest.raises(ConfigInvalidError):
            await DNSDiscoveryProvider().install(handle, dns_config(options={"nameservers": []}))

        handle.core_v1.create_namespaced_config_map.assert_not_called()

    async def test_uninstall_removes_exactly_the_block(self):
        handle = dns_handle({"coredns": corefile_map(with_block())})

        await DNSDiscoveryProvider().uninstall(handle)

        patch = handle.core_v1.patch_namespaced_config_map.call_args.args[2]
        assert patch["data"]["Corefile"] == COREFILE
        handle.core_v1.delete_namespaced_config_map.assert_called_once_with(CONFIG_MAP_NAME, "kube-system")

    async def test_uninstall_when_absent(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})
        handle.core_v1.delete_namespaced_config_map.side_effect = api_error(404)

        await DNSDiscoveryProvider().uninstall(handle)

        handle.core_v1.patch_namespaced_config_map.assert_not_called()

    async def test_uninstall_refuses_malformed_corefile(self):
        handle = dns_handle({"coredns": corefile_map(with_block() + END_MARKER + "\n")})

        with pytest.raises(DiscoveryInstallError, match="refusing to edit Corefile"):
            await DNSDiscoveryProvider().uninstall(handle)


@pytest.mark.unit
class TestDNSStatus:
    """Test DNS discovery status and health checks."""

    async def test_not_installed(self):
        status = await DNSDiscoveryProvider().status(dns_handle({"coredns": corefile_map(COREFILE)}))

        assert status.state == DiscoveryState.NOT_INSTALLED
        assert not status.healthy

    async def test_installed(self):
        handle = dns_handle({
            "coredns": corefile_map(with_block()),
            CONFIG_MAP_NAME: SimpleNamespace(data={"clusters": "primary,remote-a"}),
        })

        status = await DNSDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.INSTALLED
        assert status.healthy
        assert status.services_discovered == 2
        assert status.endpoints_discovered == 2

    async def test_missing_stanza_is_degraded(self):
        handle = dns_handle({
            "coredns": corefile_map(COREFILE),
            CONFIG_MAP_NAME: SimpleNamespace(data={"clusters": "primary"}),
        })

        status = await DNSDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.DEGRADED
        assert not status.healthy

    async def test_coredns_not_ready_is_degraded(self):
        handle = dns_handle({
            "coredns": corefile_map(with_block()),
            CONFIG_MAP_NAME: SimpleNamespace(data={"clusters": "primary"}),
        })
        handle.apps_v1.read_namespaced_deployment.return_value = ready_deployment(ready=0)

        status = await DNSDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.DEGRADED

    async def test_api_error(self):
        handle = dns_handle({})
        handle.core_v1.read_namespaced_config_map.side_effect = api_error(500)

        status = await DNSDiscoveryProvider().status(handle)

        assert status.state == DiscoveryState.ERROR
        assert status.error

    async def test_health_checks(self):
        handle = dns_handle({
            "coredns": corefile_map(with_block()),
            CONFIG_MAP_NAME: SimpleNamespace(data={"clusters": "primary"}),
        })

        checks = await DNSDiscoveryProvider().health_check(handle)

        assert [check.name for check in checks] == [
            "configuration", "corefile-stanza", "coredns-deployment", "dns-service-endpoints"
        ]
        assert all(check.healthy for check in checks)

    async def test_health_checks_report_each_failure(self):
        handle = dns_handle({"coredns": corefile_map(COREFILE)})
        handle.apps_v1.read_namespaced_deployment.side_effect = api_error(404)
        handle.core_v1.read_namespaced_endpoints.return_value = SimpleNamespace(subsets=None)

        checks = {check.name: check for check in await DNSDiscoveryProvider().health_check(handle)}

        assert not checks["configuration"].healthy
        assert not checks["corefile-stanza"].healthy
        assert checks["coredns-deployment"].message == "deployment coredns not found"
        assert not checks["dns-service-endpoints"].healthy
