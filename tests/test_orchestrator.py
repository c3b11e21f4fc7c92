from datetime import timedelta
from pathlib import Path

import pytest
import requests

from conftest import (
    FakeLoadBalancer,
    FakeLoadBalancerFormula,
    FakeNetwork,
    FakeNetworkProvisioner,
    FakeProvider,
    FakeStorage,
    jira_executor,
    machine,
    release,
)
from jira_deployer.artifacts import ArtifactPreparer
from jira_deployer.cloud.base import HttpApplicationStorage, HttpJiraHomeSource
from jira_deployer.configs import ClusterMode, Diagnostics, Investment, JmxClient, NodeConfig, RemoteJmx, SshKey
from jira_deployer.database import DockerMySqlDatabase
from jira_deployer.errors import (
    ClusterConfigurationError,
    ClusterHealthGateTimeout,
    ClusterProvisioningError,
    ConfigurationError,
    HealthGateTimeout,
    ProvisioningError,
)
from jira_deployer.home.shared_home import SHARED_HOME_PATH
from jira_deployer.orchestrator import (
    HEALTH_GATE,
    RESOLVE_ROLES,
    ClusterOrchestrator,
    ClusterState,
    pick_availability_zone,
)
from jira_deployer.resources import NoResource, completed
from jira_deployer.topology import Role
from jira_deployer.utils.aws_cli import StorageLocation

NODE = Role.JIRA_NODE.value
DATABASE = Role.DATABASE.value
SHARED_HOME = Role.SHARED_HOME.value

ARCHIVE_URI = "https://example.com/atlassian-jira-software-7.13.0.tar.gz"
COLLECTD_URI = "https://example.com/collectd/jira-jmx.conf"


def _data_center_machines():
    # Private addresses deliberately out of string order
    return [
        machine("3.0.0.20", "10.0.0.20", NODE),
        machine("3.0.0.3", "10.0.0.3", NODE),
        machine("3.0.1.5", "10.0.1.5", DATABASE),
        machine("3.0.1.6", "10.0.1.6", SHARED_HOME),
    ]


def _configs():
    return [
        NodeConfig(name="node-1"),
        NodeConfig(
            name="node-2",
            diagnostics=Diagnostics(remote_jmx=RemoteJmx(enabled=True), collectd_configs=(COLLECTD_URI,)),
        ),
    ]


@pytest.fixture(autouse=True)
def unreachable_collectd_configs(monkeypatch):
    def fake_get(uri, timeout=None):
        raise requests.ConnectionError(f"cannot reach {uri}")

    monkeypatch.setattr(requests, "get", fake_get)


class _Harness:
    def __init__(self, tmp_path: Path, events, machines=None, mode=ClusterMode.DATA_CENTER,
                 load_balancer=None, executor=None, network_error=None, health_gate_timeout=60,
                 zones=("eu-central-1a", "eu-central-1c")):
        self.events = events
        self.executor = executor or jira_executor()
        self.network = FakeNetwork(machines if machines is not None else _data_center_machines(), events)
        self.provisioner = FakeNetworkProvisioner(self.network, error=network_error)
        self.provider = FakeProvider(self.provisioner, zones=zones)
        self.load_balancer = load_balancer or FakeLoadBalancer()
        self.lb_formula = FakeLoadBalancerFormula(self.load_balancer, events)
        self.plugins = FakeStorage("s3://bucket/nonce/jira-storage")
        self.results = FakeStorage("s3://bucket/nonce/results")
        app = tmp_path / "perf-plugin.obr"
        app.write_bytes(b"app")
        self.orchestrator = ClusterOrchestrator(
            executor=self.executor,
            application=HttpApplicationStorage(ARCHIVE_URI),
            jira_home_source=HttpJiraHomeSource("https://example.com/jirahome.tar.bz2"),
            database=DockerMySqlDatabase("https://example.com/database.tar.bz2"),
            load_balancer_formula=self.lb_formula if mode == ClusterMode.DATA_CENTER else None,
            template="templates/2-nodes-dc.yaml",
            nonce="jpt-test",
            mode=mode,
            artifacts=ArtifactPreparer(apps=[str(app)], collectd_jars=[]),
            health_gate_timeout=health_gate_timeout,
        )

    def orchestrate(self, configs):
        return self.orchestrator.orchestrate(
            configs=configs,
            investment=Investment(use_case="unit test", lifespan=timedelta(hours=1)),
            plugins_transport=self.plugins,
            results_transport=self.results,
            key_future=completed(SshKey(remote_name="jpt-key", file="/tmp/jpt-key.pem")),
            role_profile="jpt-profile",
            provider=self.provider,
        )

    def host(self, address: str):
        return self.executor.host(address)


def test_data_center_cluster_comes_up(tmp_path, events):
    harness = _Harness(tmp_path, events)

    provisioned = harness.orchestrate(_configs())
    cluster = provisioned.cluster

    # Configs bound to nodes in numeric private address order
    assert [n.name for n in cluster.nodes] == ["node-1", "node-2"]
    assert [n.target.address for n in cluster.nodes] == ["3.0.0.3", "3.0.0.20"]
    assert [m.private_address for m in harness.lb_formula.instances] == ["10.0.0.3", "10.0.0.20"]
    assert harness.lb_formula.subnet == "subnet-subnet"
    assert harness.lb_formula.vpc == "vpc-vpc"

    assert cluster.address == harness.load_balancer.uri
    assert cluster.jira_home.path == SHARED_HOME_PATH
    assert cluster.jira_home.host.address == "3.0.1.6"
    assert cluster.database.path == "/home/ubuntu/database"
    assert cluster.database.host.address == "3.0.1.5"
    assert cluster.jmx_clients == (JmxClient(address="3.0.0.20", port=9000),)

    spec, parameters = harness.provisioner.calls[0]
    assert spec.name == "jpt-test-jira"
    assert spec.node_names == ("node-1", "node-2")
    assert parameters["KeyName"] == "jpt-key"
    assert parameters["InstanceProfile"] == "jpt-profile"
    assert parameters["Ami"] == "ami-12345"
    assert parameters["AvailabilityZone"] == "eu-central-1a"

    assert harness.plugins.uploads == ["apps", "collectd.conf.d", "collectdjars"]


def test_nodes_are_configured_for_data_center(tmp_path, events):
    harness = _Harness(tmp_path, events)

    harness.orchestrate(_configs())

    first = harness.host("3.0.0.3")
    second = harness.host("3.0.0.20")
    assert "jdbc:mysql://10.0.1.5:3306/jiradb" in first.files["/home/ubuntu/jirahome/dbconfig.xml"]
    assert "jira.node.id = node-1" in first.files["/home/ubuntu/jirahome/cluster.properties"]
    assert "ehcache.listener.hostName = 10.0.0.3" in first.files["/home/ubuntu/jirahome/cluster.properties"]
    assert "jira.node.id = node-2" in second.files["/home/ubuntu/jirahome/cluster.properties"]
    assert first.ran(f"10.0.1.6:{SHARED_HOME_PATH}")
    assert first.ran("./atlassian-jira-software-7.13.0-standalone/bin/start-jira.sh")

    # JMX-enabled node rewrites its collectd configs to the JMX port
    assert second.ran("s/localhost:3333/localhost:9000/g")
    assert not first.ran("localhost:3333")

    shared_home = harness.host("3.0.1.6")
    assert shared_home.ran("systemctl restart nfs-kernel-server")
    assert shared_home.files["/tmp/jira-exports"].startswith(SHARED_HOME_PATH)

    database = harness.host("3.0.1.5")
    assert database.ran("docker run -d --name jira-database")
    assert any(harness.load_balancer.uri in c for c in database.ran("UPDATE jiradb.propertystring"))


class _StartRecorder(list):
    """Command log that notes, across hosts, the order Jira was started in"""

    def __init__(self, address, started):
        super().__init__()
        self.address = address
        self.started = started

    def append(self, command):
        if "start-jira.sh" in command:
            self.started.append(self.address)
        super().append(command)


def test_nodes_start_sequentially_in_config_order(tmp_path, events):
    harness = _Harness(tmp_path, events)
    started = []
    for address in ("3.0.0.3", "3.0.0.20"):
        harness.host(address).commands = _StartRecorder(address, started)

    harness.orchestrate(_configs())

    assert started == ["3.0.0.3", "3.0.0.20"]


def test_release_tears_down_load_balancer_before_stack(tmp_path, events):
    harness = _Harness(tmp_path, events)

    provisioned = harness.orchestrate(_configs())
    release(provisioned.resource)

    assert events == ["load balancer", "network"]


def test_standalone_cluster_uses_the_node_address(tmp_path, events):
    machines = [machine("3.0.0.3", "10.0.0.3", NODE), machine("3.0.1.5", "10.0.1.5", DATABASE)]
    harness = _Harness(
        tmp_path, events, machines=machines, mode=ClusterMode.STANDALONE,
        zones=("eu-central-1a", "eu-central-1b", "eu-central-1c"),
    )

    provisioned = harness.orchestrate([NodeConfig(name="solo")])
    cluster = provisioned.cluster

    _, parameters = harness.provisioner.calls[0]
    assert "AvailabilityZone" not in parameters
    assert {parameters["AvailabilityZone1"], parameters["AvailabilityZone2"]} == {"eu-central-1a", "eu-central-1b"}

    assert cluster.address == "http://3.0.0.3:8080/"
    assert cluster.jira_home.path == "/home/ubuntu/jirahome"
    assert cluster.jira_home.host.address == "3.0.0.3"
    assert harness.lb_formula.instances == []
    assert "/home/ubuntu/jirahome/cluster.properties" not in harness.host("3.0.0.3").files
    assert any("http://3.0.0.3:8080/" in c for c in harness.host("3.0.1.5").ran("UPDATE"))
    assert provisioned.resource is harness.network


def test_invalid_configs_fail_before_anything_is_created(tmp_path, events):
    harness = _Harness(tmp_path, events)

    with pytest.raises(ConfigurationError, match="unique"):
        harness.orchestrate([NodeConfig(name="node-1"), NodeConfig(name="node-1")])

    assert harness.provisioner.calls == []


def test_stack_failure_leaves_nothing_to_release(tmp_path, events):
    harness = _Harness(tmp_path, events, network_error=ProvisioningError("ROLLBACK_COMPLETE"))

    with pytest.raises(ClusterProvisioningError, match="ROLLBACK_COMPLETE") as exc_info:
        harness.orchestrate(_configs())

    error = exc_info.value
    assert error.stage == "provision stack"
    assert error.state == ClusterState.NETWORK_PENDING
    assert isinstance(error.resource, NoResource)


def test_wrong_machine_count_is_a_configuration_error(tmp_path, events):
    machines = _data_center_machines() + [machine("3.0.0.4", "10.0.0.4", NODE)]
    harness = _Harness(tmp_path, events, machines=machines)

    with pytest.raises(ClusterConfigurationError, match="Expected 2 machines") as exc_info:
        harness.orchestrate(_configs())

    error = exc_info.value
    assert error.stage == RESOLVE_ROLES
    assert error.resource is harness.network
    release(error.resource)
    assert events == ["network"]


def test_archive_download_failure_aborts_with_partial_resource(tmp_path, events):
    executor = jira_executor(failures={ARCHIVE_URI: 8})
    harness = _Harness(tmp_path, events, executor=executor)

    with pytest.raises(ClusterProvisioningError) as exc_info:
        harness.orchestrate(_configs())

    error = exc_info.value
    assert error.stage in ("provision node-1", "provision node-2")
    assert error.state == ClusterState.SUBSYSTEMS_PROVISIONING
    assert ARCHIVE_URI in str(error)
    assert not harness.host("3.0.0.3").ran("start-jira.sh")

    release(error.resource)
    assert events == ["load balancer", "network"]


def test_failing_node_does_not_cancel_its_sibling(tmp_path, events):
    harness = _Harness(tmp_path, events)
    harness.host("3.0.0.20").failures[ARCHIVE_URI] = 8

    with pytest.raises(ClusterProvisioningError) as exc_info:
        harness.orchestrate(_configs())

    error = exc_info.value
    assert error.stage == "provision node-2"
    assert error.state == ClusterState.SUBSYSTEMS_PROVISIONING

    sibling = harness.host("3.0.0.3")
    assert sibling.ran("systemctl restart collectd.service")
    assert "jira.node.id = node-1" in sibling.files["/home/ubuntu/jirahome/cluster.properties"]
    assert not sibling.ran("start-jira.sh")


def test_health_gate_timeout(tmp_path, events):
    harness = _Harness(tmp_path, events, load_balancer=FakeLoadBalancer(healthy_after=None), health_gate_timeout=0)

    with pytest.raises(ClusterHealthGateTimeout) as exc_info:
        harness.orchestrate(_configs())

    error = exc_info.value
    assert isinstance(error, HealthGateTimeout)
    assert error.stage == HEALTH_GATE
    assert error.state == ClusterState.NODES_STARTED
    release(error.resource)
    assert events == ["load balancer", "network"]


def test_gather_results_from_live_cluster(tmp_path, events):
    harness = _Harness(tmp_path, events)
    cluster = harness.orchestrate(_configs()).cluster

    local = cluster.gather_results(harness.results, tmp_path / "results")

    assert local == tmp_path / "results"
    assert harness.host("3.0.0.3").ran("s3://bucket/nonce/results/node-1")
    assert harness.host("3.0.0.20").ran("s3://bucket/nonce/results/node-2")


def test_excluded_zones_are_never_picked(events):
    provider = FakeProvider(FakeNetworkProvisioner(FakeNetwork([], events)), zones=["eu-central-1c"])

    with pytest.raises(ConfigurationError, match="No usable availability zone"):
        pick_availability_zone(provider)


def test_second_zone_differs_from_the_first(events):
    provider = FakeProvider(FakeNetworkProvisioner(FakeNetwork([], events)), zones=["eu-central-1a", "eu-central-1b"])

    assert pick_availability_zone(provider, exclude={"eu-central-1a"}) == "eu-central-1b"
    with pytest.raises(ConfigurationError, match="No usable availability zone"):
        pick_availability_zone(provider, exclude={"eu-central-1a", "eu-central-1b"})


def test_storage_location_resolves_per_node():
    location = StorageLocation(uri="s3://bucket/nonce/results/", region_name="us-east-1")
    assert location.resolve("node-1").uri == "s3://bucket/nonce/results/node-1"
