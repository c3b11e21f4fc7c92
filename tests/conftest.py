import threading
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

import pytest

from jira_deployer.cloud.base import (
    CloudProvider,
    LoadBalancer,
    LoadBalancerFormula,
    Machine,
    NetworkProvisioner,
    ProvisionedLoadBalancer,
    ProvisionedNetwork,
    Storage,
)
from jira_deployer.errors import TransientRemoteError
from jira_deployer.resources import CallbackResource, completed
from jira_deployer.utils.aws_cli import StorageLocation
from jira_deployer.utils.remote import CommandResult, RemoteSession, RemoteTarget


UNPACKED = "atlassian-jira-software-7.13.0-standalone"

DBCONFIG = """<?xml version="1.0" encoding="UTF-8"?>
<jira-database-config>
  <name>defaultDS</name>
  <database-type>mysql</database-type>
  <jdbc-datasource>
    <url>jdbc:mysql://dbserver:3306/jiradb?useUnicode=true&amp;characterEncoding=UTF8</url>
    <driver-class>com.mysql.jdbc.Driver</driver-class>
  </jdbc-datasource>
</jira-database-config>
"""

SETENV = """JVM_SUPPORT_RECOMMENDED_ARGS=""
JVM_MINIMUM_MEMORY="384m"
JVM_MAXIMUM_MEMORY="768m"
"""


# ==================== Remote ====================

class FakeHost:
    """What one machine has seen: commands run and files written"""

    def __init__(
        self,
        address: str,
        files: Optional[Dict[str, str]] = None,
        outputs: Optional[Dict[str, str]] = None,
        failures: Optional[Dict[str, int]] = None,
    ):
        self.address = address
        self.commands: List[str] = []
        self.files: Dict[str, str] = dict(files or {})
        # command substring -> stdout
        self.outputs: Dict[str, str] = dict(outputs or {})
        # command substring -> exit status
        self.failures: Dict[str, int] = dict(failures or {})

    def ran(self, fragment: str) -> List[str]:
        return [c for c in self.commands if fragment in c]


class FakeSession(RemoteSession):

    def __init__(self, target: RemoteTarget, host: FakeHost):
        super().__init__(target, loop=None, conn=None)
        self.host = host

    def safe_execute(self, command: str, timeout: int = 60) -> CommandResult:
        self.host.commands.append(command)
        for pattern, status in self.host.failures.items():
            if pattern in command:
                return CommandResult(
                    host=self.target.address,
                    success=False,
                    stdout="",
                    stderr=f"{pattern}: failed",
                    return_code=status,
                )
        stdout = next((out for pattern, out in self.host.outputs.items() if pattern in command), "")
        return CommandResult(host=self.target.address, success=True, stdout=stdout, stderr="", return_code=0)

    def read_text(self, remote_path: str) -> str:
        if remote_path not in self.host.files:
            raise TransientRemoteError(f"No such file: {remote_path}")
        return self.host.files[remote_path]

    def write_text(self, remote_path: str, content: str) -> None:
        self.host.files[remote_path] = content

    def close(self) -> None:
        pass


class FakeExecutor:
    """Stands in for RemoteExecutor; every address gets its own FakeHost"""

    def __init__(
        self,
        files: Optional[Dict[str, str]] = None,
        outputs: Optional[Dict[str, str]] = None,
        failures: Optional[Dict[str, int]] = None,
    ):
        self.files = files or {}
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.hosts: Dict[str, FakeHost] = {}
        self._lock = threading.Lock()

    def host(self, address: str) -> FakeHost:
        with self._lock:
            if address not in self.hosts:
                self.hosts[address] = FakeHost(address, self.files, self.outputs, self.failures)
            return self.hosts[address]

    @contextmanager
    def connect(self, target: RemoteTarget):
        yield FakeSession(target, self.host(target.address))


def jira_executor(**overrides) -> FakeExecutor:
    """An executor whose machines look like a fresh Jira download"""
    files = {
        "/home/ubuntu/jirahome/dbconfig.xml": DBCONFIG,
        f"{UNPACKED}/bin/setenv.sh": SETENV,
    }
    outputs = {
        "tar -tf": f"{UNPACKED}/\n",
        "curl": '{"state": "RUNNING"}',
    }
    return FakeExecutor(
        files=overrides.get("files", files),
        outputs=overrides.get("outputs", outputs),
        failures=overrides.get("failures"),
    )


# ==================== Storage ====================

class FakeStorage(Storage):

    def __init__(self, uri: str = "s3://bucket/nonce/jira-storage", region_name: str = "us-east-1"):
        self.uri = uri
        self.region_name = region_name
        # Top-level names passed to upload()
        self.uploads: List[str] = []
        # Relative paths of every uploaded file, with contents
        self.files: Dict[str, bytes] = {}
        self.downloads: List[Path] = []

    @property
    def location(self) -> StorageLocation:
        return StorageLocation(uri=self.uri, region_name=self.region_name)

    def upload(self, path: Path) -> None:
        path = Path(path)
        self.uploads.append(path.name)
        files = [path] if path.is_file() else [p for p in path.rglob("*") if p.is_file()]
        for file in files:
            self.files[file.relative_to(path.parent).as_posix()] = file.read_bytes()

    def download(self, target: Path) -> Path:
        self.downloads.append(Path(target))
        return Path(target)


# ==================== Cloud ====================

def machine(public: str, private: str, *roles: str, instance_id: str = "") -> Machine:
    return Machine(
        public_address=public,
        private_address=private,
        tags=frozenset((role, "true") for role in roles),
        instance_id=instance_id or f"i-{private.replace('.', '')}",
    )


class FakeNetwork(ProvisionedNetwork):

    def __init__(self, machines: Iterable[Machine], events: List[str]):
        super().__init__()
        self.machines = set(machines)
        self.events = events
        self._expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)

    @property
    def expiry(self) -> datetime:
        return self._expiry

    def list_machines(self) -> Set[Machine]:
        return set(self.machines)

    def find_subnet(self, name: str) -> str:
        return f"subnet-{name.lower()}"

    def find_vpc(self, name: str) -> str:
        return f"vpc-{name.lower()}"

    def _start_release(self) -> Future:
        self.events.append("network")
        return completed()

    def __repr__(self) -> str:
        return "FakeNetwork()"


class FakeNetworkProvisioner(NetworkProvisioner):

    def __init__(self, network: FakeNetwork, error: Optional[Exception] = None):
        self.network = network
        self.error = error
        self.calls: List[tuple] = []

    def provision(self, investment, spec, parameters):
        self.calls.append((spec, dict(parameters)))
        if self.error is not None:
            raise self.error
        return self.network


class FakeProvider(CloudProvider):

    def __init__(self, provisioner: FakeNetworkProvisioner, zones: Sequence[str] = ("us-east-1a",)):
        self._provisioner = provisioner
        self.zones = list(zones)

    @property
    def default_ami(self) -> str:
        return "ami-12345"

    def availability_zones(self) -> List[str]:
        return list(self.zones)

    @property
    def network_provisioner(self) -> NetworkProvisioner:
        return self._provisioner


class FakeLoadBalancer(LoadBalancer):

    def __init__(self, healthy_after: Optional[int] = 0, uri: str = "http://jira-lb.example.com/"):
        # Number of unhealthy checks before turning healthy; None means never
        self.healthy_after = healthy_after
        self._uri = uri
        self.checks = 0

    @property
    def uri(self) -> str:
        return self._uri

    def is_healthy(self) -> bool:
        self.checks += 1
        return self.healthy_after is not None and self.checks > self.healthy_after


class FakeLoadBalancerFormula(LoadBalancerFormula):

    def __init__(self, load_balancer: FakeLoadBalancer, events: List[str]):
        self.load_balancer = load_balancer
        self.events = events
        self.instances: List[Machine] = []
        self.subnet: Optional[str] = None
        self.vpc: Optional[str] = None

    def provision(self, investment, instances, subnet, vpc, key) -> ProvisionedLoadBalancer:
        self.instances = list(instances)
        self.subnet = subnet
        self.vpc = vpc
        return ProvisionedLoadBalancer(
            load_balancer=self.load_balancer,
            resource=CallbackResource("load balancer", lambda: self.events.append("load balancer")),
        )


class FakeClock:
    """Replaces the ``time`` module inside jira_deployer.utils.timing"""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock(monkeypatch):
    from jira_deployer.utils import timing

    clock = FakeClock()
    monkeypatch.setattr(timing, "time", clock)
    return clock


@pytest.fixture
def events() -> List[str]:
    return []


def release(resource, timeout: float = 5) -> None:
    resource.release().result(timeout=timeout)


