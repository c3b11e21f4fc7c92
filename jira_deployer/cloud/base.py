"""
External Collaborator Interfaces

Abstract contracts the provisioning core consumes: network stacks, load
balancers, blob storage, databases and the installers that prepare a single
machine. Concrete AWS implementations live in ``aws_provider``; tests use
in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, FrozenSet, List, Sequence, Set, Tuple

from loguru import logger

from ..configs import Investment, SshKey
from ..errors import HealthGateTimeout
from ..resources import Resource
from ..utils import actions
from ..utils.aws_cli import StorageLocation
from ..utils.remote import RemoteSession
from ..utils.timing import WaitUntilTimeoutError, wait_until


@dataclass(frozen=True)
class Machine:
    """Snapshot of a compute instance in a network stack"""
    public_address: str
    private_address: str
    tags: FrozenSet[Tuple[str, str]] = frozenset()
    instance_id: str = ""

    def has_tag(self, key: str, value: str) -> bool:
        return (key, value) in self.tags


@dataclass(frozen=True)
class TopologySpec:
    """What the network stack should contain"""
    # Path to the CloudFormation template
    template: str
    node_names: Tuple[str, ...]
    name: str


# ==================== Network ====================

class ProvisionedNetwork(Resource):
    """A created network/compute stack"""

    @property
    @abstractmethod
    def expiry(self) -> datetime:
        ...

    @abstractmethod
    def list_machines(self) -> Set[Machine]:
        ...

    @abstractmethod
    def find_subnet(self, name: str) -> str:
        ...

    @abstractmethod
    def find_vpc(self, name: str) -> str:
        ...


class NetworkProvisioner(ABC):

    @abstractmethod
    def provision(
        self,
        investment: Investment,
        spec: TopologySpec,
        parameters: Dict[str, str],
    ) -> ProvisionedNetwork:
        """
        Create the stack and wait for it.

        Raises:
            ProvisioningError: if creation fails or polling times out
        """


class CloudProvider(ABC):
    """Region-level facts the orchestrator needs"""

    @property
    @abstractmethod
    def default_ami(self) -> str:
        ...

    @abstractmethod
    def availability_zones(self) -> List[str]:
        ...

    @property
    @abstractmethod
    def network_provisioner(self) -> NetworkProvisioner:
        ...


# ==================== Load balancer ====================

class LoadBalancer(ABC):
    """A provisioned entry point in front of the nodes"""

    health_poll_interval: float = 10.0

    @property
    @abstractmethod
    def uri(self) -> str:
        ...

    @abstractmethod
    def is_healthy(self) -> bool:
        """True once every registered target passes its health check"""

    def wait_until_healthy(self, timeout: float) -> None:
        """
        Raises:
            HealthGateTimeout: if targets are still unhealthy after ``timeout`` seconds
        """
        try:
            wait_until(
                self.is_healthy,
                timeout=timeout,
                interval=self.health_poll_interval,
                description=f"{self.uri} healthy",
            )
        except WaitUntilTimeoutError as e:
            raise HealthGateTimeout(str(e), timeout=timedelta(seconds=timeout)) from e
        logger.info(f"{self.uri} is healthy")


@dataclass
class ProvisionedLoadBalancer:
    load_balancer: LoadBalancer
    resource: Resource


class LoadBalancerFormula(ABC):

    @abstractmethod
    def provision(
        self,
        investment: Investment,
        instances: Sequence[Machine],
        subnet: str,
        vpc: str,
        key: SshKey,
    ) -> ProvisionedLoadBalancer:
        ...


# ==================== Storage ====================

class Storage(ABC):
    """Blob transport shared between the orchestrating host and the machines"""

    @property
    @abstractmethod
    def location(self) -> StorageLocation:
        ...

    @abstractmethod
    def upload(self, path: Path) -> None:
        """Upload a file or a directory tree under its own name"""

    @abstractmethod
    def download(self, target: Path) -> Path:
        """Download everything into ``target`` and return it"""


# ==================== Installers ====================

class Database(ABC):
    """Database formula run on the database machine"""

    @abstractmethod
    def setup(self, session: RemoteSession) -> str:
        """Install the database, returning the remote data location"""

    @abstractmethod
    def start(self, jira_uri: str, session: RemoteSession) -> None:
        ...


class ApplicationStorage(ABC):
    """Where the Jira distribution comes from"""

    @abstractmethod
    def download(self, session: RemoteSession, destination: str) -> str:
        """Download the archive, returning its remote file name"""


class JiraHomeSource(ABC):
    """Where the Jira home (dataset) comes from"""

    @abstractmethod
    def download(self, session: RemoteSession) -> str:
        """Download and unpack the home, returning its remote path"""


class JavaDevelopmentKit(ABC):

    @abstractmethod
    def install(self, session: RemoteSession) -> None:
        ...

    @property
    @abstractmethod
    def java_home(self) -> str:
        ...


class Computer(ABC):
    """Hardware profile of the Jira machines"""

    @property
    @abstractmethod
    def instance_type(self) -> str:
        ...

    @abstractmethod
    def set_up(self, session: RemoteSession) -> None:
        ...


# ==================== Simple implementations ====================

@dataclass
class HttpApplicationStorage(ApplicationStorage):
    """A Jira tarball downloadable over HTTP(S)"""
    uri: str

    def download(self, session: RemoteSession, destination: str) -> str:
        archive = f"{destination.rstrip('/')}/{self.uri.rsplit('/', 1)[-1]}"
        session.run(actions.download(self.uri, archive, timeout=5 * 60))
        return archive


@dataclass
class HttpJiraHomeSource(JiraHomeSource):
    """A zipped Jira home downloadable over HTTP(S)"""
    uri: str
    home_path: str = "/home/ubuntu/jirahome"

    def download(self, session: RemoteSession) -> str:
        archive = "jirahome.tar.bz2"
        session.run(actions.download(self.uri, archive, timeout=15 * 60))
        session.run(actions.make_dirs(self.home_path))
        session.run(actions.run("tar", "-xjf", archive, "-C", self.home_path, "--strip-components=1", timeout=10 * 60))
        return self.home_path


@dataclass
class OpenJdk(JavaDevelopmentKit):
    package: str = "openjdk-8-jdk-headless"

    def install(self, session: RemoteSession) -> None:
        session.run(actions.apt_install([self.package], timeout=5 * 60))

    @property
    def java_home(self) -> str:
        return "/usr/lib/jvm/java-8-openjdk-amd64"


@dataclass
class ElasticComputer(Computer):
    """EBS-backed machine, nothing to prepare"""
    instance_type: str = "c4.8xlarge"

    def set_up(self, session: RemoteSession) -> None:
        pass


@dataclass
class EphemeralComputer(Computer):
    """Machine with an NVMe instance store mounted over the home directory"""
    instance_type: str = "c5d.9xlarge"
    device: str = "/dev/nvme1n1"
    mount_point: str = "/home/ubuntu"

    def set_up(self, session: RemoteSession) -> None:
        backup = "/tmp/home-backup.tar"
        session.run(actions.run("tar", "-cf", backup, "-C", self.mount_point, ".", sudo=True))
        session.run(actions.run("mkfs.ext4", "-F", self.device, sudo=True, timeout=5 * 60))
        session.run(actions.run("mount", "-t", "ext4", self.device, self.mount_point, sudo=True))
        session.run(actions.run("chown", "ubuntu", self.mount_point, sudo=True))
        session.run(actions.run("tar", "-xf", backup, "-C", self.mount_point, sudo=True))
        session.run(actions.run("rm", backup, sudo=True))


@dataclass
class OsMetric:
    """A sampling tool started before load and collected afterwards"""
    tool: str
    args: Tuple[str, ...] = ()
    package: str = "sysstat"

    @property
    def output_file(self) -> str:
        return f"{self.tool}.log"

    def start(self, session: RemoteSession, results_dir: str) -> None:
        session.run(actions.background(self.tool, *self.args, output=f"{results_dir}/{self.output_file}"))

    def stop(self, session: RemoteSession) -> None:
        session.run(actions.run("pkill", "-f", self.tool, tolerate_failure=True))


@dataclass
class Ubuntu:
    """OS-level helpers for Ubuntu machines"""
    metrics_tools: List[OsMetric] = field(default_factory=lambda: [
        OsMetric("vmstat", ("-t", "2"), package="procps"),
        OsMetric("iostat", ("-d", "-t", "-x", "2")),
    ])

    def install(self, session: RemoteSession, packages: Sequence[str], timeout: int = 180) -> None:
        session.run(actions.apt_install(packages, timeout=timeout))

    def metrics(self, session: RemoteSession) -> List[OsMetric]:
        """Install the metric tools, returning them ready to start"""
        self.install(session, sorted({m.package for m in self.metrics_tools}))
        return list(self.metrics_tools)
