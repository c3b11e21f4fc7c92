"""
Configuration Type Definitions

All configuration classes with full Python type annotations.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import ConfigurationError


def generate_nonce() -> str:
    return f"jpt-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


class ClusterMode(str, Enum):
    """Shape of the cluster"""
    STANDALONE = "standalone"
    DATA_CENTER = "data_center"


class DatabaseDriver(str, Enum):
    """JDBC driver installed into every node"""
    MYSQL = "mysql"
    # Managed relational cloud database (RDS/Aurora MySQL)
    MANAGED = "managed"


@dataclass(frozen=True)
class Investment:
    """Why and for how long provisioned resources may exist"""
    use_case: str
    lifespan: timedelta

    def expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + self.lifespan

    def tags(self, now: Optional[datetime] = None) -> Dict[str, str]:
        return {
            "use-case": self.use_case,
            "lifespan": str(int(self.lifespan.total_seconds())),
            "expiry": self.expiry(now).isoformat(),
        }


@dataclass(frozen=True)
class JvmArgs:
    """Heap sizing and extra JVM flags"""
    xms: str = "2g"
    xmx: str = "2g"
    extra: Tuple[str, ...] = ()

    def flags(self) -> List[str]:
        return [f"-Xms{self.xms}", f"-Xmx{self.xmx}", *self.extra]


@dataclass(frozen=True)
class LaunchTimeouts:
    """Bounds on how long a node may take to come up"""
    # Time allowed for the HTTP port to start answering
    offline_timeout: int = 8 * 60
    # Time allowed to reach RUNNING once answering
    init_timeout: int = 4 * 60
    status_poll_interval: int = 10


@dataclass(frozen=True)
class RemoteJmx:
    enabled: bool = False
    port: int = 9000


@dataclass(frozen=True)
class JmxClient:
    """How to reach a node's JMX endpoint from the orchestrating host"""
    address: str
    port: int

    @property
    def service_url(self) -> str:
        return f"service:jmx:rmi:///jndi/rmi://{self.address}:{self.port}/jmxrmi"


@dataclass(frozen=True)
class Diagnostics:
    """Diagnostic agents attached to a node"""
    remote_jmx: RemoteJmx = field(default_factory=RemoteJmx)
    # URIs of collectd configs, fetched before provisioning; best-effort
    collectd_configs: Tuple[str, ...] = ()

    def jmx_client(self, address: str) -> Optional[JmxClient]:
        if not self.remote_jmx.enabled:
            return None
        return JmxClient(address=address, port=self.remote_jmx.port)

    def jvm_flags(self, address: str) -> List[str]:
        if not self.remote_jmx.enabled:
            return []
        port = self.remote_jmx.port
        return [
            "-Dcom.sun.management.jmxremote",
            f"-Dcom.sun.management.jmxremote.port={port}",
            f"-Dcom.sun.management.jmxremote.rmi.port={port}",
            "-Dcom.sun.management.jmxremote.authenticate=false",
            "-Dcom.sun.management.jmxremote.ssl=false",
            f"-Djava.rmi.server.hostname={address}",
        ]


@dataclass(frozen=True)
class NodeConfig:
    """Identity and tuning of a single Jira node"""
    # Unique within a cluster
    name: str = "jira-node"
    jvm_args: JvmArgs = field(default_factory=JvmArgs)
    launch_timeouts: LaunchTimeouts = field(default_factory=LaunchTimeouts)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)


@dataclass(frozen=True)
class SshKey:
    """A key pair registered with the cloud provider"""
    # Name of the key pair on the provider side
    remote_name: str
    # Local path to the private key
    file: str


@dataclass
class ProvisioningConfig:
    """Main provisioning configuration"""
    region: str = "us-east-1"
    # Prefix used to name the stack and transports
    nonce: Optional[str] = None
    investment: Investment = field(
        default_factory=lambda: Investment(use_case="Jira performance test", lifespan=timedelta(hours=2))
    )
    mode: ClusterMode = ClusterMode.DATA_CENTER
    nodes: List[NodeConfig] = field(default_factory=lambda: [
        NodeConfig(name="jira-node-1"),
        NodeConfig(name="jira-node-2"),
    ])
    # CloudFormation template for the network stack
    template_path: str = "templates/2-nodes-dc.yaml"
    instance_type: str = "c5.9xlarge"
    ephemeral_drive: bool = False
    role_profile: str = ""
    ssh_user: str = "ubuntu"
    key_name: Optional[str] = None
    key_path: Optional[str] = None
    connectivity_patience: int = 5
    # Application archive and Jira home dataset
    jira_archive_uri: str = ""
    jira_home_uri: str = ""
    # MySQL data directory snapshot
    database_uri: str = ""
    database_driver: DatabaseDriver = DatabaseDriver.MYSQL
    # Local plugin (app) files installed into every node
    apps: List[str] = field(default_factory=list)
    # Local collectd plugin jars shipped to every node
    collectd_jars: List[str] = field(default_factory=list)
    plugins_bucket: str = ""
    results_bucket: str = ""
    stack_creation_timeout: int = 30 * 60
    health_gate_timeout: int = 5 * 60
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.nonce:
            self.nonce = generate_nonce()

    def validate(self) -> None:
        if not self.nodes:
            raise ConfigurationError("At least one node config is required")
        names = [n.name for n in self.nodes]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Node names must be unique, got {names}")
        if self.mode == ClusterMode.STANDALONE and len(self.nodes) != 1:
            raise ConfigurationError(
                f"Standalone mode takes exactly one node config, got {len(self.nodes)}"
            )
        for required in ("jira_archive_uri", "jira_home_uri", "database_uri", "plugins_bucket", "results_bucket"):
            if not getattr(self, required):
                raise ConfigurationError(f"Missing required parameter: {required}")
