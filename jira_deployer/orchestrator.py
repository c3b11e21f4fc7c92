"""
Cluster Orchestrator

Brings up a Jira cluster from nothing:

1. The network stack is created while artifacts are prepared and uploaded.
2. Roles are resolved from the stack's machine tags.
3. The load balancer, shared home and database are provisioned concurrently.
4. Every node is provisioned concurrently, once the shared home and the
   artifacts are ready.
5. Nodes are started one by one, then the load balancer is health-gated.

On failure the caller receives an :class:`OrchestrationError` holding every
resource created so far and must release it.
"""

import random
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Collection, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .artifacts import ArtifactPreparer, PreparedArtifacts
from .cloud.base import (
    ApplicationStorage,
    CloudProvider,
    Computer,
    Database,
    ElasticComputer,
    JiraHomeSource,
    LoadBalancerFormula,
    ProvisionedLoadBalancer,
    ProvisionedNetwork,
    Storage,
    TopologySpec,
)
from .concurrency.stages import StageContext, StageFuture, StagePlan, StagePool, await_all
from .configs import ClusterMode, DatabaseDriver, Investment, JmxClient, NodeConfig, SshKey
from .errors import ConfigurationError, OrchestrationError
from .home.shared_home import SharedHome, SharedHomeFormula
from .node_management.formula import NodeFormula, RoleParameters
from .node_management.nodes import StartedNode, StoppedNode
from .resources import NoResource, Resource, compose
from .results import gather_results
from .topology import ClusterTopology, resolve_topology
from .utils.remote import RemoteExecutor, RemoteLocation, RemoteTarget
from .utils.timing import elapsed_since, timed

# Zones known to lack capacity for the instance types used
EXCLUDED_ZONES = frozenset({"eu-central-1c"})

PROVISION_STACK = "provision stack"
PREPARE_ARTIFACTS = "prepare artifacts"
RESOLVE_ROLES = "resolve roles"
PROVISION_LOAD_BALANCER = "provision load balancer"
SET_UP_SHARED_HOME = "set up shared home"
SET_UP_DATABASE = "set up database"
START_DATABASE = "start database"
START_NODES = "start nodes"
HEALTH_GATE = "health gate"


def provision_node_stage(name: str) -> str:
    return f"provision {name}"


class ClusterState(str, Enum):
    NETWORK_PENDING = "NetworkPending"
    ROLES_RESOLVED = "RolesResolved"
    SUBSYSTEMS_PROVISIONING = "SubsystemsProvisioning"
    NODES_PROVISIONED = "NodesProvisioned"
    NODES_STARTED = "NodesStarted"
    HEALTH_GATED = "HealthGated"
    LIVE = "Live"
    FAILED = "Failed"


@dataclass(frozen=True)
class Cluster:
    """A live Jira cluster"""
    nodes: Tuple[StartedNode, ...]
    jira_home: RemoteLocation
    database: RemoteLocation
    address: str
    jmx_clients: Tuple[JmxClient, ...] = ()

    def gather_results(self, results_transport: Storage, target: Path) -> Path:
        return gather_results(list(self.nodes), results_transport, target)

    def __str__(self) -> str:
        return f"Jira at {self.address} with nodes {[n.name for n in self.nodes]}"


@dataclass
class ProvisionedCluster:
    cluster: Cluster
    # Release this to tear the cluster down
    resource: Resource


def pick_availability_zone(provider: CloudProvider, exclude: Collection[str] = ()) -> str:
    zones = [z for z in provider.availability_zones() if z not in EXCLUDED_ZONES and z not in exclude]
    if not zones:
        raise ConfigurationError("No usable availability zone")
    return random.choice(zones)


def validate_configs(configs: Sequence[NodeConfig], mode: ClusterMode) -> None:
    if not configs:
        raise ConfigurationError("At least one node config is required")
    names = [c.name for c in configs]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Node names must be unique, got {names}")
    if mode == ClusterMode.STANDALONE and len(configs) != 1:
        raise ConfigurationError(f"Standalone mode takes exactly one node config, got {len(configs)}")


class _Run:
    """Mutable bookkeeping of one orchestration call, only touched by the driver thread"""

    def __init__(self, correlation_id: str):
        self.start = time.monotonic()
        self.state = ClusterState.NETWORK_PENDING
        self.stage = PROVISION_STACK
        self.log = logger.bind(stage="orchestrator", correlation_id=correlation_id)

    def transition(self, state: ClusterState) -> None:
        self.log.info(
            f"{self.state.value} -> {state.value} after {elapsed_since(self.start).total_seconds():.1f}s"
        )
        self.state = state


class ClusterOrchestrator:
    """
    Provisions Jira clusters.

    Args:
        executor: Opens sessions to the cluster's machines
        application: Source of the Jira distribution
        jira_home_source: Source of the Jira home dataset
        database: Database formula run on the database machine
        load_balancer_formula: Puts a load balancer in front of Data Center nodes
        template: CloudFormation template of the network stack
        nonce: Unique name prefix for the stack
        mode: Data Center (default) or standalone
        computer: Hardware profile of the Jira machines
        database_driver: JDBC driver installed on every node
        artifacts: Prepares apps and collectd artifacts for upload
        health_gate_timeout: Seconds the load balancer has to report every node healthy
        ssh_user: Login user on every machine
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        application: ApplicationStorage,
        jira_home_source: JiraHomeSource,
        database: Database,
        load_balancer_formula: Optional[LoadBalancerFormula],
        template: str,
        nonce: str,
        mode: ClusterMode = ClusterMode.DATA_CENTER,
        computer: Optional[Computer] = None,
        database_driver: DatabaseDriver = DatabaseDriver.MYSQL,
        artifacts: Optional[ArtifactPreparer] = None,
        health_gate_timeout: float = 5 * 60,
        ssh_user: str = "ubuntu",
    ):
        if mode == ClusterMode.DATA_CENTER and load_balancer_formula is None:
            raise ConfigurationError("Data Center mode needs a load balancer formula")
        self.executor = executor
        self.application = application
        self.jira_home_source = jira_home_source
        self.database = database
        self.load_balancer_formula = load_balancer_formula
        self.template = template
        self.nonce = nonce
        self.mode = mode
        self.computer = computer or ElasticComputer()
        self.database_driver = database_driver
        self.artifacts = artifacts or ArtifactPreparer(apps=[], collectd_jars=[])
        self.health_gate_timeout = health_gate_timeout
        self.ssh_user = ssh_user

    @property
    def data_center(self) -> bool:
        return self.mode == ClusterMode.DATA_CENTER

    # ==================== Plan ====================

    def plan(self, configs: Sequence[NodeConfig]) -> StagePlan:
        """The stages of one orchestration and what each one waits for"""
        plan = StagePlan()
        plan.declare(PROVISION_STACK)
        plan.declare(PREPARE_ARTIFACTS)
        plan.declare(RESOLVE_ROLES, [PROVISION_STACK])
        plan.declare(SET_UP_DATABASE, [RESOLVE_ROLES])
        node_inputs = [RESOLVE_ROLES, PREPARE_ARTIFACTS]
        if self.data_center:
            plan.declare(PROVISION_LOAD_BALANCER, [PROVISION_STACK, RESOLVE_ROLES])
            plan.declare(SET_UP_SHARED_HOME, [RESOLVE_ROLES, PREPARE_ARTIFACTS])
            plan.declare(START_DATABASE, [RESOLVE_ROLES, SET_UP_DATABASE, PROVISION_LOAD_BALANCER])
            node_inputs.append(SET_UP_SHARED_HOME)
        else:
            plan.declare(START_DATABASE, [RESOLVE_ROLES, SET_UP_DATABASE])
        for config in configs:
            plan.declare(provision_node_stage(config.name), node_inputs)
        return plan

    # ==================== Stages ====================

    def _provision_stack(
        self,
        context: StageContext,
        configs: Sequence[NodeConfig],
        investment: Investment,
        key_future: "Future[SshKey]",
        role_profile: str,
        provider: CloudProvider,
    ) -> ProvisionedNetwork:
        parameters = {
            "KeyName": key_future.result().remote_name,
            "InstanceProfile": role_profile,
            "Ami": provider.default_ami,
            "JiraInstanceType": self.computer.instance_type,
        }
        if self.data_center:
            parameters["AvailabilityZone"] = pick_availability_zone(provider)
        else:
            # The standalone template spreads its subnets over two zones
            zone1 = pick_availability_zone(provider)
            parameters["AvailabilityZone1"] = zone1
            parameters["AvailabilityZone2"] = pick_availability_zone(provider, exclude={zone1})
        spec = TopologySpec(
            template=self.template,
            node_names=tuple(c.name for c in configs),
            name=f"{self.nonce}-jira",
        )
        with timed(PROVISION_STACK, log=context.logger):
            network = provider.network_provisioner.provision(investment, spec, parameters)
        context.logger.info(f"Stack {spec.name} will expire {network.expiry}")
        return network

    def _prepare_artifacts(
        self,
        context: StageContext,
        configs: Sequence[NodeConfig],
        plugins_transport: Storage,
    ) -> PreparedArtifacts:
        with timed(PREPARE_ARTIFACTS, log=context.logger):
            return self.artifacts.prepare(configs, plugins_transport)

    def _resolve_roles(self, context: StageContext, node_count: int) -> ClusterTopology:
        network: ProvisionedNetwork = context.inputs[PROVISION_STACK]
        topology = resolve_topology(
            network.list_machines(),
            node_count=node_count,
            require_shared_home=self.data_center,
        )
        context.logger.info(
            f"Nodes at {[m.private_address for m in topology.nodes]}, database at {topology.database.private_address}"
        )
        return topology

    def _provision_load_balancer(
        self,
        context: StageContext,
        investment: Investment,
        key_future: "Future[SshKey]",
    ) -> ProvisionedLoadBalancer:
        network: ProvisionedNetwork = context.inputs[PROVISION_STACK]
        topology: ClusterTopology = context.inputs[RESOLVE_ROLES]
        with timed(PROVISION_LOAD_BALANCER, log=context.logger):
            return self.load_balancer_formula.provision(
                investment=investment,
                instances=topology.nodes,
                subnet=network.find_subnet("Subnet"),
                vpc=network.find_vpc("VPC"),
                key=key_future.result(),
            )

    def _set_up_shared_home(
        self,
        context: StageContext,
        plugins_transport: Storage,
        key_future: "Future[SshKey]",
    ) -> SharedHome:
        topology: ClusterTopology = context.inputs[RESOLVE_ROLES]
        machine = topology.shared_home
        target = RemoteTarget(machine.public_address, self.ssh_user, key_future.result().file)
        formula = SharedHomeFormula(self.executor, self.jira_home_source, plugins_transport)
        with timed(SET_UP_SHARED_HOME, log=context.logger):
            return formula.provision(target, machine.private_address)

    def _database_target(self, topology: ClusterTopology, key_future: "Future[SshKey]") -> RemoteTarget:
        return RemoteTarget(topology.database.public_address, self.ssh_user, key_future.result().file)

    def _set_up_database(self, context: StageContext, key_future: "Future[SshKey]") -> RemoteLocation:
        target = self._database_target(context.inputs[RESOLVE_ROLES], key_future)
        with timed(SET_UP_DATABASE, log=context.logger):
            with self.executor.connect(target) as session:
                data_location = self.database.setup(session)
        return RemoteLocation(host=target, path=data_location)

    def _jira_address(self, context: StageContext) -> str:
        if self.data_center:
            provisioned: ProvisionedLoadBalancer = context.inputs[PROVISION_LOAD_BALANCER]
            return provisioned.load_balancer.uri
        topology: ClusterTopology = context.inputs[RESOLVE_ROLES]
        return f"http://{topology.nodes[0].public_address}:8080/"

    def _start_database(self, context: StageContext, key_future: "Future[SshKey]") -> None:
        target = self._database_target(context.inputs[RESOLVE_ROLES], key_future)
        address = self._jira_address(context)
        with timed(START_DATABASE, log=context.logger):
            with self.executor.connect(target) as session:
                self.database.start(address, session)

    def _provision_node(
        self,
        context: StageContext,
        index: int,
        config: NodeConfig,
        plugins_transport: Storage,
        results_transport: Storage,
        key_future: "Future[SshKey]",
    ) -> StoppedNode:
        topology: ClusterTopology = context.inputs[RESOLVE_ROLES]
        machine = topology.nodes[index]
        if self.data_center:
            role = RoleParameters.data_center(context.inputs[SET_UP_SHARED_HOME])
        else:
            role = RoleParameters.standalone()
        formula = NodeFormula(
            executor=self.executor,
            application=self.application,
            jira_home_source=self.jira_home_source,
            plugins_transport=plugins_transport,
            results_transport=results_transport,
            database_ip=topology.database.private_address,
            database_driver=self.database_driver,
            computer=self.computer,
            ssh_user=self.ssh_user,
            key_path=key_future.result().file,
        )
        with timed(context.stage, log=context.logger):
            return formula.provision(machine, config, role)

    # ==================== Driver ====================

    def _partial_resource(self, futures: Dict[str, StageFuture]) -> Resource:
        """Everything created so far: the load balancer depends on the stack"""
        def created(stage: str) -> Any:
            future = futures.get(stage)
            if future is None:
                return None
            wait([future._future])
            if future.cancelled() or future.exception() is not None:
                return None
            return future.get()

        network = created(PROVISION_STACK)
        if network is None:
            return NoResource()
        load_balancer = created(PROVISION_LOAD_BALANCER)
        if load_balancer is None:
            return network
        return compose(load_balancer.resource, network)

    def _failed_stage(self, futures: Dict[str, StageFuture], run: _Run) -> str:
        failed = [f for f in futures.values() if f.failed_at is not None]
        if not failed:
            return run.stage
        return min(failed, key=lambda f: f.failed_at).stage

    def orchestrate(
        self,
        configs: Sequence[NodeConfig],
        investment: Investment,
        plugins_transport: Storage,
        results_transport: Storage,
        key_future: "Future[SshKey]",
        role_profile: str,
        provider: CloudProvider,
    ) -> ProvisionedCluster:
        """
        Provision, start and health-gate a cluster.

        Args:
            configs: One per node, in the order nodes are reported back
            investment: Tags and lifespan of everything created
            plugins_transport: Where apps and collectd artifacts are staged
            results_transport: Where nodes upload results later on
            key_future: The SSH key pair, possibly still being created
            role_profile: IAM instance profile of the machines
            provider: Cloud provider hosting the cluster

        Returns:
            The live cluster and the resource to release when done

        Raises:
            ConfigurationError: if the configs are invalid, before anything is created
            OrchestrationError: on any later failure; ``resource`` must be released
        """
        validate_configs(configs, self.mode)
        configs = list(configs)
        plan = self.plan(configs)
        run = _Run(correlation_id=self.nonce)
        run.log.info(f"Setting up {self.mode.value} Jira with nodes {[c.name for c in configs]}...")
        futures: Dict[str, StageFuture] = {}
        pool = StagePool("provisioning", plan=plan, correlation_id=self.nonce)
        try:
            futures[PROVISION_STACK] = pool.submit(
                PROVISION_STACK, self._provision_stack, configs, investment, key_future, role_profile, provider,
            )
            futures[PREPARE_ARTIFACTS] = pool.submit(
                PREPARE_ARTIFACTS, self._prepare_artifacts, configs, plugins_transport,
            )
            futures[RESOLVE_ROLES] = pool.submit(RESOLVE_ROLES, self._resolve_roles, len(configs))

            run.stage = RESOLVE_ROLES
            topology: ClusterTopology = futures[RESOLVE_ROLES].get()
            run.transition(ClusterState.ROLES_RESOLVED)

            if self.data_center:
                futures[PROVISION_LOAD_BALANCER] = pool.submit(
                    PROVISION_LOAD_BALANCER, self._provision_load_balancer, investment, key_future,
                )
                futures[SET_UP_SHARED_HOME] = pool.submit(
                    SET_UP_SHARED_HOME, self._set_up_shared_home, plugins_transport, key_future,
                )
            futures[SET_UP_DATABASE] = pool.submit(SET_UP_DATABASE, self._set_up_database, key_future)
            futures[START_DATABASE] = pool.submit(START_DATABASE, self._start_database, key_future)
            run.transition(ClusterState.SUBSYSTEMS_PROVISIONING)

            node_futures: List[StageFuture[StoppedNode]] = []
            for index, config in enumerate(configs):
                stage = provision_node_stage(config.name)
                futures[stage] = pool.submit(
                    stage, self._provision_node, index, config, plugins_transport, results_transport, key_future,
                )
                node_futures.append(futures[stage])
            run.stage = "provision nodes"
            stopped_nodes = await_all(node_futures)
            run.transition(ClusterState.NODES_PROVISIONED)

            run.stage = START_DATABASE
            futures[START_DATABASE].get()
            database: RemoteLocation = futures[SET_UP_DATABASE].get()

            run.stage = START_NODES
            started_nodes = []
            for node in stopped_nodes:
                with timed(f"start {node.name}", log=run.log):
                    started_nodes.append(node.start())
            run.transition(ClusterState.NODES_STARTED)

            if self.data_center:
                provisioned_lb: ProvisionedLoadBalancer = futures[PROVISION_LOAD_BALANCER].get()
                run.stage = HEALTH_GATE
                with timed(HEALTH_GATE, log=run.log):
                    provisioned_lb.load_balancer.wait_until_healthy(self.health_gate_timeout)
                address = provisioned_lb.load_balancer.uri
                shared_home: SharedHome = futures[SET_UP_SHARED_HOME].get()
                jira_home = shared_home.location
            else:
                address = f"http://{topology.nodes[0].public_address}:8080/"
                jira_home = RemoteLocation(host=started_nodes[0].target, path=started_nodes[0].jira_home)
            run.transition(ClusterState.HEALTH_GATED)

            jmx_clients = tuple(
                client
                for config, machine in topology.bind(configs)
                for client in [config.diagnostics.jmx_client(machine.public_address)]
                if client is not None
            )
            cluster = Cluster(
                nodes=tuple(started_nodes),
                jira_home=jira_home,
                database=database,
                address=address,
                jmx_clients=jmx_clients,
            )
            resource = self._partial_resource(futures)
            run.transition(ClusterState.LIVE)
            network: ProvisionedNetwork = futures[PROVISION_STACK].get()
            run.log.info(f"{cluster} is set up, will expire {network.expiry}")
            return ProvisionedCluster(cluster=cluster, resource=resource)
        except Exception as e:
            stage = self._failed_stage(futures, run)
            state = run.state
            run.transition(ClusterState.FAILED)
            run.log.error(f"Orchestration failed in {state.value} at '{stage}': {e}")
            pool.shutdown_now()
            resource = self._partial_resource(futures)
            raise OrchestrationError.wrap(
                e,
                stage=stage,
                elapsed=elapsed_since(run.start),
                state=state,
                resource=resource,
            ) from e
        finally:
            pool.shutdown_now()
