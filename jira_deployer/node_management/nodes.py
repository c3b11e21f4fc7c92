"""
Jira Node Lifecycle

A :class:`StoppedNode` has Jira installed and configured. ``start()`` turns it
into a :class:`StartedNode`, which can hand over its results and be stopped.
Neither keeps a connection open; each operation opens its own session.
"""

import json
from dataclasses import dataclass, field
from typing import Callable, List

from loguru import logger

from ..cloud.base import OsMetric, Storage
from ..configs import LaunchTimeouts
from ..errors import ProvisioningError
from ..utils import actions
from ..utils.aws_cli import AwsCli
from ..utils.remote import RemoteExecutor, RemoteSession, RemoteTarget
from ..utils.timing import WaitUntilTimeoutError, timed, wait_until

RESULTS_DIR = "/tmp/jpt-results"
STATUS_URL = "http://localhost:8080/status"


def read_status(session: RemoteSession) -> str:
    """The state Jira reports at ``/status``, or ``OFFLINE`` if it does not answer"""
    result = session.safe_execute(f"curl --silent --max-time 5 {STATUS_URL}", timeout=30)
    if not result.success:
        return "OFFLINE"
    try:
        return str(json.loads(result.stdout).get("state", "UNKNOWN"))
    except (ValueError, AttributeError):
        return "UNKNOWN"


def wait_for_status(
    session: RemoteSession,
    accept: Callable[[str], bool],
    timeout: float,
    interval: float,
    description: str,
) -> None:
    """
    Raises:
        ProvisioningError: if Jira does not get there within ``timeout`` seconds
    """
    last = ["OFFLINE"]

    def check() -> bool:
        last[0] = read_status(session)
        return accept(last[0])

    try:
        wait_until(check, timeout=timeout, interval=interval, description=description)
    except WaitUntilTimeoutError as e:
        raise ProvisioningError(f"{e}, last status: {last[0]}") from e


@dataclass
class StartedNode:
    name: str
    target: RemoteTarget
    jira_home: str
    unpacked_product: str
    os_metrics: List[OsMetric]
    results_transport: Storage
    executor: RemoteExecutor = field(repr=False)
    aws_cli: AwsCli = field(default_factory=AwsCli, repr=False)

    def gather_results(self) -> None:
        """Stop metric collectors and upload logs, GC logs and metrics under the node name"""
        with self.executor.connect(self.target) as session:
            for metric in self.os_metrics:
                metric.stop(session)
            session.run(actions.make_dirs(RESULTS_DIR))
            session.run(actions.run("cp", "-r", f"{self.jira_home}/log", f"{RESULTS_DIR}/jira-home-log", tolerate_failure=True))
            session.run(actions.run("cp", "-r", f"{self.unpacked_product}/logs", f"{RESULTS_DIR}/product-logs", tolerate_failure=True))
            self.aws_cli.upload(
                self.results_transport.location.resolve(self.name),
                session,
                RESULTS_DIR,
                timeout=5 * 60,
            )
        logger.info(f"Results of {self.name} uploaded")

    def stop(self) -> None:
        with self.executor.connect(self.target) as session:
            session.run(actions.run(f"./{self.unpacked_product}/bin/stop-jira.sh", timeout=3 * 60))
        logger.info(f"{self.name} stopped")

    def __str__(self) -> str:
        return f"{self.name} ({self.target})"


@dataclass
class StoppedNode:
    name: str
    target: RemoteTarget
    jira_home: str
    unpacked_product: str
    os_metrics: List[OsMetric]
    launch_timeouts: LaunchTimeouts
    results_transport: Storage
    executor: RemoteExecutor = field(repr=False)

    def start(self) -> StartedNode:
        """
        Start Jira and wait until it reports RUNNING.

        Raises:
            ProvisioningError: if Jira does not come up within the launch timeouts
        """
        logger.info(f"Starting {self.name}...")
        with self.executor.connect(self.target) as session:
            session.run(actions.make_dirs(RESULTS_DIR))
            for metric in self.os_metrics:
                metric.start(session, RESULTS_DIR)
            session.run(actions.run(f"./{self.unpacked_product}/bin/start-jira.sh", timeout=60))
            timeouts = self.launch_timeouts
            with timed(f"{self.name} boot"):
                wait_for_status(
                    session,
                    lambda state: state != "OFFLINE",
                    timeout=timeouts.offline_timeout,
                    interval=timeouts.status_poll_interval,
                    description=f"{self.name} answering",
                )
                wait_for_status(
                    session,
                    lambda state: state == "RUNNING",
                    timeout=timeouts.init_timeout,
                    interval=timeouts.status_poll_interval,
                    description=f"{self.name} RUNNING",
                )
        return StartedNode(
            name=self.name,
            target=self.target,
            jira_home=self.jira_home,
            unpacked_product=self.unpacked_product,
            os_metrics=self.os_metrics,
            results_transport=self.results_transport,
            executor=self.executor,
        )

    def __str__(self) -> str:
        return f"{self.name} ({self.target})"
