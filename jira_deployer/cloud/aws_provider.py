# pyright: reportTypedDictNotRequiredAccess=false
"""
AWS Implementations

CloudFormation network stacks, classic Elastic Load Balancers and S3
transports, built on boto3.
"""

import re
import time
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set

from botocore.exceptions import ClientError, WaiterError
from loguru import logger

from ..configs import Investment, SshKey
from ..errors import ProvisioningError
from ..resources import CallbackResource, Resource, spawn
from ..utils.aws_cli import StorageLocation
from ..utils.timing import WaitUntilTimeoutError, wait_until
from .base import (
    CloudProvider,
    LoadBalancer,
    LoadBalancerFormula,
    Machine,
    NetworkProvisioner,
    ProvisionedLoadBalancer,
    ProvisionedNetwork,
    Storage,
    TopologySpec,
)
from .client_factory import AwsClientFactory

# Canonical's account
UBUNTU_OWNER = "099720109477"
UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd/ubuntu-xenial-16.04-amd64-server-*"
STACK_NAME_TAG = "aws:cloudformation:stack-name"
# Classic ELB names: up to 32 alphanumerics and hyphens
MAX_LOAD_BALANCER_NAME = 32


@contextmanager
def translated(operation: str) -> Iterator[None]:
    """Re-raise boto3 client errors as provisioning errors"""
    try:
        yield
    except ClientError as exc:
        error = exc.response.get("Error", {})
        raise ProvisioningError(
            f"{operation} failed: {error.get('Code', 'Unknown')}: {error.get('Message', exc)}"
        ) from exc
    except WaiterError as exc:
        raise ProvisioningError(f"{operation} failed: {exc}") from exc


def _aws_tags(investment: Investment, now: Optional[datetime] = None) -> List[dict]:
    return [{"Key": k, "Value": v} for k, v in investment.tags(now).items()]


def load_balancer_name(nonce: str) -> str:
    """A classic ELB name unique to one orchestration"""
    name = re.sub(r"[^A-Za-z0-9-]+", "-", f"{nonce}-lb")
    return name[-MAX_LOAD_BALANCER_NAME:].strip("-")


def as_machine(instance) -> Machine:
    tags = frozenset((tag["Key"], tag["Value"]) for tag in instance.get("Tags", []))
    return Machine(
        public_address=instance.get("PublicIpAddress", ""),
        private_address=instance.get("PrivateIpAddress", ""),
        tags=tags,
        instance_id=instance["InstanceId"],
    )


# ==================== Network ====================

class CloudFormationStack(ProvisionedNetwork):
    """A created CloudFormation stack"""

    def __init__(
        self,
        name: str,
        clients: AwsClientFactory,
        expiry: datetime,
        delete_timeout: int = 20 * 60,
    ):
        super().__init__()
        self.name = name
        self.clients = clients
        self._expiry = expiry
        self.delete_timeout = delete_timeout

    @property
    def expiry(self) -> datetime:
        return self._expiry

    def list_machines(self) -> Set[Machine]:
        client = self.clients.ec2()
        machines = set()
        next_token = None
        while True:
            params = {
                "Filters": [
                    {"Name": f"tag:{STACK_NAME_TAG}", "Values": [self.name]},
                    {"Name": "instance-state-name", "Values": ["running"]},
                ],
            }
            if next_token:
                params["NextToken"] = next_token
            with translated(f"Listing machines of {self.name}"):
                response = client.describe_instances(**params)
            for reservation in response["Reservations"]:
                for instance in reservation["Instances"]:
                    machines.add(as_machine(instance))
            next_token = response.get("NextToken")
            if not next_token:
                break
        return machines

    def _physical_id(self, logical_id: str) -> str:
        with translated(f"Looking up {logical_id} in {self.name}"):
            response = self.clients.cloudformation().describe_stack_resource(
                StackName=self.name,
                LogicalResourceId=logical_id,
            )
        return response["StackResourceDetail"]["PhysicalResourceId"]

    def find_subnet(self, name: str) -> str:
        return self._physical_id(name)

    def find_vpc(self, name: str) -> str:
        return self._physical_id(name)

    def _delete(self) -> None:
        client = self.clients.cloudformation()
        with translated(f"Deleting stack {self.name}"):
            client.delete_stack(StackName=self.name)
            client.get_waiter("stack_delete_complete").wait(
                StackName=self.name,
                WaiterConfig={"Delay": 15, "MaxAttempts": max(1, self.delete_timeout // 15)},
            )

    def _start_release(self) -> Future:
        def do_release() -> None:
            logger.info(f"Deleting stack {self.name}...")
            self._delete()
            logger.info(f"Stack {self.name} deleted")

        return spawn(do_release, name=f"release-{self.name}")

    def __repr__(self) -> str:
        return f"CloudFormationStack({self.name!r})"


class CloudFormationNetworkProvisioner(NetworkProvisioner):
    """
    Args:
        clients: boto3 client factory for the target region
        polling_timeout: Seconds allowed for the stack to reach CREATE_COMPLETE
        poll_interval: Seconds between status checks
    """

    def __init__(self, clients: AwsClientFactory, polling_timeout: int = 30 * 60, poll_interval: float = 15.0):
        self.clients = clients
        self.polling_timeout = polling_timeout
        self.poll_interval = poll_interval

    def _stack_created(self, name: str) -> bool:
        with translated(f"Describing stack {name}"):
            stack = self.clients.cloudformation().describe_stacks(StackName=name)["Stacks"][0]
        status = stack["StackStatus"]
        if status == "CREATE_COMPLETE":
            return True
        if status == "CREATE_IN_PROGRESS":
            logger.debug(f"Stack {name} is {status}")
            return False
        raise ProvisioningError(
            f"Stack {name} failed with {status}: {stack.get('StackStatusReason', 'no reason given')}"
        )

    def provision(
        self,
        investment: Investment,
        spec: TopologySpec,
        parameters: Dict[str, str],
    ) -> ProvisionedNetwork:
        now = datetime.now().astimezone()
        template = Path(spec.template).read_text()
        with translated(f"Creating stack {spec.name}"):
            self.clients.cloudformation().create_stack(
                StackName=spec.name,
                TemplateBody=template,
                Parameters=[{"ParameterKey": k, "ParameterValue": v} for k, v in parameters.items()],
                Tags=_aws_tags(investment, now),
                Capabilities=["CAPABILITY_IAM"],
            )
        stack = CloudFormationStack(spec.name, self.clients, expiry=investment.expiry(now))
        logger.info(f"Creating stack {spec.name}...")
        try:
            wait_until(
                lambda: self._stack_created(spec.name),
                timeout=self.polling_timeout,
                interval=self.poll_interval,
                description=f"stack {spec.name} created",
            )
        except (ProvisioningError, WaitUntilTimeoutError) as e:
            # Nobody else holds the stack yet, so it is cleaned up here
            logger.error(f"Stack {spec.name} not created, deleting it: {e}")
            try:
                stack.release().result()
            except Exception as release_error:
                logger.error(f"Failed to delete stack {spec.name}: {release_error}")
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(str(e)) from e
        logger.success(f"Stack {spec.name} created")
        return stack


# ==================== Load balancer ====================

class ElasticLoadBalancer(LoadBalancer):

    def __init__(self, name: str, dns_name: str, clients: AwsClientFactory, instance_ids: Sequence[str]):
        self.name = name
        self.dns_name = dns_name
        self.clients = clients
        self.instance_ids = list(instance_ids)

    @property
    def uri(self) -> str:
        return f"http://{self.dns_name}/"

    def is_healthy(self) -> bool:
        with translated(f"Checking health of {self.name}"):
            response = self.clients.elb().describe_instance_health(
                LoadBalancerName=self.name,
                Instances=[{"InstanceId": i} for i in self.instance_ids],
            )
        states = [s["State"] for s in response["InstanceStates"]]
        logger.debug(f"{self.name} instance states: {states}")
        return bool(states) and all(s == "InService" for s in states)


class ElasticLoadBalancerFormula(LoadBalancerFormula):
    """Classic ELB forwarding port 80 to Jira's 8080, with sticky sessions"""

    def __init__(
        self,
        clients: AwsClientFactory,
        nonce: str,
        release_retry: int = 10,
        release_retry_delay: float = 15.0,
    ):
        self.clients = clients
        self.name = load_balancer_name(nonce)
        self.release_retry = release_retry
        self.release_retry_delay = release_retry_delay

    def _create_security_group(self, vpc: str) -> str:
        ec2 = self.clients.ec2()
        with translated(f"Creating security group {self.name}"):
            group_id = ec2.create_security_group(
                GroupName=self.name,
                Description="Jira load balancer",
                VpcId=vpc,
            )["GroupId"]
        try:
            with translated(f"Opening port 80 of security group {group_id}"):
                ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[{
                        "IpProtocol": "tcp",
                        "FromPort": 80,
                        "ToPort": 80,
                        "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                    }],
                )
        except ProvisioningError:
            self._discard(f"security group {group_id}", lambda: self._delete_security_group(group_id))
            raise
        return group_id

    def _delete_security_group(self, group_id: str) -> None:
        # The ELB's network interfaces linger for a while after it is deleted
        ec2 = self.clients.ec2()
        for attempt in range(self.release_retry + 1):
            try:
                ec2.delete_security_group(GroupId=group_id)
                return
            except ClientError as e:
                if attempt == self.release_retry:
                    raise ProvisioningError(f"Cannot delete security group {group_id}: {e}") from e
                logger.debug(f"Security group {group_id} still in use (attempt {attempt + 1}): {e}")
                time.sleep(self.release_retry_delay)

    @staticmethod
    def _discard(description: str, delete: Callable[[], None]) -> None:
        """Delete what a failed provision left behind; errors are only logged"""
        try:
            delete()
        except Exception as release_error:
            logger.error(f"Failed to delete {description}: {release_error}")

    def provision(
        self,
        investment: Investment,
        instances: Sequence[Machine],
        subnet: str,
        vpc: str,
        key: SshKey,
    ) -> ProvisionedLoadBalancer:
        name = self.name
        elb = self.clients.elb()
        group_id = self._create_security_group(vpc)
        instance_ids = [m.instance_id for m in instances]
        try:
            with translated(f"Creating load balancer {name}"):
                dns_name = elb.create_load_balancer(
                    LoadBalancerName=name,
                    Listeners=[{
                        "Protocol": "HTTP",
                        "LoadBalancerPort": 80,
                        "InstanceProtocol": "HTTP",
                        "InstancePort": 8080,
                    }],
                    Subnets=[subnet],
                    SecurityGroups=[group_id],
                    Tags=_aws_tags(investment),
                )["DNSName"]
        except ProvisioningError:
            self._discard(f"security group {group_id}", lambda: self._delete_security_group(group_id))
            raise

        def delete() -> None:
            with translated(f"Deleting load balancer {name}"):
                elb.delete_load_balancer(LoadBalancerName=name)
            self._delete_security_group(group_id)

        resource: Resource = CallbackResource(f"load balancer {name}", delete)
        try:
            with translated(f"Configuring load balancer {name}"):
                elb.configure_health_check(
                    LoadBalancerName=name,
                    HealthCheck={
                        "Target": "HTTP:8080/status",
                        "Interval": 10,
                        "Timeout": 5,
                        "UnhealthyThreshold": 2,
                        "HealthyThreshold": 2,
                    },
                )
                elb.create_lb_cookie_stickiness_policy(LoadBalancerName=name, PolicyName="sticky-sessions")
                elb.set_load_balancer_policies_of_listener(
                    LoadBalancerName=name,
                    LoadBalancerPort=80,
                    PolicyNames=["sticky-sessions"],
                )
                elb.register_instances_with_load_balancer(
                    LoadBalancerName=name,
                    Instances=[{"InstanceId": i} for i in instance_ids],
                )
        except ProvisioningError:
            self._discard(f"load balancer {name}", lambda: resource.release().result())
            raise
        logger.info(f"Load balancer {name} is at {dns_name}")
        return ProvisionedLoadBalancer(
            load_balancer=ElasticLoadBalancer(name, dns_name, self.clients, instance_ids),
            resource=resource,
        )


# ==================== Storage ====================

class S3Storage(Storage):
    """A prefix in an S3 bucket"""

    def __init__(self, clients: AwsClientFactory, bucket: str, prefix: str):
        self.clients = clients
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    @property
    def location(self) -> StorageLocation:
        return StorageLocation(uri=f"s3://{self.bucket}/{self.prefix}", region_name=self.clients.region_id)

    def upload(self, path: Path) -> None:
        s3 = self.clients.s3()
        path = Path(path)
        files = [path] if path.is_file() else sorted(p for p in path.rglob("*") if p.is_file())
        for file in files:
            relative = file.relative_to(path.parent).as_posix()
            key = f"{self.prefix}/{relative}"
            with translated(f"Uploading {file} to s3://{self.bucket}/{key}"):
                s3.upload_file(str(file), self.bucket, key)
        logger.debug(f"Uploaded {len(files)} files from {path} to {self.location.uri}")

    def download(self, target: Path) -> Path:
        s3 = self.clients.s3()
        target = Path(target)
        paginator = s3.get_paginator("list_objects_v2")
        with translated(f"Downloading {self.location.uri}"):
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}/"):
                for obj in page.get("Contents", []):
                    relative = obj["Key"][len(self.prefix) + 1:]
                    if not relative or relative.endswith("/"):
                        continue
                    local = target / relative
                    local.parent.mkdir(parents=True, exist_ok=True)
                    s3.download_file(self.bucket, obj["Key"], str(local))
        logger.info(f"Downloaded {self.location.uri} to {target}")
        return target


# ==================== Provider ====================

class AwsProvider(CloudProvider):

    def __init__(self, clients: AwsClientFactory, stack_creation_timeout: int = 30 * 60):
        self.clients = clients
        self._network_provisioner = CloudFormationNetworkProvisioner(clients, polling_timeout=stack_creation_timeout)
        self._default_ami: Optional[str] = None

    @classmethod
    def new(cls, region_id: str, stack_creation_timeout: int = 30 * 60) -> "AwsProvider":
        return cls(AwsClientFactory.new(region_id), stack_creation_timeout)

    @property
    def default_ami(self) -> str:
        if self._default_ami is None:
            with translated("Looking up the default AMI"):
                images = self.clients.ec2().describe_images(
                    Owners=[UBUNTU_OWNER],
                    Filters=[
                        {"Name": "name", "Values": [UBUNTU_IMAGE_NAME]},
                        {"Name": "state", "Values": ["available"]},
                    ],
                )["Images"]
            if not images:
                raise ProvisioningError(f"No {UBUNTU_IMAGE_NAME} image in {self.clients.region_id}")
            self._default_ami = max(images, key=lambda image: image["CreationDate"])["ImageId"]
        return self._default_ami

    def availability_zones(self) -> List[str]:
        with translated("Listing availability zones"):
            response = self.clients.ec2().describe_availability_zones(
                Filters=[{"Name": "state", "Values": ["available"]}],
            )
        return [zone["ZoneName"] for zone in response["AvailabilityZones"]]

    @property
    def network_provisioner(self) -> NetworkProvisioner:
        return self._network_provisioner

    def storage(self, bucket: str, prefix: str) -> S3Storage:
        return S3Storage(self.clients, bucket, prefix)

    def load_balancer_formula(self, nonce: str) -> ElasticLoadBalancerFormula:
        return ElasticLoadBalancerFormula(self.clients, nonce)
