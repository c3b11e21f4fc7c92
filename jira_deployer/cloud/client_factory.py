"""
boto3 client construction.

Credentials and the default region come from the environment, optionally
seeded from a ``.env`` file.
"""

from dataclasses import dataclass
from typing import Optional

import boto3
from dotenv import load_dotenv
from mypy_boto3_cloudformation.client import CloudFormationClient
from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_elb.client import ElasticLoadBalancingClient
from mypy_boto3_s3.client import S3Client


@dataclass
class AwsClientFactory:
    region_id: str
    profile_name: Optional[str] = None

    @classmethod
    def new(cls, region_id: str, profile_name: Optional[str] = None) -> "AwsClientFactory":
        load_dotenv()
        return cls(region_id=region_id, profile_name=profile_name)

    def _session(self) -> boto3.Session:
        return boto3.Session(profile_name=self.profile_name, region_name=self.region_id)

    def ec2(self) -> EC2Client:
        return self._session().client("ec2")

    def cloudformation(self) -> CloudFormationClient:
        return self._session().client("cloudformation")

    def elb(self) -> ElasticLoadBalancingClient:
        return self._session().client("elb")

    def s3(self) -> S3Client:
        return self._session().client("s3")
