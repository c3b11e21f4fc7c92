"""
AWS CLI on remote machines

Moves data between a machine and S3 without routing it through the
orchestrating host.
"""

from dataclasses import dataclass

from . import actions
from .remote import RemoteSession


AWS_CLI_BUNDLE_URL = "https://s3.amazonaws.com/aws-cli/awscli-bundle-1.15.51.zip"


@dataclass(frozen=True)
class StorageLocation:
    """An S3 prefix in a region"""
    uri: str
    region_name: str

    def resolve(self, name: str) -> "StorageLocation":
        return StorageLocation(uri=f"{self.uri.rstrip('/')}/{name}", region_name=self.region_name)


class AwsCli:

    def ensure_aws_cli(self, session: RemoteSession) -> None:
        session.run(actions.apt_install(["zip", "python3"], timeout=180))
        if session.safe_execute("aws --version").success:
            return
        session.run(actions.download(AWS_CLI_BUNDLE_URL, "awscli-bundle.zip", timeout=50))
        session.run(actions.run("unzip", "-n", "-q", "awscli-bundle.zip"))
        session.run(actions.run(
            "./awscli-bundle/install", "-i", "/usr/local/aws", "-b", "/usr/local/bin/aws",
            sudo=True,
        ))

    def download(
        self,
        location: StorageLocation,
        session: RemoteSession,
        target: str,
        timeout: int = 30,
    ) -> None:
        self.ensure_aws_cli(session)
        session.run(actions.run(
            "aws", "s3", "sync", "--only-show-errors",
            f"--region={location.region_name}", location.uri, target,
            timeout=timeout,
        ))

    def upload(
        self,
        location: StorageLocation,
        session: RemoteSession,
        source: str,
        timeout: int = 120,
    ) -> None:
        self.ensure_aws_cli(session)
        session.run(actions.run(
            "aws", "s3", "sync", "--only-show-errors",
            f"--region={location.region_name}", source, location.uri,
            timeout=timeout,
        ))
