"""
Configuration Loader

Handles loading and validating provisioning configurations from JSON files.
"""

import json
import os
from datetime import timedelta
from typing import Any, Dict, List

from .types import (
    ClusterMode,
    DatabaseDriver,
    Diagnostics,
    Investment,
    JvmArgs,
    LaunchTimeouts,
    NodeConfig,
    ProvisioningConfig,
    RemoteJmx,
)


class ConfigLoader:
    """Loads and validates configuration from files"""

    @staticmethod
    def load_from_file(config_path: str) -> ProvisioningConfig:
        """Load provisioning configuration from a JSON file"""
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            data = json.load(f)

        return ConfigLoader.from_dict(data)

    @staticmethod
    def _node_from_dict(node_data: Dict[str, Any]) -> NodeConfig:
        jvm_data = node_data.get("jvm_args", {})
        timeouts_data = node_data.get("launch_timeouts", {})
        diagnostics_data = node_data.get("diagnostics", {})
        jmx_data = diagnostics_data.get("remote_jmx", {})
        return NodeConfig(
            name=node_data["name"],
            jvm_args=JvmArgs(
                xms=jvm_data.get("xms", "2g"),
                xmx=jvm_data.get("xmx", "2g"),
                extra=tuple(jvm_data.get("extra", [])),
            ),
            launch_timeouts=LaunchTimeouts(
                offline_timeout=timeouts_data.get("offline_timeout", 8 * 60),
                init_timeout=timeouts_data.get("init_timeout", 4 * 60),
                status_poll_interval=timeouts_data.get("status_poll_interval", 10),
            ),
            diagnostics=Diagnostics(
                remote_jmx=RemoteJmx(
                    enabled=jmx_data.get("enabled", False),
                    port=jmx_data.get("port", 9000),
                ),
                collectd_configs=tuple(diagnostics_data.get("collectd_configs", [])),
            ),
        )

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> ProvisioningConfig:
        """Create ProvisioningConfig from a dictionary"""

        investment_data = data.get("investment", {})
        investment = Investment(
            use_case=investment_data.get("use_case", "Jira performance test"),
            lifespan=timedelta(minutes=investment_data.get("lifespan_minutes", 120)),
        )

        nodes: List[NodeConfig] = [ConfigLoader._node_from_dict(n) for n in data.get("nodes", [])]
        if not nodes:
            nodes = [NodeConfig(name="jira-node-1"), NodeConfig(name="jira-node-2")]

        nonce = data.get("nonce")

        config = ProvisioningConfig(
            region=data.get("region", "us-east-1"),
            nonce=nonce,
            investment=investment,
            mode=ClusterMode(data.get("mode", ClusterMode.DATA_CENTER.value)),
            nodes=nodes,
            template_path=data.get("template_path", "templates/2-nodes-dc.yaml"),
            instance_type=data.get("instance_type", "c5.9xlarge"),
            ephemeral_drive=data.get("ephemeral_drive", False),
            role_profile=data.get("role_profile", ""),
            ssh_user=data.get("ssh_user", "ubuntu"),
            key_name=data.get("key_name"),
            key_path=data.get("key_path"),
            connectivity_patience=data.get("connectivity_patience", 5),
            jira_archive_uri=data.get("jira_archive_uri", ""),
            jira_home_uri=data.get("jira_home_uri", ""),
            database_uri=data.get("database_uri", ""),
            database_driver=DatabaseDriver(data.get("database_driver", DatabaseDriver.MYSQL.value)),
            apps=list(data.get("apps", [])),
            collectd_jars=list(data.get("collectd_jars", [])),
            plugins_bucket=data.get("plugins_bucket", ""),
            results_bucket=data.get("results_bucket", ""),
            stack_creation_timeout=data.get("stack_creation_timeout", 30 * 60),
            health_gate_timeout=data.get("health_gate_timeout", 5 * 60),
            log_level=data.get("log_level", "INFO"),
        )
        config.validate()
        return config
