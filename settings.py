"""
Deployment settings, read from CDK context.

Every field can be set in cdk.json or with `cdk synth -c name=value`.
`network` and `flows` accept either mappings (cdk.json) or JSON strings
(command line).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from constructs import Node
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from errors import ConfigurationError
from plan_model import ExposureKind, NetworkSpec, SubnetTierSpec, TrafficFlow

DEFAULT_ASSET_DIR = Path(__file__).resolve().parent / "assets"

LOAD_BALANCER_TIER = "cdk_ec2_elb_pub"
WEB_TIER = "cdk_ec2_web_priv"


def default_network() -> NetworkSpec:
    return NetworkSpec(
        cidr="10.255.248.0/21",
        az_count=3,
        tiers=(
            SubnetTierSpec(name=LOAD_BALANCER_TIER, cidr_mask=28, exposure=ExposureKind.PUBLIC),
            SubnetTierSpec(name=WEB_TIER, cidr_mask=26, exposure=ExposureKind.ISOLATED),
        ),
    )


def default_flows() -> tuple[TrafficFlow, ...]:
    return (
        TrafficFlow(
            source="internet",
            destination=LOAD_BALANCER_TIER,
            ports=(80,),
            description="Allow HTTP requests from Internet.",
        ),
        TrafficFlow(
            source=LOAD_BALANCER_TIER,
            destination=WEB_TIER,
            ports=(80,),
            description="Forward HTTP requests to internal web servers.",
            ingress_description="Allow HTTP forwarding from load balancers.",
        ),
        TrafficFlow(
            source=WEB_TIER,
            destination="internet",
            ports=(443, 80),
            description="Allow requests to external web servers.",
        ),
        TrafficFlow(
            source="internet",
            destination=WEB_TIER,
            ports=(80, 22),
            description="Allow direct requests from Internet; OPTIONAL TEST",
            optional=True,
        ),
    )


class DeploymentSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_name: str = "CdkEc2Setup"
    account: str | None = None
    region: str | None = None

    network: NetworkSpec = Field(default_factory=default_network)
    flows: tuple[TrafficFlow, ...] = Field(default_factory=default_flows)
    load_balancer_tier: str = LOAD_BALANCER_TIER
    web_tier: str = WEB_TIER
    direct_access: bool = False

    # EC2
    instance_type: str = "t2.micro"
    # Instances reach the internet through the shared route table, not NAT
    web_public_ip: bool = True
    ssh_key_name: str | None = None
    web_server_group_name: str = "AutoScalingWebServers"
    asg_min_capacity: int = 1
    asg_desired_capacity: int = 1
    asg_max_capacity: int = 3

    # Load balancer
    load_balancer_name: str = "PublicWebLoadBalancer"
    health_check_path: str = "/index.html"
    health_check_interval_minutes: int = 2

    # Payloads; CloudWatch agent parameters must be named "AmazonCloudWatch-*"
    asset_dir: Path = DEFAULT_ASSET_DIR
    cloudwatch_config_parameter: str = "AmazonCloudWatch-cdk-ec2-demo-config"

    log_level: str = "INFO"

    @field_validator("network", "flows", mode="before")
    @classmethod
    def parse_json(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("cloudwatch_config_parameter")
    @classmethod
    def check_parameter_name(cls, value: str) -> str:
        if not value.startswith("AmazonCloudWatch-"):
            raise ValueError("CloudWatch agent parameters must start with 'AmazonCloudWatch-'")
        return value

    @model_validator(mode="after")
    def check_tiers(self) -> DeploymentSettings:
        tiers = {tier.name: tier for tier in self.network.tiers}
        for field in ("load_balancer_tier", "web_tier"):
            name = getattr(self, field)
            if name not in tiers:
                raise ValueError(f"{field} {name!r} is not a declared subnet tier")
        if self.load_balancer_tier == self.web_tier:
            raise ValueError("load_balancer_tier and web_tier must be different tiers")
        if tiers[self.load_balancer_tier].exposure is not ExposureKind.PUBLIC:
            raise ValueError("An internet-facing load balancer needs a public tier")
        if not self.asg_min_capacity <= self.asg_desired_capacity <= self.asg_max_capacity:
            raise ValueError("Capacities must satisfy min <= desired <= max")
        return self


def load_settings(node: Node) -> DeploymentSettings:
    """
    Build settings from the CDK context visible at `node`.

    Raises:
        ConfigurationError: When the context does not validate
    """
    data = {}
    for name in DeploymentSettings.model_fields:
        value = node.try_get_context(name)
        if value is not None:
            data[name] = value

    try:
        return DeploymentSettings.model_validate(data)
    except (ValidationError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid deployment settings: {e}") from e
