import aws_cdk as cdk
import pytest

from compute_stack import ComputeStack
from config_stack import ConfigStack
from network_stack import NetworkStack
from plan_model import ExposureKind, NetworkSpec, SubnetTierSpec, TrafficFlow
from settings import DeploymentSettings

TEST_ENV = cdk.Environment(account="123456789012", region="us-east-1")


@pytest.fixture
def scenario_spec() -> NetworkSpec:
    """10.255.248.0/21 over 3 AZs with a public /28 tier and an isolated /26 tier."""
    return NetworkSpec(
        cidr="10.255.248.0/21",
        az_count=3,
        tiers=(
            SubnetTierSpec(name="pub", cidr_mask=28, exposure=ExposureKind.PUBLIC),
            SubnetTierSpec(name="priv", cidr_mask=26, exposure=ExposureKind.ISOLATED),
        ),
    )


@pytest.fixture
def web_flows() -> tuple[TrafficFlow, ...]:
    return (
        TrafficFlow(source="internet", destination="pub", ports=(80,), description="Allow HTTP from Internet."),
        TrafficFlow(source="pub", destination="priv", ports=(80,), description="Forward HTTP to web servers."),
        TrafficFlow(source="priv", destination="internet", ports=(443, 80), description="Allow outbound updates."),
        TrafficFlow(
            source="internet",
            destination="priv",
            ports=(80, 22),
            description="Allow direct access; OPTIONAL TEST",
            optional=True,
        ),
    )


def build_stacks(settings: DeploymentSettings) -> tuple[NetworkStack, ConfigStack, ComputeStack]:
    app = cdk.App()
    network = NetworkStack(app, "TestNetworkStack", settings=settings, env=TEST_ENV)
    config = ConfigStack(app, "TestConfigStack", settings=settings, env=TEST_ENV)
    compute = ComputeStack(
        app, "TestComputeStack",
        network=network,
        instance_role=config.instance_role,
        agent_config_parameter=config.agent_config_parameter,
        settings=settings,
        env=TEST_ENV,
    )
    compute.add_dependency(network)
    compute.add_dependency(config)
    return network, config, compute
