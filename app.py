#!/usr/bin/env python3
import os

import aws_cdk as cdk

from compute_stack import ComputeStack
from config_stack import ConfigStack
from log_config import configure_logging
from network_stack import NetworkStack
from settings import load_settings

app = cdk.App()

# Get configuration from context
settings = load_settings(app.node)
configure_logging(settings.app_name, settings.log_level)

env = cdk.Environment(
    account=settings.account or os.environ.get("CDK_DEFAULT_ACCOUNT"),
    region=settings.region or os.environ.get("CDK_DEFAULT_REGION")
)

# Deploy stacks in dependency order
network_stack = NetworkStack(app, f"{settings.app_name}NetworkStack", settings=settings, env=env)
config_stack = ConfigStack(app, f"{settings.app_name}ConfigStack", settings=settings, env=env)
compute_stack = ComputeStack(
    app, f"{settings.app_name}ComputeStack",
    network=network_stack,
    instance_role=config_stack.instance_role,
    agent_config_parameter=config_stack.agent_config_parameter,
    settings=settings,
    env=env
)

# Stack dependencies
compute_stack.add_dependency(network_stack)
compute_stack.add_dependency(config_stack)

app.synth()
