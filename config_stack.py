from aws_cdk import Stack, CfnOutput, aws_iam as iam, aws_ssm as ssm
from constructs import Construct
import structlog

from payloads import load_cloudwatch_agent_config
from settings import DeploymentSettings

logger = structlog.get_logger(__name__)


class ConfigStack(Stack):
    def __init__(self, scope: Construct, construct_id: str,
                 settings: DeploymentSettings, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Fails before any resource is declared when the payload is missing
        agent_config = load_cloudwatch_agent_config(settings.asset_dir)

        # Instance role for the web servers
        self.instance_role = iam.Role(
            self, "cdk_ec2_role",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            description="Role for CDK EC2 demo instances.",
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("CloudWatchAgentServerPolicy"),
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore")
            ]
        )

        # CloudWatch agent configuration, fetched by the user data script on boot
        self.agent_config_parameter = ssm.StringParameter(
            self, settings.cloudwatch_config_parameter,
            parameter_name=settings.cloudwatch_config_parameter,
            simple_name=True,
            description="Trimmed configuration to report memory usage.",
            string_value=agent_config,
            tier=ssm.ParameterTier.STANDARD
        )
        self.agent_config_parameter.grant_read(self.instance_role)

        CfnOutput(
            self, "InstanceRoleArn",
            value=self.instance_role.role_arn,
            export_name=f"{self.stack_name}-InstanceRoleArn"
        )

        CfnOutput(
            self, "AgentConfigParameterName",
            value=self.agent_config_parameter.parameter_name,
            export_name=f"{self.stack_name}-AgentConfigParameterName"
        )

        logger.info(
            "Config stack declared",
            stack=self.stack_name,
            parameter=settings.cloudwatch_config_parameter,
        )
