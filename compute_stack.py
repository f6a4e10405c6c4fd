from aws_cdk import (
    Stack, CfnOutput, Duration,
    aws_autoscaling as autoscaling,
    aws_ec2 as ec2,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_ssm as ssm
)
from constructs import Construct
import structlog

from network_stack import NetworkStack
from payloads import load_user_data_script
from settings import DeploymentSettings

logger = structlog.get_logger(__name__)


class ComputeStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, network: NetworkStack,
                 instance_role: iam.IRole, agent_config_parameter: ssm.IStringParameter,
                 settings: DeploymentSettings, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        user_data_script = load_user_data_script(settings.asset_dir)

        vpc = network.vpc
        web_sg = network.security_groups[settings.web_tier]
        elb_sg = network.security_groups[settings.load_balancer_tier]

        # Web servers
        self.launch_template = self._create_launch_template(
            settings, web_sg, instance_role, user_data_script
        )
        # The user data script reads the agent configuration from SSM on boot
        self.launch_template.node.add_dependency(agent_config_parameter)
        self.web_servers = self._create_web_asg(settings, vpc, self.launch_template)

        # Application Load Balancer
        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, settings.load_balancer_name,
            load_balancer_name=settings.load_balancer_name,
            vpc=vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_group_name=settings.load_balancer_tier),
            security_group=elb_sg,
            internet_facing=True
        )

        # Security group rules come from the network plan, so the listener is not auto-opened
        listener = self.load_balancer.add_listener(
            "Listener",
            port=80,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False
        )
        listener.add_targets(
            "WebServers",
            port=80,
            targets=[self.web_servers],
            health_check=elbv2.HealthCheck(
                path=settings.health_check_path,
                interval=Duration.minutes(settings.health_check_interval_minutes)
            )
        )

        # Outputs
        CfnOutput(self, "AlbDnsName", value=self.load_balancer.load_balancer_dns_name)
        CfnOutput(self, "WebServiceUrl", value=f"http://{self.load_balancer.load_balancer_dns_name}")
        CfnOutput(self, "WebServerGroupName", value=self.web_servers.auto_scaling_group_name)

        logger.info(
            "Compute stack declared",
            stack=self.stack_name,
            web_tier=settings.web_tier,
            load_balancer_tier=settings.load_balancer_tier,
            public_ip=settings.web_public_ip,
        )

    def _create_launch_template(self, settings: DeploymentSettings, security_group: ec2.ISecurityGroup,
                                role: iam.IRole, script: list[str]) -> ec2.LaunchTemplate:
        user_data = ec2.UserData.for_linux()
        user_data.add_commands(f"export CWA_CONFIG_PARAMETER={settings.cloudwatch_config_parameter}")
        user_data.add_commands(*script)

        key_pair = None
        if settings.ssh_key_name:
            key_pair = ec2.KeyPair.from_key_pair_name(self, "WebServerKeyPair", settings.ssh_key_name)

        return ec2.LaunchTemplate(
            self, settings.web_server_group_name + "Template",
            launch_template_name=settings.web_server_group_name,
            instance_type=ec2.InstanceType(settings.instance_type),
            machine_image=ec2.MachineImage.latest_amazon_linux2(),
            security_group=security_group,
            role=role,
            user_data=user_data,
            key_pair=key_pair,
            associate_public_ip_address=settings.web_public_ip
        )

    def _create_web_asg(self, settings: DeploymentSettings, vpc: ec2.IVpc,
                        launch_template: ec2.LaunchTemplate) -> autoscaling.AutoScalingGroup:
        group_name = settings.web_server_group_name + "Group"
        return autoscaling.AutoScalingGroup(
            self, group_name,
            auto_scaling_group_name=group_name,
            vpc=vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_group_name=settings.web_tier),
            launch_template=launch_template,
            min_capacity=settings.asg_min_capacity,
            desired_capacity=settings.asg_desired_capacity,
            max_capacity=settings.asg_max_capacity,
            update_policy=autoscaling.UpdatePolicy.rolling_update(
                min_instances_in_service=1,
                max_batch_size=2
            )
        )
