from aws_cdk import CfnOutput, Stack, Tags, aws_ec2 as ec2
from constructs import Construct
import structlog

from errors import ConfigurationError
from network_plan import plan_network
from plan_model import (
    Direction,
    ExposureKind,
    NetworkAclPlan,
    Peer,
    PeerKind,
    PortRange,
    RuleAction,
)
from settings import DeploymentSettings

logger = structlog.get_logger(__name__)

VPC_ID = "cdk_ec2_vpc"

SUBNET_TYPES = {
    ExposureKind.PUBLIC: ec2.SubnetType.PUBLIC,
    ExposureKind.ISOLATED: ec2.SubnetType.PRIVATE_ISOLATED,
}
TRAFFIC_DIRECTIONS = {
    Direction.INGRESS: ec2.TrafficDirection.INGRESS,
    Direction.EGRESS: ec2.TrafficDirection.EGRESS,
}
RULE_ACTIONS = {
    RuleAction.ALLOW: ec2.Action.ALLOW,
    RuleAction.DENY: ec2.Action.DENY,
}


class NetworkStack(Stack):
    def __init__(self, scope: Construct, construct_id: str,
                 settings: DeploymentSettings, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        spec = settings.network
        zones = self.availability_zones
        if len(zones) < spec.az_count:
            raise ConfigurationError(
                f"{spec.az_count} availability zones requested but the stack only sees "
                f"{len(zones)}; set account and region to use a concrete environment"
            )
        zones = list(zones[:spec.az_count])

        # Plan everything before declaring a single resource
        self.plan = plan_network(
            spec, settings.flows,
            zones=zones,
            direct_access=settings.direct_access,
            scope=(self.stack_name, VPC_ID)
        )

        # VPC without NAT gateways; the shared route table below gives every tier internet access
        self.vpc = ec2.Vpc(
            self, VPC_ID,
            ip_addresses=ec2.IpAddresses.cidr(spec.cidr),
            availability_zones=zones,
            nat_gateways=0,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=tier.name,
                    subnet_type=SUBNET_TYPES[tier.exposure],
                    cidr_mask=tier.cidr_mask
                )
                for tier in self.plan.tiers
            ]
        )
        self._check_subnets()

        self.route_table = self._create_route_table()
        self.network_acls = {acl.tier: self._create_network_acl(acl) for acl in self.plan.acls}
        self.security_groups = self._create_security_groups()

        CfnOutput(
            self, "VpcId",
            value=self.vpc.vpc_id,
            export_name=f"{self.stack_name}-VpcId"
        )

        logger.info(
            "Network stack declared",
            stack=self.stack_name,
            subnets=len(self.plan.subnets),
            network_acls=len(self.network_acls),
            security_groups=len(self.security_groups),
        )

    def subnets_of(self, tier: str) -> list[ec2.ISubnet]:
        return self.vpc.select_subnets(subnet_group_name=tier).subnets

    def _check_subnets(self) -> None:
        for tier in self.plan.tiers:
            planned = [(subnet.name, subnet.cidr) for subnet in tier.subnets]
            declared = [(subnet.node.id, subnet.ipv4_cidr_block) for subnet in self.subnets_of(tier.name)]
            if planned != declared:
                raise ConfigurationError(
                    f"Tier {tier.name!r} was planned as {planned} but the VPC declares {declared}"
                )

    def _create_route_table(self) -> ec2.CfnRouteTable:
        plan = self.plan.route_table
        if self.vpc.internet_gateway_id is None:
            raise ConfigurationError("The shared route table needs an internet gateway; declare a public tier")

        route_table = ec2.CfnRouteTable(self.vpc, plan.name.rsplit("/", 1)[-1], vpc_id=self.vpc.vpc_id)
        # The synthesized Name tag stops at the VPC scope, so set the full path explicitly
        Tags.of(route_table).add("Name", plan.name)

        for index, route in enumerate(plan.routes):
            cfn_route = ec2.CfnRoute(
                route_table, f"InternetRoute{index or ''}",
                route_table_id=route_table.ref,
                destination_cidr_block=route.destination,
                gateway_id=self.vpc.internet_gateway_id
            )
            cfn_route.node.add_dependency(self.vpc.internet_connectivity_established)

        # Re-point each subnet's own association so every subnet keeps exactly one
        associated = {association.subnet for association in plan.associations}
        for tier in self.plan.tiers:
            for subnet in self.subnets_of(tier.name):
                if subnet.node.id not in associated:
                    continue
                association = subnet.node.find_child("RouteTableAssociation")
                association.add_property_override("RouteTableId", route_table.ref)

        return route_table

    def _create_network_acl(self, acl: NetworkAclPlan) -> ec2.NetworkAcl:
        nacl = ec2.NetworkAcl(
            self.vpc, acl.name,
            network_acl_name=acl.name,
            vpc=self.vpc,
            subnet_selection=ec2.SubnetSelection(subnet_group_name=acl.tier)
        )
        for rule in acl.entries:
            nacl.add_entry(
                rule.name,
                rule_number=rule.number,
                direction=TRAFFIC_DIRECTIONS[rule.direction],
                cidr=_acl_cidr(rule.peer),
                traffic=_acl_traffic(rule.ports),
                rule_action=RULE_ACTIONS[rule.action]
            )
        return nacl

    def _create_security_groups(self) -> dict[str, ec2.SecurityGroup]:
        groups = {
            plan.name: ec2.SecurityGroup(
                self.vpc, plan.name,
                vpc=self.vpc,
                security_group_name=plan.name,
                description=f"Security group for the {plan.tier} tier",
                allow_all_outbound=plan.allow_all_outbound
            )
            for plan in self.plan.security_groups
        }

        # Rules go in once every group exists, since groups reference each other
        for plan in self.plan.security_groups:
            sg = groups[plan.name]
            for rule in plan.ingress:
                sg.add_ingress_rule(_sg_peer(rule.peer, groups), _sg_port(rule.ports), rule.description)
            for rule in plan.egress:
                sg.add_egress_rule(_sg_peer(rule.peer, groups), _sg_port(rule.ports), rule.description)

        return {plan.tier: groups[plan.name] for plan in self.plan.security_groups}


def _acl_cidr(peer: Peer) -> ec2.AclCidr:
    if peer.kind is PeerKind.ANY_IPV4:
        return ec2.AclCidr.any_ipv4()
    return ec2.AclCidr.ipv4(peer.cidr)


def _acl_traffic(ports: PortRange) -> ec2.AclTraffic:
    if ports.is_single:
        return ec2.AclTraffic.tcp_port(ports.start)
    return ec2.AclTraffic.tcp_port_range(ports.start, ports.end)


def _sg_peer(peer: Peer, groups: dict[str, ec2.SecurityGroup]) -> ec2.IPeer:
    if peer.kind is PeerKind.ANY_IPV4:
        return ec2.Peer.any_ipv4()
    if peer.kind is PeerKind.GROUP:
        return groups[peer.name]
    return ec2.Peer.ipv4(peer.cidr)


def _sg_port(ports: PortRange) -> ec2.Port:
    if ports.is_single:
        return ec2.Port.tcp(ports.start)
    return ec2.Port.tcp_range(ports.start, ports.end)
