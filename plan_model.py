"""
Network plan model.

Inputs (what the deployment declares) are pydantic models so they can be
read straight from CDK context. Everything the planners derive from them
is a frozen dataclass: once a plan exists nothing in it changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict

INTERNET = "internet"
ANY_IPV4 = "0.0.0.0/0"
INTERNET_GATEWAY = "internet-gateway"


class ExposureKind(str, Enum):
    """How a tier faces the internet.

    Values:
        PUBLIC: Instances get a public IP on launch.
        ISOLATED: No public IP is auto-assigned. The subnet still routes
            to the internet gateway through the shared route table.
    """

    PUBLIC = "public"
    ISOLATED = "isolated"


class Direction(str, Enum):
    INGRESS = "ingress"
    EGRESS = "egress"

    @property
    def opposite(self) -> Direction:
        return Direction.EGRESS if self is Direction.INGRESS else Direction.INGRESS


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class RuleKind(str, Enum):
    FORWARD = "forward"
    RETURN = "return"


class PeerKind(str, Enum):
    ANY_IPV4 = "any-ipv4"
    CIDR = "cidr"
    GROUP = "group"


# Inputs


class SubnetTierSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    cidr_mask: int
    exposure: ExposureKind


class NetworkSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    cidr: str = "10.255.248.0/21"
    az_count: int = 3
    tiers: tuple[SubnetTierSpec, ...] = ()
    nat_gateways: Literal[0] = 0


class TrafficFlow(BaseModel):
    """A connection one side opens towards the other.

    `source` and `destination` are tier names or ``internet``. Optional
    flows belong to the direct-access profile and are only planned when
    that profile is switched on.

    `ingress_description`, when set, labels the destination's inbound
    security group rule instead of `description`.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str
    ports: tuple[int, ...]
    description: str = ""
    ingress_description: str = ""
    optional: bool = False


# Derived plan


@dataclass(frozen=True)
class PortRange:
    start: int
    end: int
    protocol: str = "tcp"

    @classmethod
    def tcp(cls, port: int) -> PortRange:
        return cls(port, port)

    @property
    def is_single(self) -> bool:
        return self.start == self.end

    @property
    def label(self) -> str:
        if self == EPHEMERAL_PORTS:
            return "ephemeral"
        if self.is_single:
            return WELL_KNOWN_PORTS.get(self.start, f"TCP_{self.start}")
        return f"TCP_{self.start}-{self.end}"

    def to_dict(self) -> dict[str, Any]:
        return {"protocol": self.protocol, "from": self.start, "to": self.end}


EPHEMERAL_PORTS = PortRange(1024, 65535)
WELL_KNOWN_PORTS = {22: "SSH", 80: "HTTP", 443: "HTTPS"}


@dataclass(frozen=True)
class Subnet:
    name: str
    tier: str
    cidr: str
    availability_zone: str


@dataclass(frozen=True)
class SubnetTier:
    name: str
    exposure: ExposureKind
    cidr_mask: int
    subnets: tuple[Subnet, ...]

    @property
    def is_public(self) -> bool:
        return self.exposure is ExposureKind.PUBLIC


@dataclass(frozen=True)
class Route:
    destination: str
    target: str


@dataclass(frozen=True)
class RouteTableAssociation:
    subnet: str
    route_table: str


@dataclass(frozen=True)
class RouteTable:
    name: str
    routes: tuple[Route, ...]
    associations: tuple[RouteTableAssociation, ...]


@dataclass(frozen=True)
class Peer:
    kind: PeerKind
    name: str
    cidr: str | None = None
    tier: str | None = None

    @classmethod
    def any_ipv4(cls) -> Peer:
        return cls(PeerKind.ANY_IPV4, "Internet", cidr=ANY_IPV4)

    @classmethod
    def subnet(cls, subnet: Subnet) -> Peer:
        return cls(PeerKind.CIDR, subnet.name, cidr=subnet.cidr, tier=subnet.tier)

    @classmethod
    def group(cls, tier: str) -> Peer:
        return cls(PeerKind.GROUP, security_group_name(tier), tier=tier)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "name": self.name}
        if self.cidr is not None:
            data["cidr"] = self.cidr
        if self.tier is not None:
            data["tier"] = self.tier
        return data


@dataclass(frozen=True)
class TrafficRule:
    """One numbered network ACL entry."""

    number: int
    direction: Direction
    peer: Peer
    ports: PortRange
    kind: RuleKind
    action: RuleAction = RuleAction.ALLOW
    optional: bool = False

    @property
    def name(self) -> str:
        prefix = "Incoming" if self.direction is Direction.INGRESS else "Outgoing"
        label = "response" if self.kind is RuleKind.RETURN else self.ports.label
        return f"{prefix}_{label}_{self.peer.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "direction": self.direction.value,
            "peer": self.peer.to_dict(),
            "ports": self.ports.to_dict(),
            "action": self.action.value,
            "kind": self.kind.value,
            "optional": self.optional,
        }


@dataclass(frozen=True)
class NetworkAclPlan:
    name: str
    tier: str
    entries: tuple[TrafficRule, ...]

    def rules(self, direction: Direction) -> tuple[TrafficRule, ...]:
        return tuple(rule for rule in self.entries if rule.direction is direction)


@dataclass(frozen=True)
class SecurityGroupRule:
    direction: Direction
    peer: Peer
    ports: PortRange
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "peer": self.peer.to_dict(),
            "ports": self.ports.to_dict(),
            "description": self.description,
        }


@dataclass(frozen=True)
class SecurityGroupPlan:
    name: str
    tier: str
    ingress: tuple[SecurityGroupRule, ...]
    egress: tuple[SecurityGroupRule, ...]
    allow_all_outbound: bool = False

    @property
    def rules(self) -> tuple[SecurityGroupRule, ...]:
        return self.ingress + self.egress

    @property
    def referenced_groups(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for rule in self.rules:
            if rule.peer.kind is PeerKind.GROUP:
                seen.setdefault(rule.peer.name, None)
        return tuple(seen)


@dataclass(frozen=True)
class Declaration:
    """A resource the provisioning engine is asked to create."""

    kind: str
    name: str
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkPlan:
    spec: NetworkSpec
    tiers: tuple[SubnetTier, ...]
    route_table: RouteTable
    acls: tuple[NetworkAclPlan, ...]
    security_groups: tuple[SecurityGroupPlan, ...]
    direct_access: bool = False
    vpc_name: str = field(default="vpc")

    @property
    def subnets(self) -> tuple[Subnet, ...]:
        return tuple(subnet for tier in self.tiers for subnet in tier.subnets)

    def tier(self, name: str) -> SubnetTier:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        raise KeyError(name)

    def acl_for(self, tier: str) -> NetworkAclPlan:
        for acl in self.acls:
            if acl.tier == tier:
                return acl
        raise KeyError(tier)

    def security_group_for(self, tier: str) -> SecurityGroupPlan:
        for group in self.security_groups:
            if group.tier == tier:
                return group
        raise KeyError(tier)

    def declarations(self) -> Iterator[Declaration]:
        """Resources in an order where every dependency comes first."""
        yield Declaration("network", self.vpc_name)
        yield Declaration("internet-gateway", INTERNET_GATEWAY, (self.vpc_name,))
        for subnet in self.subnets:
            yield Declaration("subnet", subnet.name, (self.vpc_name,))

        table = self.route_table.name
        yield Declaration(
            "route-table", table, (self.vpc_name,) + tuple(s.name for s in self.subnets)
        )
        for route in self.route_table.routes:
            yield Declaration("route", f"{table}:{route.destination}", (table, route.target))
        for association in self.route_table.associations:
            yield Declaration(
                "route-table-association",
                f"{association.subnet}_{table}",
                (association.subnet, table),
            )

        for acl in self.acls:
            subnets = tuple(s.name for s in self.tier(acl.tier).subnets)
            yield Declaration("network-acl", acl.name, (self.vpc_name,) + subnets)
            for rule in acl.entries:
                yield Declaration("network-acl-entry", f"{acl.name}:{rule.name}", (acl.name,))

        for group in self.security_groups:
            yield Declaration("security-group", group.name, (self.vpc_name,))
        for group in self.security_groups:
            for rule in group.rules:
                depends = (group.name,)
                if rule.peer.kind is PeerKind.GROUP and rule.peer.name != group.name:
                    depends += (rule.peer.name,)
                yield Declaration(
                    "security-group-rule",
                    f"{group.name}:{rule.direction.value}:{rule.peer.name}:{rule.ports.label}",
                    depends,
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": {
                "cidr": self.spec.cidr,
                "az_count": self.spec.az_count,
                "nat_gateways": self.spec.nat_gateways,
            },
            "tiers": [
                {
                    "name": tier.name,
                    "cidr_mask": tier.cidr_mask,
                    "exposure": tier.exposure.value,
                    "subnets": [
                        {"name": s.name, "cidr": s.cidr, "availability_zone": s.availability_zone}
                        for s in tier.subnets
                    ],
                }
                for tier in self.tiers
            ],
            "route_table": {
                "name": self.route_table.name,
                "routes": [
                    {"destination": r.destination, "target": r.target}
                    for r in self.route_table.routes
                ],
                "associations": [
                    {"subnet": a.subnet, "route_table": a.route_table}
                    for a in self.route_table.associations
                ],
            },
            "acls": [
                {"name": acl.name, "tier": acl.tier, "entries": [r.to_dict() for r in acl.entries]}
                for acl in self.acls
            ],
            "security_groups": [
                {
                    "name": group.name,
                    "tier": group.tier,
                    "allow_all_outbound": group.allow_all_outbound,
                    "ingress": [r.to_dict() for r in group.ingress],
                    "egress": [r.to_dict() for r in group.egress],
                }
                for group in self.security_groups
            ],
        }


def subnet_name(tier: str, index: int) -> str:
    """Matches the construct id the CDK Vpc gives its subnets (1-based)."""
    return f"{tier}Subnet{index + 1}"


def network_acl_name(tier: str) -> str:
    return f"{tier}_nacl"


def security_group_name(tier: str) -> str:
    return f"{tier}_sg"
