"""
Topology planner: subnet tiers, the shared route table and its associations.
"""

from __future__ import annotations

import ipaddress
from typing import Sequence

import structlog

from errors import ConfigurationError
from plan_model import (
    ANY_IPV4,
    INTERNET,
    INTERNET_GATEWAY,
    NetworkSpec,
    Route,
    RouteTable,
    RouteTableAssociation,
    Subnet,
    SubnetTier,
    subnet_name,
)

logger = structlog.get_logger(__name__)

ROUTE_TABLE_NAME = "CustomRouteTable"

# AWS accepts subnet masks from /16 to /28.
MIN_SUBNET_MASK = 16
MAX_SUBNET_MASK = 28


def parse_base_cidr(cidr: str) -> ipaddress.IPv4Network:
    try:
        network = ipaddress.IPv4Network(cidr, strict=True)
    except ValueError as e:
        raise ConfigurationError(f"Invalid base CIDR block {cidr!r}: {e}") from e
    return network


def validate_spec(spec: NetworkSpec) -> ipaddress.IPv4Network:
    network = parse_base_cidr(spec.cidr)

    if spec.az_count < 1:
        raise ConfigurationError(f"AZ count must be at least 1, got {spec.az_count}")
    if spec.nat_gateways != 0:
        raise ConfigurationError("NAT gateways are not supported; nat_gateways must be 0")
    if not spec.tiers:
        raise ConfigurationError("At least one subnet tier is required")

    seen: set[str] = set()
    for tier in spec.tiers:
        if not tier.name:
            raise ConfigurationError("Subnet tier names must not be empty")
        if tier.name == INTERNET:
            raise ConfigurationError(f"{INTERNET!r} is reserved and cannot name a subnet tier")
        if tier.name in seen:
            raise ConfigurationError(f"Duplicate subnet tier name {tier.name!r}")
        seen.add(tier.name)

        if tier.cidr_mask < network.prefixlen:
            raise ConfigurationError(
                f"Tier {tier.name!r} mask /{tier.cidr_mask} is wider than the "
                f"base block {network}"
            )
        if not MIN_SUBNET_MASK <= tier.cidr_mask <= MAX_SUBNET_MASK:
            raise ConfigurationError(
                f"Tier {tier.name!r} mask /{tier.cidr_mask} is outside "
                f"/{MIN_SUBNET_MASK}-/{MAX_SUBNET_MASK}"
            )

    return network


def allocate_blocks(
    network: ipaddress.IPv4Network, masks: Sequence[int]
) -> list[ipaddress.IPv4Network]:
    """Hand out blocks in order, each aligned up to its own size.

    This is the allocation the CDK Vpc performs for its subnet
    configurations, so the planned CIDRs match the synthesized ones.
    """
    blocks = []
    next_free = int(network.network_address)
    end = int(network.broadcast_address)
    for mask in masks:
        size = 2 ** (32 - mask)
        start = -(-next_free // size) * size
        if start + size - 1 > end:
            raise ConfigurationError(
                f"Subnet tiers do not fit in {network}: no room left for a /{mask}"
            )
        blocks.append(ipaddress.IPv4Network((start, mask)))
        next_free = start + size
    return blocks


def plan_topology(
    spec: NetworkSpec,
    zones: Sequence[str] | None = None,
    scope: Sequence[str] = (),
) -> tuple[tuple[SubnetTier, ...], RouteTable]:
    """
    Derive per-AZ subnets for every tier and one route table shared by all of them.

    Args:
        spec: Network declaration
        zones: Availability zone names, in order. Placeholders are used when omitted.
        scope: Name parts prefixed to the route table name, e.g. (stack, vpc id)

    Raises:
        ConfigurationError: On invalid CIDR, mask, tier or AZ inputs
    """
    network = validate_spec(spec)

    if zones is None:
        zones = [f"az-{n + 1}" for n in range(spec.az_count)]
    elif len(zones) < spec.az_count:
        raise ConfigurationError(
            f"{spec.az_count} availability zones requested but only {len(zones)} given"
        )
    zones = list(zones)[: spec.az_count]

    masks = [tier.cidr_mask for tier in spec.tiers for _ in zones]
    blocks = iter(allocate_blocks(network, masks))

    tiers = tuple(
        SubnetTier(
            name=tier.name,
            exposure=tier.exposure,
            cidr_mask=tier.cidr_mask,
            subnets=tuple(
                Subnet(
                    name=subnet_name(tier.name, index),
                    tier=tier.name,
                    cidr=str(next(blocks)),
                    availability_zone=zone,
                )
                for index, zone in enumerate(zones)
            ),
        )
        for tier in spec.tiers
    )

    # One table for every tier: "isolated" only means no public IP here.
    table_name = "/".join([*scope, ROUTE_TABLE_NAME])
    route_table = RouteTable(
        name=table_name,
        routes=(Route(destination=ANY_IPV4, target=INTERNET_GATEWAY),),
        associations=tuple(
            RouteTableAssociation(subnet=subnet.name, route_table=table_name)
            for tier in tiers
            for subnet in tier.subnets
        ),
    )

    logger.info(
        "Topology planned",
        cidr=spec.cidr,
        tiers=[tier.name for tier in tiers],
        subnets=sum(len(tier.subnets) for tier in tiers),
        route_table=table_name,
    )
    return tiers, route_table
