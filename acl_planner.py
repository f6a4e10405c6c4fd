"""
Network ACL rule planner.

Every flow that touches a tier gives that tier's ACL a forward rule per
port and an ephemeral-port return rule in the opposite direction. NACLs
are stateless, so a missing return rule silently drops responses; the
planner therefore never emits one without the other.

Rule numbers are handed out per (direction, band). Tier-to-tier rules
are enumerated once per peer subnet starting at 50; internet rules sit
in fixed bands above them, and optional direct-access rules above every
primary band so they can never shadow the forwarding path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, NamedTuple, Sequence

import structlog

from errors import RuleConflictError
from plan_model import (
    EPHEMERAL_PORTS,
    Direction,
    NetworkAclPlan,
    Peer,
    PortRange,
    RuleKind,
    SubnetTier,
    TrafficFlow,
    TrafficRule,
    network_acl_name,
)
from traffic_policy import ResolvedFlow, resolve_flows

logger = structlog.get_logger(__name__)


class Band(NamedTuple):
    name: str
    base: int
    limit: int


PER_SUBNET = Band("per-subnet", 50, 100)
INTERNET_INBOUND = Band("internet-inbound", 100, 200)
INTERNET_OUTBOUND = Band("internet-outbound", 200, 300)
OPTIONAL_RETURN = Band("optional-return", 300, 400)
OPTIONAL_OUTBOUND = Band("optional-outbound", 400, 500)
OPTIONAL_INBOUND = Band("optional-inbound", 500, 600)
OPTIONAL_PER_SUBNET = Band("optional-per-subnet", 600, 700)

BANDS = (
    PER_SUBNET,
    INTERNET_INBOUND,
    INTERNET_OUTBOUND,
    OPTIONAL_RETURN,
    OPTIONAL_OUTBOUND,
    OPTIONAL_INBOUND,
    OPTIONAL_PER_SUBNET,
)


@dataclass(frozen=True)
class _Request:
    band: Band
    direction: Direction
    peer: Peer
    ports: PortRange
    kind: RuleKind
    optional: bool

    @property
    def key(self) -> tuple:
        return (self.direction, self.peer, self.ports)


def _bands(peer_tier: SubnetTier | None, inbound: bool, optional: bool) -> tuple[Band, Band]:
    """(forward band, return band) for one side of a flow."""
    if peer_tier is not None:
        band = OPTIONAL_PER_SUBNET if optional else PER_SUBNET
        return band, band
    if optional:
        return (OPTIONAL_INBOUND if inbound else OPTIONAL_OUTBOUND), OPTIONAL_RETURN
    band = INTERNET_INBOUND if inbound else INTERNET_OUTBOUND
    return band, band


def _side(flow: ResolvedFlow, peer_tier: SubnetTier | None, inbound: bool) -> Iterator[_Request]:
    forward = Direction.INGRESS if inbound else Direction.EGRESS
    forward_band, return_band = _bands(peer_tier, inbound, flow.optional)
    if peer_tier is None:
        peers = [Peer.any_ipv4()]
    else:
        peers = [Peer.subnet(subnet) for subnet in peer_tier.subnets]

    for ports in flow.ports:
        for peer in peers:
            yield _Request(forward_band, forward, peer, ports, RuleKind.FORWARD, flow.optional)
    for peer in peers:
        yield _Request(
            return_band, forward.opposite, peer, EPHEMERAL_PORTS, RuleKind.RETURN, flow.optional
        )


def _requests(tier: SubnetTier, flows: Sequence[ResolvedFlow]) -> list[_Request]:
    requests: dict[tuple, _Request] = {}
    # Primary flows claim a rule before an optional flow can duplicate it.
    for flow in sorted(flows, key=lambda f: f.optional):
        sides = []
        if flow.source_name == tier.name:
            sides.append(_side(flow, flow.destination, inbound=False))
        if flow.destination_name == tier.name:
            sides.append(_side(flow, flow.source, inbound=True))
        for side in sides:
            for request in side:
                requests.setdefault(request.key, request)
    return list(requests.values())


def _number(tier: str, requests: Sequence[_Request]) -> tuple[TrafficRule, ...]:
    rules = []
    for direction in Direction:
        for band in BANDS:
            group = [r for r in requests if r.direction is direction and r.band == band]
            for number, request in enumerate(group, start=band.base):
                if number >= band.limit:
                    raise RuleConflictError(
                        f"{network_acl_name(tier)}: {len(group)} {direction.value} rules "
                        f"overflow the {band.name} band ({band.base}-{band.limit - 1})"
                    )
                rules.append(
                    TrafficRule(
                        number=number,
                        direction=direction,
                        peer=request.peer,
                        ports=request.ports,
                        kind=request.kind,
                        optional=request.optional,
                    )
                )
    return tuple(rules)


def verify_unique_numbers(acl: NetworkAclPlan) -> None:
    for direction in Direction:
        numbers = [rule.number for rule in acl.rules(direction)]
        duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
        if duplicates:
            raise RuleConflictError(
                f"{acl.name}: {direction.value} rule numbers {duplicates} are used more than once"
            )


def verify_symmetry(acls: Sequence[NetworkAclPlan]) -> None:
    """
    Every forward rule needs an ephemeral return rule in the same ACL, and
    a tier-to-tier forward rule needs the mirrored forward rule in the
    peer tier's ACL.

    Raises:
        RuleConflictError: On the first asymmetric pair found
    """
    by_tier = {acl.tier: acl for acl in acls}
    for acl in acls:
        keys = {(rule.direction, rule.peer, rule.ports) for rule in acl.entries}
        for rule in acl.entries:
            if rule.kind is not RuleKind.FORWARD:
                continue
            if (rule.direction.opposite, rule.peer, EPHEMERAL_PORTS) not in keys:
                raise RuleConflictError(
                    f"{acl.name}: {rule.name} (#{rule.number}) has no return rule"
                )
            if rule.peer.tier is None:
                continue

            peer_acl = by_tier.get(rule.peer.tier)
            if peer_acl is None:
                raise RuleConflictError(
                    f"{acl.name}: {rule.name} targets tier {rule.peer.tier!r}, which has no ACL"
                )
            mirrored = any(
                other.kind is RuleKind.FORWARD
                and other.direction is rule.direction.opposite
                and other.peer.tier == acl.tier
                and other.ports == rule.ports
                for other in peer_acl.entries
            )
            if not mirrored:
                raise RuleConflictError(
                    f"{acl.name}: {rule.name} is not mirrored in {peer_acl.name}"
                )


def plan_acls(
    tiers: Sequence[SubnetTier],
    flows: Iterable[TrafficFlow],
    include_optional: bool = False,
) -> tuple[NetworkAclPlan, ...]:
    """
    Plan one network ACL per tier.

    Args:
        tiers: Planned subnet tiers
        flows: Declared traffic flows
        include_optional: Plan the optional direct-access flows as well

    Raises:
        ConfigurationError: When a flow is invalid
        RuleConflictError: When numbering or symmetry checks fail
    """
    resolved = resolve_flows(tiers, flows, include_optional)

    acls = []
    for tier in tiers:
        entries = _number(tier.name, _requests(tier, resolved))
        acl = NetworkAclPlan(name=network_acl_name(tier.name), tier=tier.name, entries=entries)
        verify_unique_numbers(acl)
        acls.append(acl)
        logger.info(
            "Network ACL planned",
            acl=acl.name,
            ingress=len(acl.rules(Direction.INGRESS)),
            egress=len(acl.rules(Direction.EGRESS)),
        )

    verify_symmetry(acls)
    return tuple(acls)
