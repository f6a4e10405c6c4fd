"""
Security group planner.

Mirrors the ACL intent at the instance level. Security groups are stateful,
so only the opening side of each flow needs a rule, and tier-to-tier rules
reference the peer's group rather than its subnet CIDRs.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import structlog

from plan_model import (
    Direction,
    Peer,
    SecurityGroupPlan,
    SecurityGroupRule,
    SubnetTier,
    TrafficFlow,
    security_group_name,
)
from traffic_policy import ResolvedFlow, resolve_flows

logger = structlog.get_logger(__name__)


def _describe(flow: ResolvedFlow, direction: Direction, label: str) -> str:
    if direction is Direction.INGRESS and flow.ingress_description:
        return flow.ingress_description
    if flow.description:
        return flow.description
    if direction is Direction.INGRESS:
        return f"Allow {label} from {flow.source_name}"
    return f"Allow {label} to {flow.destination_name}"


def _rules(tier: str, flows: Sequence[ResolvedFlow], direction: Direction) -> tuple[SecurityGroupRule, ...]:
    rules: dict[tuple, SecurityGroupRule] = {}
    for flow in flows:
        if direction is Direction.INGRESS and flow.destination_name == tier:
            peer_tier = flow.source
        elif direction is Direction.EGRESS and flow.source_name == tier:
            peer_tier = flow.destination
        else:
            continue

        peer = Peer.any_ipv4() if peer_tier is None else Peer.group(peer_tier.name)
        for ports in flow.ports:
            rule = SecurityGroupRule(
                direction=direction,
                peer=peer,
                ports=ports,
                description=_describe(flow, direction, ports.label),
            )
            rules.setdefault((peer, ports), rule)
    return tuple(rules.values())


def plan_security_groups(
    tiers: Sequence[SubnetTier],
    flows: Iterable[TrafficFlow],
    include_optional: bool = False,
) -> tuple[SecurityGroupPlan, ...]:
    """
    Plan one security group per tier with outbound traffic closed by default.

    Raises:
        ConfigurationError: When a flow references an undeclared tier
    """
    resolved = resolve_flows(tiers, flows, include_optional)
    resolved.sort(key=lambda f: f.optional)

    groups = []
    for tier in tiers:
        group = SecurityGroupPlan(
            name=security_group_name(tier.name),
            tier=tier.name,
            ingress=_rules(tier.name, resolved, Direction.INGRESS),
            egress=_rules(tier.name, resolved, Direction.EGRESS),
        )
        groups.append(group)
        logger.info(
            "Security group planned",
            group=group.name,
            ingress=len(group.ingress),
            egress=len(group.egress),
            references=list(group.referenced_groups),
        )
    return tuple(groups)
