"""
Runs the topology, ACL and security group planners as one all-or-nothing step.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import structlog

from acl_planner import plan_acls
from plan_model import NetworkPlan, NetworkSpec, TrafficFlow
from security_group_planner import plan_security_groups
from topology_planner import plan_topology

logger = structlog.get_logger(__name__)


def plan_network(
    spec: NetworkSpec,
    flows: Iterable[TrafficFlow],
    zones: Sequence[str] | None = None,
    direct_access: bool = False,
    scope: Sequence[str] = (),
) -> NetworkPlan:
    """
    Plan the whole network.

    Args:
        spec: Network declaration
        flows: Traffic flows between tiers and the internet
        zones: Availability zone names; placeholders when omitted
        direct_access: Include the optional direct-access flows
        scope: Name parts prefixed to the route table name, e.g. (stack, vpc id)

    Raises:
        ConfigurationError: On invalid inputs
        RuleConflictError: On colliding or asymmetric rules
    """
    flows = tuple(flows)
    tiers, route_table = plan_topology(spec, zones=zones, scope=scope)
    acls = plan_acls(tiers, flows, include_optional=direct_access)
    security_groups = plan_security_groups(tiers, flows, include_optional=direct_access)

    plan = NetworkPlan(
        spec=spec,
        tiers=tiers,
        route_table=route_table,
        acls=acls,
        security_groups=security_groups,
        direct_access=direct_access,
        vpc_name=scope[-1] if scope else "vpc",
    )
    logger.info(
        "Network planned",
        subnets=len(plan.subnets),
        acl_entries=sum(len(acl.entries) for acl in acls),
        security_group_rules=sum(len(group.rules) for group in security_groups),
        direct_access=direct_access,
    )
    return plan
