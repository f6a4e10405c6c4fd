"""
Declared traffic flows, checked against the planned tiers.

Both rule planners read the same resolved flows so the ACL layer and the
security group layer always describe the same intent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from errors import ConfigurationError
from plan_model import INTERNET, PortRange, SubnetTier, TrafficFlow


@dataclass(frozen=True)
class ResolvedFlow:
    """A flow whose endpoints are planned tiers (None stands for the internet)."""

    source: SubnetTier | None
    destination: SubnetTier | None
    ports: tuple[PortRange, ...]
    description: str
    ingress_description: str
    optional: bool

    @property
    def source_name(self) -> str:
        return self.source.name if self.source else INTERNET

    @property
    def destination_name(self) -> str:
        return self.destination.name if self.destination else INTERNET

    def touches(self, tier: str) -> bool:
        return tier in (self.source_name, self.destination_name)


def _endpoint(name: str, tiers: dict[str, SubnetTier]) -> SubnetTier | None:
    if name == INTERNET:
        return None
    try:
        return tiers[name]
    except KeyError:
        raise ConfigurationError(
            f"Traffic flow references undeclared tier {name!r}; "
            f"declared tiers are {sorted(tiers)}"
        ) from None


def resolve_flows(
    tiers: Sequence[SubnetTier],
    flows: Iterable[TrafficFlow],
    include_optional: bool = False,
) -> list[ResolvedFlow]:
    """
    Validate flows and bind their endpoints to planned tiers.

    Optional flows are dropped unless the direct-access profile is on.

    Raises:
        ConfigurationError: Unknown tier, internet-to-internet flow, bad port,
            or a non-optional internet flow into an isolated tier
    """
    by_name = {tier.name: tier for tier in tiers}
    resolved = []
    for flow in flows:
        source = _endpoint(flow.source, by_name)
        destination = _endpoint(flow.destination, by_name)

        if source is None and destination is None:
            raise ConfigurationError("A traffic flow needs at least one tier endpoint")
        if not flow.ports:
            raise ConfigurationError(
                f"Traffic flow {flow.source} -> {flow.destination} declares no ports"
            )
        for port in flow.ports:
            if not 1 <= port <= 65535:
                raise ConfigurationError(f"Invalid port {port} in flow {flow.source} -> {flow.destination}")

        if source is None and not destination.is_public and not flow.optional:
            raise ConfigurationError(
                f"Tier {destination.name!r} is isolated; internet traffic into it "
                f"must be declared optional"
            )

        if flow.optional and not include_optional:
            continue

        resolved.append(
            ResolvedFlow(
                source=source,
                destination=destination,
                ports=tuple(PortRange.tcp(port) for port in flow.ports),
                description=flow.description,
                ingress_description=flow.ingress_description,
                optional=flow.optional,
            )
        )
    return resolved
