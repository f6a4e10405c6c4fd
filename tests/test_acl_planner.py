import pytest

from acl_planner import plan_acls, verify_symmetry, verify_unique_numbers
from errors import ConfigurationError, RuleConflictError
from plan_model import (
    ANY_IPV4,
    EPHEMERAL_PORTS,
    Direction,
    ExposureKind,
    NetworkAclPlan,
    NetworkSpec,
    Peer,
    PortRange,
    RuleKind,
    SubnetTierSpec,
    TrafficFlow,
    TrafficRule,
)
from topology_planner import plan_topology


def _numbers(acl: NetworkAclPlan, direction: Direction) -> list[int]:
    return [rule.number for rule in acl.rules(direction)]


@pytest.fixture
def tiers(scenario_spec):
    tiers, _ = plan_topology(scenario_spec)
    return tiers


class TestPublicTierScenario:
    """Public tier of the 3 + 3 subnet scenario."""

    @pytest.fixture
    def acl(self, tiers, web_flows):
        return plan_acls(tiers, web_flows)[0]

    def test_name(self, acl):
        assert acl.name == "pub_nacl"
        assert acl.tier == "pub"

    def test_ingress_numbers(self, acl):
        assert _numbers(acl, Direction.INGRESS) == [50, 51, 52, 100]

    def test_egress_numbers(self, acl):
        assert _numbers(acl, Direction.EGRESS) == [50, 51, 52, 100]

    def test_responses_from_each_web_subnet(self, acl, tiers):
        responses = acl.rules(Direction.INGRESS)[:3]

        assert [rule.peer.cidr for rule in responses] == [s.cidr for s in tiers[1].subnets]
        assert all(rule.ports == EPHEMERAL_PORTS for rule in responses)
        assert all(rule.kind is RuleKind.RETURN for rule in responses)

    def test_http_from_internet(self, acl):
        rule = acl.rules(Direction.INGRESS)[-1]

        assert rule.number == 100
        assert rule.peer.cidr == ANY_IPV4
        assert rule.ports == PortRange.tcp(80)
        assert rule.name == "Incoming_HTTP_Internet"

    def test_forward_to_each_web_subnet(self, acl):
        forwards = acl.rules(Direction.EGRESS)[:3]

        assert [rule.name for rule in forwards] == [
            "Outgoing_HTTP_privSubnet1",
            "Outgoing_HTTP_privSubnet2",
            "Outgoing_HTTP_privSubnet3",
        ]
        assert all(rule.ports == PortRange.tcp(80) for rule in forwards)

    def test_response_to_internet(self, acl):
        rule = acl.rules(Direction.EGRESS)[-1]

        assert rule.number == 100
        assert rule.peer.cidr == ANY_IPV4
        assert rule.ports == EPHEMERAL_PORTS


class TestPrivateTierScenario:
    def test_primary_rules_only_by_default(self, tiers, web_flows):
        acl = plan_acls(tiers, web_flows)[1]

        assert _numbers(acl, Direction.INGRESS) == [50, 51, 52, 200]
        assert _numbers(acl, Direction.EGRESS) == [50, 51, 52, 200, 201]
        assert not any(rule.optional for rule in acl.entries)

    def test_outbound_ports_keep_declaration_order(self, tiers, web_flows):
        acl = plan_acls(tiers, web_flows)[1]
        egress = {rule.number: rule for rule in acl.rules(Direction.EGRESS)}

        assert egress[200].ports == PortRange.tcp(443)
        assert egress[201].ports == PortRange.tcp(80)

    def test_direct_access_rules_sit_above_primary_bands(self, tiers, web_flows):
        acl = plan_acls(tiers, web_flows, include_optional=True)[1]

        assert _numbers(acl, Direction.INGRESS) == [50, 51, 52, 200, 500, 501]
        assert _numbers(acl, Direction.EGRESS) == [50, 51, 52, 200, 201, 300]

        optional = [rule for rule in acl.entries if rule.optional]
        primary = [rule for rule in acl.entries if not rule.optional]
        assert min(rule.number for rule in optional) > max(rule.number for rule in primary)

    def test_direct_ssh_rule(self, tiers, web_flows):
        acl = plan_acls(tiers, web_flows, include_optional=True)[1]
        ssh = [rule for rule in acl.entries if rule.ports == PortRange.tcp(22)]

        assert len(ssh) == 1
        assert ssh[0].number == 501
        assert ssh[0].name == "Incoming_SSH_Internet"


@pytest.mark.parametrize("include_optional", [False, True])
def test_rule_numbers_unique_per_direction(tiers, web_flows, include_optional):
    for acl in plan_acls(tiers, web_flows, include_optional=include_optional):
        for direction in Direction:
            numbers = _numbers(acl, direction)
            assert len(numbers) == len(set(numbers))


def test_every_forward_rule_has_a_return(tiers, web_flows):
    for acl in plan_acls(tiers, web_flows, include_optional=True):
        keys = {(rule.direction, rule.peer) for rule in acl.entries if rule.ports == EPHEMERAL_PORTS}
        for rule in acl.entries:
            if rule.kind is RuleKind.FORWARD:
                assert (rule.direction.opposite, rule.peer) in keys


def test_third_tier_stays_symmetric():
    spec = NetworkSpec(
        cidr="10.255.248.0/21",
        az_count=3,
        tiers=(
            SubnetTierSpec(name="pub", cidr_mask=28, exposure=ExposureKind.PUBLIC),
            SubnetTierSpec(name="priv", cidr_mask=26, exposure=ExposureKind.ISOLATED),
            SubnetTierSpec(name="db", cidr_mask=27, exposure=ExposureKind.ISOLATED),
        ),
    )
    flows = (
        TrafficFlow(source="internet", destination="pub", ports=(80,)),
        TrafficFlow(source="pub", destination="priv", ports=(80,)),
        TrafficFlow(source="priv", destination="db", ports=(5432,)),
    )
    tiers, _ = plan_topology(spec)

    pub, priv, db = plan_acls(tiers, flows)

    assert _numbers(priv, Direction.INGRESS) == [50, 51, 52, 53, 54, 55]
    assert _numbers(priv, Direction.EGRESS) == [50, 51, 52, 53, 54, 55]
    forwards_to_db = [r for r in priv.rules(Direction.EGRESS) if r.ports == PortRange.tcp(5432)]
    returns_to_priv = [r for r in db.rules(Direction.EGRESS) if r.kind is RuleKind.RETURN]
    assert [r.peer.tier for r in forwards_to_db] == ["db"] * 3
    assert [r.peer.tier for r in returns_to_priv] == ["priv"] * 3
    assert [r.peer.cidr for r in returns_to_priv] == [s.cidr for s in tiers[1].subnets]


def test_duplicate_returns_are_emitted_once(tiers):
    flows = (
        TrafficFlow(source="internet", destination="pub", ports=(80, 443)),
        TrafficFlow(source="internet", destination="pub", ports=(80,)),
    )

    pub = plan_acls(tiers, flows)[0]

    assert _numbers(pub, Direction.INGRESS) == [100, 101]
    assert _numbers(pub, Direction.EGRESS) == [100]


def test_planning_is_deterministic(tiers, web_flows):
    first = plan_acls(tiers, web_flows, include_optional=True)
    second = plan_acls(tiers, web_flows, include_optional=True)

    assert [[r.to_dict() for r in acl.entries] for acl in first] == [
        [r.to_dict() for r in acl.entries] for acl in second
    ]


def test_per_subnet_band_overflow():
    spec = NetworkSpec(
        cidr="10.0.0.0/16",
        az_count=26,
        tiers=tuple(
            SubnetTierSpec(name=name, cidr_mask=28, exposure=ExposureKind.PUBLIC)
            for name in ("a", "b", "c")
        ),
    )
    flows = (
        TrafficFlow(source="a", destination="b", ports=(80,)),
        TrafficFlow(source="c", destination="b", ports=(80,)),
    )
    tiers, _ = plan_topology(spec)

    with pytest.raises(RuleConflictError, match="overflow the per-subnet band"):
        plan_acls(tiers, flows)


def test_undeclared_tier(tiers):
    flows = (TrafficFlow(source="pub", destination="db", ports=(5432,)),)

    with pytest.raises(ConfigurationError, match="undeclared tier 'db'"):
        plan_acls(tiers, flows)


def test_primary_internet_flow_into_isolated_tier(tiers):
    flows = (TrafficFlow(source="internet", destination="priv", ports=(22,)),)

    with pytest.raises(ConfigurationError, match="isolated"):
        plan_acls(tiers, flows)


@pytest.mark.parametrize(
    "flow, message",
    [
        (TrafficFlow(source="internet", destination="internet", ports=(80,)), "at least one tier"),
        (TrafficFlow(source="pub", destination="priv", ports=()), "declares no ports"),
        (TrafficFlow(source="pub", destination="priv", ports=(70000,)), "Invalid port"),
    ],
)
def test_invalid_flows(tiers, flow, message):
    with pytest.raises(ConfigurationError, match=message):
        plan_acls(tiers, (flow,))


def _rule(number, direction, peer, ports, kind):
    return TrafficRule(number=number, direction=direction, peer=peer, ports=ports, kind=kind)


def test_verify_symmetry_rejects_missing_return():
    acl = NetworkAclPlan(
        name="pub_nacl",
        tier="pub",
        entries=(_rule(100, Direction.INGRESS, Peer.any_ipv4(), PortRange.tcp(80), RuleKind.FORWARD),),
    )

    with pytest.raises(RuleConflictError, match="has no return rule"):
        verify_symmetry([acl])


def test_verify_symmetry_rejects_unmirrored_tier_rule(tiers):
    web_subnet = Peer.subnet(tiers[1].subnets[0])
    pub = NetworkAclPlan(
        name="pub_nacl",
        tier="pub",
        entries=(
            _rule(50, Direction.EGRESS, web_subnet, PortRange.tcp(80), RuleKind.FORWARD),
            _rule(50, Direction.INGRESS, web_subnet, EPHEMERAL_PORTS, RuleKind.RETURN),
        ),
    )
    priv = NetworkAclPlan(name="priv_nacl", tier="priv", entries=())

    with pytest.raises(RuleConflictError, match="not mirrored in priv_nacl"):
        verify_symmetry([pub, priv])


def test_verify_unique_numbers_rejects_collision():
    acl = NetworkAclPlan(
        name="pub_nacl",
        tier="pub",
        entries=(
            _rule(100, Direction.INGRESS, Peer.any_ipv4(), PortRange.tcp(80), RuleKind.FORWARD),
            _rule(100, Direction.INGRESS, Peer.any_ipv4(), PortRange.tcp(443), RuleKind.FORWARD),
        ),
    )

    with pytest.raises(RuleConflictError, match=r"\[100\]"):
        verify_unique_numbers(acl)
