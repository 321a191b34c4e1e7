import pytest

from linux_vpc.errors import (
    ExternalSystemFailure,
    InsufficientState,
    InvalidArgument,
    NameCollision,
    NotFound,
)
from linux_vpc.models import PeeringStatus
from linux_vpc.naming import peering_link_names
from linux_vpc.vpc import peering_forward_rules

LINK_MAIN, LINK_SECONDARY = peering_link_names("main", "secondary")


def test_vpcs_are_isolated_without_peering(two_vpcs, driver):
    report = two_vpcs.peerings.check_isolation("main", "secondary")

    assert report.isolated
    assert report.peering_confirmed is None
    assert not driver.ping("10.1.1.2", "ns-main-public")
    assert not driver.ping("10.0.1.2", "ns-secondary-public")


def test_create_peering_connects_vpcs(two_vpcs, driver):
    result = two_vpcs.peerings.create_peering("secondary", "main")

    assert f"{LINK_MAIN}<->{LINK_SECONDARY}" in result.succeeded
    assert driver.spaces[None][LINK_MAIN].master == "br-main"
    assert driver.spaces[None][LINK_SECONDARY].master == "br-secondary"
    for namespace in ("ns-main-public", "ns-main-private"):
        assert driver.has_route(namespace, "10.1.0.0/16")
    assert driver.has_route("ns-secondary-public", "10.0.0.0/16")

    report = two_vpcs.peerings.check_isolation("main", "secondary")
    assert report.reachable
    assert report.peering_confirmed is True
    assert driver.ping("10.0.2.2", "ns-secondary-public")



def test_peering_allows_forwarding_ahead_of_bridge_drops(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")

    forward = driver.list_rules("filter", "FORWARD")
    for source, target in (("br-main", "br-secondary"), ("br-secondary", "br-main")):
        allow = forward.index(f"-A FORWARD -i {source} -o {target} -j ACCEPT")
        assert allow < forward.index(f"-A FORWARD -i {source} -o br-+ -j DROP")


def test_peered_traffic_is_dropped_without_forwarding_exception(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")
    for rule in peering_forward_rules("br-main", "br-secondary"):
        driver.delete_rule(rule)

    assert driver.has_route("ns-main-public", "10.1.0.0/16")
    assert not driver.ping("10.1.1.2", "ns-main-public")
    assert not driver.ping("10.0.1.2", "ns-secondary-public")


def test_peering_routes_use_onlink_gateway(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")

    calls = [call for call in driver.mutations("add_route") if call[1] == "10.1.0.0/16"]
    assert ("add_route", "10.1.0.0/16", "ns-main-public", "10.1.0.1", "vmainpub-n", True) in calls


def test_create_peering_twice_is_idempotent(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")

    result = two_vpcs.peerings.create_peering("secondary", "main")

    assert result.succeeded == []
    assert result.skipped
    # three subnet pairs plus the single peering pair
    assert len(driver.mutations("create_veth_pair")) == 4
    assert len(two_vpcs.peerings.list_peerings()) == 1


def test_peer_with_itself(two_vpcs):
    with pytest.raises(InvalidArgument):
        two_vpcs.peerings.create_peering("main", "main")


def test_peer_with_unknown_vpc(two_vpcs, driver):
    before = len(driver.mutations())

    with pytest.raises(NotFound):
        two_vpcs.peerings.create_peering("main", "ghost")

    assert len(driver.mutations()) == before


def test_unrecorded_peering_link_is_a_collision(two_vpcs, driver):
    driver.create_veth_pair(LINK_MAIN, "stray")

    with pytest.raises(NameCollision):
        two_vpcs.peerings.create_peering("main", "secondary")


def test_failed_attach_rolls_back_links(two_vpcs, driver):
    driver.fail("attach_to_bridge", LINK_SECONDARY)

    with pytest.raises(ExternalSystemFailure, match="rolled back"):
        two_vpcs.peerings.create_peering("main", "secondary")

    assert not driver.link_exists(LINK_MAIN)
    assert not driver.link_exists(LINK_SECONDARY)
    assert two_vpcs.peerings.list_peerings() == []
    assert two_vpcs.peerings.check_isolation("main", "secondary").isolated


def test_failed_forwarding_exception_rolls_back_peering(two_vpcs, driver):
    driver.fail("insert_rule")

    with pytest.raises(ExternalSystemFailure, match="rolled back"):
        two_vpcs.peerings.create_peering("main", "secondary")

    assert not driver.link_exists(LINK_MAIN)
    assert driver.rule_count("filter", "FORWARD") == 4
    assert two_vpcs.peerings.list_peerings() == []


def test_delete_peering_restores_isolation(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")

    result = two_vpcs.peerings.delete_peering("secondary", "main")

    assert LINK_MAIN in result.succeeded
    assert not driver.link_exists(LINK_MAIN)
    assert not driver.has_route("ns-main-public", "10.1.0.0/16")
    assert not driver.has_route("ns-secondary-public", "10.0.0.0/16")
    for rule in peering_forward_rules("br-main", "br-secondary"):
        assert not driver.rule_exists(rule)
    assert two_vpcs.peerings.list_peerings() == []
    assert two_vpcs.peerings.check_isolation("main", "secondary").isolated


def test_delete_missing_peering(two_vpcs):
    with pytest.raises(NotFound):
        two_vpcs.peerings.delete_peering("main", "secondary")


def test_delete_peering_removes_orphan_links(two_vpcs, driver):
    driver.create_veth_pair(LINK_MAIN, LINK_SECONDARY)

    result = two_vpcs.peerings.delete_peering("main", "secondary")

    assert LINK_MAIN in result.succeeded
    assert not driver.link_exists(LINK_SECONDARY)


def test_list_peerings_reports_broken_links(two_vpcs, driver):
    two_vpcs.peerings.create_peering("main", "secondary")
    assert [view.status for view in two_vpcs.peerings.list_peerings()] == [PeeringStatus.ACTIVE]

    driver.delete_link(LINK_MAIN)

    views = two_vpcs.peerings.list_peerings()
    assert [view.status for view in views] == [PeeringStatus.BROKEN]
    assert views[0].peering.key == ("main", "secondary")


def test_cleanup_removes_every_peering(two_vpcs, driver):
    two_vpcs.vpcs.create_vpc("third", "10.2.0.0/16")
    two_vpcs.peerings.create_peering("main", "secondary")
    two_vpcs.peerings.create_peering("main", "third")

    two_vpcs.peerings.cleanup()

    assert two_vpcs.peerings.list_peerings() == []
    assert not any(name.startswith("vp") for name in driver.spaces[None])


def test_check_isolation_needs_subnets(two_vpcs):
    two_vpcs.vpcs.create_vpc("third", "10.2.0.0/16")

    with pytest.raises(InsufficientState, match="add-subnet"):
        two_vpcs.peerings.check_isolation("main", "third")


def test_check_isolation_unknown_vpc(two_vpcs):
    with pytest.raises(NotFound):
        two_vpcs.peerings.check_isolation("main", "ghost")
