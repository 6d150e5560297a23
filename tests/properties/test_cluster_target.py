"""Property-based tests for cluster target validation."""

import pytest
from hypothesis import assume, given
from hypothesis import strategies as st
from pydantic import ValidationError

from cluster_bootstrap.models.outcomes import NodeRole
from cluster_bootstrap.models.target import ClusterTarget

ALPHANUM = "abcdefghijklmnopqrstuvwxyz0123456789"


@st.composite
def valid_cluster_name(draw):
    """Generate valid DNS-1123 labels."""
    length = draw(st.integers(min_value=1, max_value=20))
    if length == 1:
        return draw(st.sampled_from(ALPHANUM))
    middle = draw(st.text(alphabet=ALPHANUM + "-", min_size=length - 2, max_size=length - 2))
    return draw(st.sampled_from(ALPHANUM)) + middle + draw(st.sampled_from(ALPHANUM))


def private_ip():
    return st.builds(
        lambda a, b, c: f"10.{a}.{b}.{c}",
        st.integers(0, 255),
        st.integers(0, 255),
        st.integers(1, 254),
    )


@st.composite
def valid_target(draw):
    addresses = draw(st.lists(private_ip(), min_size=3, max_size=8, unique=True))
    return ClusterTarget(
        cluster_name=draw(valid_cluster_name()),
        control_plane=addresses[0],
        workers=tuple(addresses[1:-1]),
        vip=addresses[-1],
    )


@given(valid_target())
def test_nodes_are_control_plane_then_workers(target):
    """Node order is always control plane first, workers in the given order."""
    assert target.nodes[0] == target.control_plane
    assert target.nodes[1:] == target.workers
    assert len(set(target.nodes)) == len(target.nodes)


@given(valid_target())
def test_every_node_has_exactly_one_role(target):
    assert target.role_of(target.control_plane) is NodeRole.CONTROL_PLANE
    for worker in target.workers:
        assert target.role_of(worker) is NodeRole.WORKER
    with pytest.raises(KeyError):
        target.role_of(target.vip)


@given(valid_target())
def test_target_is_immutable(target):
    with pytest.raises(ValidationError):
        target.control_plane = "10.255.255.1"


@given(valid_target(), st.data())
def test_duplicate_worker_rejected(target, data):
    duplicate = data.draw(st.sampled_from(target.workers))

    with pytest.raises(ValidationError):
        ClusterTarget(
            cluster_name=target.cluster_name,
            control_plane=target.control_plane,
            workers=(*target.workers, duplicate),
            vip=target.vip,
        )


@given(valid_target())
def test_control_plane_cannot_be_worker(target):
    with pytest.raises(ValidationError):
        ClusterTarget(
            cluster_name=target.cluster_name,
            control_plane=target.control_plane,
            workers=(*target.workers, target.control_plane),
            vip=target.vip,
        )


@given(valid_target(), st.data())
def test_vip_cannot_be_a_node(target, data):
    node = data.draw(st.sampled_from(target.nodes))

    with pytest.raises(ValidationError):
        ClusterTarget(
            cluster_name=target.cluster_name,
            control_plane=target.control_plane,
            workers=target.workers,
            vip=node,
        )


@given(valid_cluster_name(), private_ip())
def test_empty_workers_rejected(name, address):
    with pytest.raises(ValidationError):
        ClusterTarget(cluster_name=name, control_plane=address, workers=(), vip="10.255.255.255")


@given(st.text(min_size=1, max_size=20))
def test_invalid_addresses_rejected(text):
    """Anything that is not an IP literal is rejected as a node address."""
    assume("." not in text and ":" not in text)

    with pytest.raises(ValidationError):
        ClusterTarget(cluster_name="lab", control_plane=text, workers=("10.0.0.2",), vip="10.0.0.9")


@given(st.text(alphabet="ABCDEFGHIJ_.!", min_size=1, max_size=10))
def test_invalid_cluster_names_rejected(name):
    with pytest.raises(ValidationError):
        ClusterTarget(
            cluster_name=name, control_plane="10.0.0.1", workers=("10.0.0.2",), vip="10.0.0.9"
        )
