"""Tests for the topology builder."""

from __future__ import annotations

import pytest

from labrig.errors import UsageError
from labrig.topology import Topology, gb, mb


def test_units():
    assert gb(2) == 2048
    assert mb(512) == 512


def test_radix_counts_links(trio):
    radix = {node.name: node.radix for node in trio.nodes}

    assert radix == {"router": 2, "violin": 1, "piano": 1}


def test_node_defaults():
    topo = Topology("solo")
    topo.node("cello", "helios-1.1", 4, gb(4))

    cello = topo.deployment.find_node("cello")
    assert cello.cores == 4
    assert cello.memory == 4096
    assert cello.radix == 0
    assert cello.mounts == []


def test_node_ids_are_unique(trio):
    assert len({node.id for node in trio.nodes}) == 3


def test_duplicate_node_rejected():
    topo = Topology("dup")
    topo.node("violin", "helios-1.1", 1, gb(1))

    with pytest.raises(UsageError):
        topo.node("violin", "debian-12", 1, gb(1))


def test_link_to_undeclared_node_rejected():
    topo = Topology("t")
    topo.node("violin", "helios-1.1", 1, gb(1))

    with pytest.raises(UsageError) as exc:
        topo.link("violin", "cello")
    assert "cello" in str(exc.value)
    assert topo.deployment.links == []
    assert topo.deployment.find_node("violin").radix == 0


def test_self_link_rejected():
    topo = Topology("t")
    topo.node("violin", "helios-1.1", 1, gb(1))

    with pytest.raises(UsageError):
        topo.link("violin", "violin")


def test_mount_on_undeclared_node_rejected():
    with pytest.raises(UsageError):
        Topology("t").mount("violin", "/src", "/dst")


def test_links_for(trio):
    assert [i for i, _ in trio.links_for("router")] == [0, 1]
    assert [i for i, _ in trio.links_for("piano")] == [1]
