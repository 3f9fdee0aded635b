"""Babbler test configuration."""
import os
import sys
import pytest
from pathlib import Path

# Ensure babbler package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def tmp_babbler_dir(tmp_path):
    """Create a temporary BABBLER_HOME for testing."""
    babbler_dir = tmp_path / ".babbler"
    babbler_dir.mkdir()
    old_home = os.environ.get("BABBLER_HOME")
    os.environ["BABBLER_HOME"] = str(babbler_dir)
    yield babbler_dir
    if old_home is not None:
        os.environ["BABBLER_HOME"] = old_home
    else:
        os.environ.pop("BABBLER_HOME", None)


@pytest.fixture
def brain_path(tmp_babbler_dir):
    """Path of an initialized, empty order-3 brain."""
    from babbler.brain import Brain
    path = tmp_babbler_dir / "brain.db"
    Brain.init(path, order=3)
    return path


@pytest.fixture
def brain(brain_path):
    """Create a fresh, seeded Brain for testing."""
    from babbler.brain import Brain
    b = Brain(brain_path, seed=1234)
    yield b
    b.close()


@pytest.fixture
def graph(brain):
    """The SQLiteGraph behind a fresh brain (end token and end context exist)."""
    return brain.graph


def assert_node_counts_consistent(graph):
    """Every node's count must equal the summed count of its incoming edges."""
    rows = graph._conn.execute("""
        SELECT nodes.id, nodes.count, COALESCE(SUM(edges.count), 0)
        FROM nodes LEFT JOIN edges ON edges.next_node = nodes.id
        GROUP BY nodes.id
    """).fetchall()
    for node_id, count, incoming in rows:
        assert count == incoming, f"node {node_id}: count {count} != incoming {incoming}"


@pytest.fixture
def check_counts():
    """Return the node count invariant checker."""
    return assert_node_counts_consistent
