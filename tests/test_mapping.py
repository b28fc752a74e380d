import pytest
from factories.tree_node import TreeNodeFactory
from sqlalchemy.dialects import sqlite
from sqlalchemy.sql.elements import True_

from nestedset.exceptions import MappingError
from nestedset.ops.entities.tree_node import TreeNode
from nestedset.ops.mapping import NodeMapping
from nestedset.ops.services.tree_service import TREE_NODE_MAPPING


def test_mapping_rejects_unknown_columns():
    with pytest.raises(MappingError, match="lhs"):
        NodeMapping(TreeNode, left="lhs")

    with pytest.raises(MappingError, match="tenant_id"):
        NodeMapping(TreeNode, scope=("tenant_id",))


def test_mapping_rejects_unmapped_classes():
    class Plain:
        pass

    with pytest.raises(MappingError):
        NodeMapping(Plain)


def test_mapping_accepts_single_scope_column():
    mapping = NodeMapping(TreeNode, scope="org_id")

    assert mapping.scope == ("org_id",)
    assert mapping.table_name == "tree_nodes"


def test_resolve_reads_bound_attributes():
    node = TreeNodeFactory.build(id=7, org_id="acme", parent_id=3, lft=4, rgt=9, depth=2, children_count=2)

    ref = TREE_NODE_MAPPING.resolve(node)

    assert (ref.id, ref.parent_id, ref.left, ref.right, ref.depth, ref.children_count) == (7, 3, 4, 9, 2, 2)
    assert ref.scope == (("org_id", "acme"),)


def test_resolve_treats_missing_children_count_as_zero():
    node = TreeNodeFactory.build(lft=1, rgt=2, depth=0)

    assert TREE_NODE_MAPPING.resolve(node).children_count == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"lft": None, "rgt": 2, "depth": 0},
        {"lft": 1, "rgt": None, "depth": 0},
        {"lft": 1, "rgt": 2, "depth": None},
        {"lft": "1", "rgt": 2, "depth": 0},
        {"lft": True, "rgt": 2, "depth": 0},
        {"lft": 1, "rgt": 2, "depth": 0, "parent_id": "3"},
    ],
)
def test_resolve_rejects_missing_or_invalid_coordinates(overrides):
    with pytest.raises(MappingError):
        TREE_NODE_MAPPING.resolve(TreeNodeFactory.build(**overrides))


def test_resolve_rejects_foreign_records():
    with pytest.raises(MappingError):
        TREE_NODE_MAPPING.resolve({"id": 1, "lft": 1, "rgt": 2})

    with pytest.raises(MappingError):
        TREE_NODE_MAPPING.resolve(None)


def test_scope_clause_matches_values_and_nulls():
    clause = TREE_NODE_MAPPING.scope_clause((("org_id", "acme"),))
    null_clause = TREE_NODE_MAPPING.scope_clause((("org_id", None),))

    assert str(clause.compile(dialect=sqlite.dialect())) == "tree_nodes.org_id = ?"
    assert str(null_clause.compile(dialect=sqlite.dialect())) == "tree_nodes.org_id IS NULL"


def test_empty_scope_matches_whole_table():
    mapping = NodeMapping(TreeNode)

    assert mapping.scope_of(TreeNodeFactory.build()) == ()
    assert isinstance(mapping.scope_clause(()), True_)


def test_scope_from_values_fills_defaults_and_rejects_unknown_columns():
    assert TREE_NODE_MAPPING.scope_from_values() == (("org_id", "default"),)
    assert TREE_NODE_MAPPING.scope_from_values({"org_id": "acme"}) == (("org_id", "acme"),)

    with pytest.raises(MappingError):
        TREE_NODE_MAPPING.scope_from_values({"tenant": "acme"})


def test_scope_of_new_inherits_from_parent():
    parent = TREE_NODE_MAPPING.resolve(TreeNodeFactory.build(org_id="acme", lft=1, rgt=2, depth=0))
    node = TreeNodeFactory.build(org_id=None)

    assert TREE_NODE_MAPPING.scope_of_new(node, parent) == (("org_id", "acme"),)
    assert node.org_id == "acme"
