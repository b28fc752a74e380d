from nestedset.ops.services.tree_service import TreeService


async def snapshot(service: TreeService, **scope) -> list[tuple]:
    """Every row of a scope as plain tuples, in traversal order."""
    forest = service.mapping.scope_from_values(scope)
    rows = await service.store.run_atomic(lambda: service.store.fetch(forest), forest, exclusive=False)
    return [(n.id, n.parent_id, n.lft, n.rgt, n.depth, n.children_count) for n in rows]


async def coords(service: TreeService, node) -> tuple:
    """(lft, rgt, depth, children_count, parent_id) of a node, read fresh."""
    row = await service.get(node)
    return row.lft, row.rgt, row.depth, row.children_count, row.parent_id


def forest_shape(trees) -> list:
    return [(tree.id, forest_shape(tree.children)) for tree in trees]
