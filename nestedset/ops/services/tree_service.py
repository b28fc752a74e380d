import bisect
import logging
from collections import Counter, defaultdict
from typing import Any

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession

from nestedset.exceptions import InvalidMoveError, NestedSetError, ScopeMismatchError
from nestedset.lib.locks import ScopeLock, build_scope_lock
from nestedset.ops.entities.tree_node import TreeNode
from nestedset.ops.mapping import NodeMapping
from nestedset.ops.schemas import CreateNodeResponse, MoveDirection, MoveNodeResponse, TreeNodeResponse
from nestedset.ops.services.relocation import RangeShifter, Relocator, plan_move
from nestedset.ops.store import RelationalStore

logger = logging.getLogger(__name__)

TREE_NODE_MAPPING = NodeMapping(TreeNode, scope=("org_id",))


class TreeService:
    """
    Create and move nodes of nested-set forests.

    Every public method runs as one transaction on ``session``. Mutations also
    hold the scope lock, so at most one of them works on a given forest at a
    time. Records passed in are only used for their id and scope; coordinates
    are always re-read inside the transaction.
    """

    def __init__(self, session: AsyncSession, mapping: NodeMapping | None = None, lock: ScopeLock | None = None):
        self.session = session
        self.mapping = mapping or TREE_NODE_MAPPING
        self.store = RelationalStore(session, self.mapping, lock if lock is not None else build_scope_lock())
        self.shifter = RangeShifter(self.store)
        self.relocator = Relocator(self.store)

    async def create(self, node: Any, parent: Any | None = None) -> CreateNodeResponse:
        """
        Insert ``node`` as the last child of ``parent``, or as the last root of its scope.

        The node's coordinates, depth, parent reference and children count are
        overwritten with the computed placement before it is written.
        """
        self.mapping.check_unsaved(node)
        await self.store.ensure_loaded(parent)
        parent_ref = self.mapping.resolve(parent) if parent is not None else None
        scope = self.mapping.scope_of_new(node, parent_ref)
        if parent_ref is not None and parent_ref.scope != scope:
            raise ScopeMismatchError(
                f"Cannot create a node in scope {dict(scope)} under parent {parent_ref.id} "
                f"in scope {parent_ref.scope_dict}"
            )

        async def _create() -> CreateNodeResponse:
            if parent_ref is None:
                max_right = await self.store.read_max(scope, "right")
                left = 1 if max_right is None else max_right + 1
                depth, parent_id = 0, None
            else:
                fresh_parent = await self.store.read(parent_ref)
                left = fresh_parent.right
                depth, parent_id = fresh_parent.depth + 1, fresh_parent.id

                await self.shifter.open_gap(scope, left, 2)
                children_count = self.mapping.column("children_count")
                await self.store.update(scope, fresh_parent.id, {"children_count": children_count + 1})

            setattr(node, self.mapping.left, left)
            setattr(node, self.mapping.right, left + 1)
            setattr(node, self.mapping.depth, depth)
            setattr(node, self.mapping.parent_id, parent_id)
            setattr(node, self.mapping.children_count, 0)
            await self.store.insert(node)
            await self.store.refresh(parent)

            return CreateNodeResponse(
                id=getattr(node, self.mapping.id), parent_id=parent_id, depth=depth, lft=left, rgt=left + 1
            )

        created = await self.store.run_atomic(_create, scope)
        logger.info(f"Created node {created.id} at ({created.lft}, {created.rgt}) under parent {created.parent_id}")
        return created

    async def move(self, node: Any, reference: Any, direction: MoveDirection | str) -> MoveNodeResponse:
        """
        Move ``node`` with its subtree next to or into ``reference``.

        BEFORE and AFTER make it the reference's left or right sibling, INNER
        its first child. Moving a node onto itself or into its own subtree
        raises ``InvalidMoveError``.
        """
        try:
            direction = MoveDirection(direction)
        except ValueError as e:
            raise InvalidMoveError(f"Unknown move direction {direction!r}") from e

        await self.store.ensure_loaded(node, reference)
        node_ref = self.mapping.resolve(node)
        target_ref = self.mapping.resolve(reference)
        if not node_ref.same_scope(target_ref):
            raise ScopeMismatchError(
                f"Cannot move node {node_ref.id} in scope {node_ref.scope_dict} "
                f"relative to node {target_ref.id} in scope {target_ref.scope_dict}"
            )

        async def _move() -> bool:
            fresh_node = await self.store.read(node_ref)
            fresh_target = await self.store.read(target_ref)
            if fresh_node.contains(fresh_target):
                raise InvalidMoveError(f"Cannot move node {fresh_node.id} relative to itself or its own descendant")

            plan = plan_move(direction, fresh_node, fresh_target)
            logger.debug(f"Move plan for node {fresh_node.id} {direction.value} {fresh_target.id}: {plan}")

            moved = await self.relocator.relocate(fresh_node, plan)
            if moved:
                await self.store.refresh(node)
                await self.store.refresh(reference)
            return moved

        moved = await self.store.run_atomic(_move, node_ref.scope)
        if moved:
            message = f"Successfully moved node {node_ref.id} {direction.value} node {target_ref.id}"
            logger.info(message)
        else:
            message = f"Node {node_ref.id} is already {direction.value} node {target_ref.id}"
        return MoveNodeResponse(success=True, moved=moved, message=message)

    async def get(self, node: Any) -> Any:
        """Current row of ``node``."""
        await self.store.ensure_loaded(node)
        ref = self.mapping.resolve(node)
        return await self.store.run_atomic(lambda: self.store.fetch_one(ref), ref.scope, exclusive=False)

    async def children(self, node: Any) -> list[Any]:
        await self.store.ensure_loaded(node)
        ref = self.mapping.resolve(node)
        parent_id = self.mapping.column("parent_id")
        return await self.store.run_atomic(
            lambda: self.store.fetch(ref.scope, parent_id == ref.id), ref.scope, exclusive=False
        )

    async def descendants(self, node: Any, include_self: bool = False) -> list[Any]:
        await self.store.ensure_loaded(node)
        ref = self.mapping.resolve(node)
        left, right = self.mapping.column("left"), self.mapping.column("right")

        async def _descendants() -> list[Any]:
            fresh = await self.store.read(ref)
            if include_self:
                criteria = and_(left >= fresh.left, right <= fresh.right)
            else:
                criteria = and_(left > fresh.left, right < fresh.right)
            return await self.store.fetch(ref.scope, criteria)

        return await self.store.run_atomic(_descendants, ref.scope, exclusive=False)

    async def ancestors(self, node: Any, include_self: bool = False) -> list[Any]:
        """Ancestors of ``node`` from its root downwards."""
        await self.store.ensure_loaded(node)
        ref = self.mapping.resolve(node)
        left, right = self.mapping.column("left"), self.mapping.column("right")

        async def _ancestors() -> list[Any]:
            fresh = await self.store.read(ref)
            if include_self:
                criteria = and_(left <= fresh.left, right >= fresh.right)
            else:
                criteria = and_(left < fresh.left, right > fresh.right)
            return await self.store.fetch(ref.scope, criteria)

        return await self.store.run_atomic(_ancestors, ref.scope, exclusive=False)

    async def roots(self, scope: dict[str, Any] | None = None) -> list[Any]:
        forest = self.mapping.scope_from_values(scope)
        parent_id = self.mapping.column("parent_id")
        return await self.store.run_atomic(
            lambda: self.store.fetch(forest, parent_id.is_(None)), forest, exclusive=False
        )

    async def fetch_forest(
        self, scope: dict[str, Any] | None = None, label: str | None = "label"
    ) -> list[TreeNodeResponse]:
        """
        Whole forest of a scope as nested trees.

        Rows come back in left-bound order, which is a pre-order walk, so a
        stack of open intervals is enough to attach every node to its parent.
        """
        forest_scope = self.mapping.scope_from_values(scope)
        rows = await self.store.run_atomic(lambda: self.store.fetch(forest_scope), forest_scope, exclusive=False)

        forest: list[TreeNodeResponse] = []
        open_nodes: list[tuple[int, TreeNodeResponse]] = []
        for row in rows:
            ref = self.mapping.resolve(row)
            item = TreeNodeResponse(
                id=ref.id,
                label=getattr(row, label) if label else None,
                depth=ref.depth,
                lft=ref.left,
                rgt=ref.right,
            )
            while open_nodes and open_nodes[-1][0] < ref.left:
                open_nodes.pop()
            siblings = open_nodes[-1][1].children if open_nodes else forest
            siblings.append(item)
            open_nodes.append((ref.right, item))
        return forest

    async def rebuild(self, scope: dict[str, Any] | None = None) -> int:
        """
        Recompute bounds, depth and children counts of a scope from parent links.

        Siblings keep their current left-to-right order (ties broken by id).
        Returns the number of rows that had to be rewritten.
        """
        forest_scope = self.mapping.scope_from_values(scope)
        m = self.mapping

        async def _rebuild() -> int:
            rows = await self.store.fetch(forest_scope)
            known = {getattr(row, m.id) for row in rows}

            roots: list[int] = []
            children: dict[int, list[int]] = defaultdict(list)
            for row in rows:
                parent_id = getattr(row, m.parent_id)
                if parent_id in known:
                    children[parent_id].append(getattr(row, m.id))
                else:
                    roots.append(getattr(row, m.id))

            placed: dict[int, dict[str, int]] = {}
            counter = 0
            for root_id in roots:
                stack = [(root_id, 0, False)]
                while stack:
                    node_id, depth, closing = stack.pop()
                    counter += 1
                    if closing:
                        placed[node_id]["right"] = counter
                        continue
                    placed[node_id] = {"left": counter, "depth": depth, "children_count": len(children[node_id])}
                    stack.append((node_id, depth, True))
                    for child_id in reversed(children[node_id]):
                        stack.append((child_id, depth + 1, False))

            unreachable = known - placed.keys()
            if unreachable:
                raise NestedSetError(f"Parent links form a cycle through nodes {sorted(unreachable)}")

            changed = 0
            for row in rows:
                node_id = getattr(row, m.id)
                values = dict(placed[node_id])
                if getattr(row, m.parent_id) not in known:
                    values["parent_id"] = None
                current = {role: getattr(row, getattr(m, role)) for role in values}
                if current != values:
                    await self.store.update(forest_scope, node_id, values)
                    changed += 1
            return changed

        changed = await self.store.run_atomic(_rebuild, forest_scope)
        logger.info(f"Rebuilt scope {dict(forest_scope)}: {changed} rows rewritten")
        return changed

    async def find_problems(self, scope: dict[str, Any] | None = None) -> list[str]:
        """Describe every nested-set invariant violated in a scope; empty when the forest is consistent."""
        forest_scope = self.mapping.scope_from_values(scope)
        rows = await self.store.run_atomic(lambda: self.store.fetch(forest_scope), forest_scope, exclusive=False)
        return check_nodes([self.mapping.resolve(row) for row in rows])


def check_nodes(nodes: list) -> list[str]:
    """Invariant check over descriptors of one scope."""
    problems: list[str] = []
    by_id = {node.id: node for node in nodes}
    ordered = sorted(nodes, key=lambda n: n.left)
    lefts = [node.left for node in ordered]

    bounds = Counter([node.left for node in nodes] + [node.right for node in nodes])
    for bound, seen in sorted(bounds.items()):
        if seen > 1:
            problems.append(f"bound {bound} is used {seen} times")

    child_counts = Counter(node.parent_id for node in nodes if node.parent_id is not None)
    open_nodes: list = []
    for node in ordered:
        if node.left >= node.right:
            problems.append(f"node {node.id}: left {node.left} is not below right {node.right}")

        while open_nodes and open_nodes[-1].right < node.left:
            open_nodes.pop()
        enclosing = open_nodes[-1] if open_nodes else None
        if enclosing is not None and enclosing.right < node.right:
            problems.append(
                f"node {node.id} ({node.left}, {node.right}) overlaps node {enclosing.id} "
                f"({enclosing.left}, {enclosing.right})"
            )
        enclosing_id = enclosing.id if enclosing is not None else None
        if enclosing_id != node.parent_id:
            problems.append(f"node {node.id}: parent_id is {node.parent_id} but it is enclosed by {enclosing_id}")
        open_nodes.append(node)

        descendants = bisect.bisect_left(lefts, node.right) - bisect.bisect_right(lefts, node.left)
        if node.right - node.left != 2 * descendants + 1:
            width = node.right - node.left + 1
            problems.append(f"node {node.id}: width {width} does not fit {descendants} descendants")

        parent = by_id.get(node.parent_id)
        if node.parent_id is None and node.depth != 0:
            problems.append(f"root node {node.id} has depth {node.depth}")
        elif parent is not None and node.depth != parent.depth + 1:
            problems.append(f"node {node.id}: depth {node.depth} under parent depth {parent.depth}")
        elif node.parent_id is not None and parent is None:
            problems.append(f"node {node.id}: parent {node.parent_id} is not in the scope")

        if node.children_count != child_counts[node.id]:
            problems.append(f"node {node.id}: children_count {node.children_count} but has {child_counts[node.id]}")
    return problems
