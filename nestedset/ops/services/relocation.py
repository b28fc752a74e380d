"""
Nested-set surgery primitives.

All structural changes reduce to shifting bounds that fall inside a window of
the traversal axis. Moving a subtree is done in two bulk steps: the nodes
between the subtree and its destination shift by the subtree width to open
(or close) room, then the subtree itself shifts into the room.

Example, moving C before B under A::

    A(1,6)  B(2,3)  C(4,5)      position = B.left - 1 = 1
                                move_step = 1 - 4 + 1 = -2
    shift [2, 3] by +2          B -> (4,5)
    shift subtree by -2         C -> (2,3)
"""

import logging
from dataclasses import dataclass

from sqlalchemy import and_

from nestedset.ops.mapping import NodeDescriptor, Scope
from nestedset.ops.schemas import MoveDirection
from nestedset.ops.store import RelationalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MovePlan:
    """Absolute destination of a move; the moving subtree starts right after ``position``."""

    new_parent_id: int | None
    depth_change: int
    position: int


def plan_move(direction: MoveDirection, node: NodeDescriptor, reference: NodeDescriptor) -> MovePlan:
    if direction is MoveDirection.BEFORE:
        return MovePlan(reference.parent_id, reference.depth - node.depth, reference.left - 1)
    if direction is MoveDirection.AFTER:
        return MovePlan(reference.parent_id, reference.depth - node.depth, reference.right)
    if direction is MoveDirection.INNER:
        return MovePlan(reference.id, reference.depth + 1 - node.depth, reference.left)
    raise ValueError(f"Unknown move direction {direction!r}")


class RangeShifter:
    def __init__(self, store: RelationalStore):
        self.store = store

    async def shift(self, scope: Scope, lo: int, hi: int, step: int) -> None:
        """
        Add ``step`` to every bound of the scope lying in ``[lo, hi]``.

        Left and right bounds are updated by two independent statements, so a
        node straddling the window edge only has its inner bound moved.
        """
        if lo > hi or step == 0:
            return
        left = self.store.mapping.column("left")
        right = self.store.mapping.column("right")

        moved_left = await self.store.conditional_shift(scope, "left", left.between(lo, hi), step)
        moved_right = await self.store.conditional_shift(scope, "right", right.between(lo, hi), step)
        logger.debug(f"Shifted [{lo}, {hi}] by {step}: {moved_left} left and {moved_right} right bounds")

    async def open_gap(self, scope: Scope, at: int, width: int = 2) -> None:
        """Make room for ``width`` positions starting at ``at`` (insertion just inside a parent's right bound)."""
        left = self.store.mapping.column("left")
        right = self.store.mapping.column("right")

        await self.store.conditional_shift(scope, "right", right >= at, width)
        await self.store.conditional_shift(scope, "left", left > at, width)


class Relocator:
    def __init__(self, store: RelationalStore):
        self.store = store
        self.shifter = RangeShifter(store)

    async def relocate(self, node: NodeDescriptor, plan: MovePlan) -> bool:
        """
        Move ``node`` and its subtree so it starts right after ``plan.position``.

        ``node`` must be a fresh read from the running transaction. Returns
        False when the subtree already sits at the destination, in which case
        nothing is written.
        """
        mapping = self.store.mapping
        scope = node.scope
        width = node.width
        move_step = plan.position - node.left + 1

        if move_step == 0:
            return False
        if move_step < 0:
            affected_lo, affected_hi, affected_step = plan.position + 1, node.left - 1, width
            subtree_step = move_step
        else:
            affected_lo, affected_hi, affected_step = node.right + 1, plan.position, -width
            subtree_step = move_step - width
            if subtree_step == 0:
                # Already the reference's left sibling: the window above is empty
                return False

        left = mapping.column("left")
        right = mapping.column("right")
        depth = mapping.column("depth")

        # Collect the subtree before anything moves
        subtree_ids = await self.store.pluck_ids(scope, and_(left >= node.left, right <= node.right))

        await self.shifter.shift(scope, affected_lo, affected_hi, affected_step)
        await self.store.update(
            scope,
            subtree_ids,
            {"left": left + subtree_step, "right": right + subtree_step, "depth": depth + plan.depth_change},
        )
        await self.store.update(scope, node.id, {"parent_id": plan.new_parent_id})
        await self.sync_children_count(scope, node.parent_id, plan.new_parent_id)

        logger.debug(
            f"Relocated node {node.id} ({len(subtree_ids)} rows) by {subtree_step}, "
            f"affected [{affected_lo}, {affected_hi}] by {affected_step}"
        )
        return True

    async def sync_children_count(self, scope: Scope, old_parent_id: int | None, new_parent_id: int | None) -> None:
        parent_column = self.store.mapping.column("parent_id")
        for parent_id in (old_parent_id, new_parent_id):
            if parent_id is None:
                continue
            count = await self.store.count(scope, parent_column == parent_id)
            await self.store.update(scope, parent_id, {"children_count": count})
