import pytest
from sqlalchemy import Integer, String
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from nestedset.lib.db.base import Base
from nestedset.lib.locks import ScopeLock
from nestedset.ops.mapping import NodeMapping
from nestedset.ops.schemas import MoveDirection
from nestedset.ops.services.tree_service import TreeService


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    parent: Mapped[int | None] = mapped_column("parent_ref", Integer, nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    left_bound: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    right_bound: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    child_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


CATEGORY_MAPPING = NodeMapping(
    Category,
    parent_id="parent",
    depth="level",
    left="left_bound",
    right="right_bound",
    children_count="child_total",
    scope=("tenant_id", "kind"),
)


@pytest.fixture
def categories(db_session: AsyncSession) -> TreeService:
    return TreeService(db_session, mapping=CATEGORY_MAPPING, lock=ScopeLock())


@pytest.mark.asyncio
async def test_custom_columns_and_composite_scope(categories: TreeService):
    products = Category(tenant_id=1, kind="product", name="Products")
    await categories.create(products)
    shoes = Category(tenant_id=1, kind="product", name="Shoes")
    await categories.create(shoes, parent=products)
    hats = Category(tenant_id=1, kind="product", name="Hats")
    await categories.create(hats, parent=products)

    # Same tenant, other kind: an independent forest numbered from 1
    blog = Category(tenant_id=1, kind="article", name="Blog")
    created = await categories.create(blog)
    assert (created.lft, created.rgt) == (1, 2)

    await categories.move(hats, shoes, MoveDirection.BEFORE)

    scope = {"tenant_id": 1, "kind": "product"}
    trees = await categories.fetch_forest(scope, label="name")
    assert [tree.label for tree in trees] == ["Products"]
    assert [child.label for child in trees[0].children] == ["Hats", "Shoes"]
    assert (hats.left_bound, hats.right_bound, hats.level, hats.parent) == (2, 3, 1, products.id)
    assert await categories.find_problems(scope) == []
    assert await categories.find_problems({"tenant_id": 1, "kind": "article"}) == []
