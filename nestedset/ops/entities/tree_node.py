import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, SmallInteger, String, func
from sqlalchemy.orm import Mapped, mapped_column

from nestedset.lib.db.base import Base


def generate_node_id() -> int:
    # Random id that fits in a signed BIGINT
    return uuid.uuid4().int & 0x7FFFFFFFFFFFFFFF


class TreeNode(Base):
    __tablename__ = "tree_nodes"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, default=generate_node_id)
    org_id: Mapped[str] = mapped_column(String, nullable=False, default="default")
    label: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("tree_nodes.id", ondelete="CASCADE"), nullable=True, index=True
    )
    depth: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    lft: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rgt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    children_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<TreeNode(id={self.id}, label={self.label}, parent_id={self.parent_id}, "
            f"lft={self.lft}, rgt={self.rgt}, depth={self.depth})>"
        )
