"""
Binding between a caller's declarative model and the nested-set columns.

A ``NodeMapping`` is declared once per model and names which mapped
attributes hold the id, parent reference, depth, bounds and children count,
plus the columns that partition the table into independent forests (scope).
Everything else in the package works on ``NodeDescriptor`` values produced
from it, never on the model's attributes directly.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, inspect, true
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import InstrumentedAttribute
from sqlalchemy.sql.elements import ColumnElement

from nestedset.exceptions import MappingError

Scope = tuple[tuple[str, Any], ...]

ROLES = ("id", "parent_id", "depth", "left", "right", "children_count")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class NodeDescriptor:
    """Coordinates of one node as read from a record or from storage."""

    id: int
    parent_id: int | None
    depth: int
    left: int
    right: int
    children_count: int
    scope: Scope
    mapping: "NodeMapping" = field(repr=False, compare=False)

    @property
    def width(self) -> int:
        return self.right - self.left + 1

    @property
    def scope_dict(self) -> dict[str, Any]:
        return dict(self.scope)

    def contains(self, other: "NodeDescriptor") -> bool:
        """True when ``other`` is this node or one of its descendants."""
        return self.left <= other.left and other.right <= self.right

    def same_scope(self, other: "NodeDescriptor") -> bool:
        return self.scope == other.scope


@dataclass(frozen=True)
class NodeMapping:
    model: type
    id: str = "id"
    parent_id: str = "parent_id"
    depth: str = "depth"
    left: str = "lft"
    right: str = "rgt"
    children_count: str = "children_count"
    scope: tuple[str, ...] = ()

    def __post_init__(self):
        # Accept a list or a single column name for convenience
        if isinstance(self.scope, str):
            object.__setattr__(self, "scope", (self.scope,))
        else:
            object.__setattr__(self, "scope", tuple(self.scope))

        try:
            mapper = inspect(self.model)
        except NoInspectionAvailable as e:
            raise MappingError(f"{self.model!r} is not a mapped SQLAlchemy model") from e

        columns = set(mapper.columns.keys())
        for role in ROLES:
            attr = getattr(self, role)
            if attr not in columns:
                raise MappingError(f"{self.model.__name__} has no mapped column '{attr}' for {role}")
        for attr in self.scope:
            if attr not in columns:
                raise MappingError(f"{self.model.__name__} has no mapped column '{attr}' for scope")

    @property
    def table_name(self) -> str:
        return self.model.__table__.name

    def column(self, role: str) -> InstrumentedAttribute:
        """Mapped attribute playing ``role`` (one of ROLES)."""
        return getattr(self.model, getattr(self, role))

    def scope_of(self, record: Any) -> Scope:
        """Scope values of a record, placed or not."""
        self._check_instance(record)
        return tuple((attr, getattr(record, attr)) for attr in self.scope)

    def scope_of_new(self, record: Any, parent: NodeDescriptor | None = None) -> Scope:
        """
        Scope of a record about to be inserted.

        Unset scope attributes are filled in from the parent, or from the
        column's scalar default for a new root, and written back onto the
        record so the inserted row lands in the forest it was placed in.
        """
        self._check_instance(record)
        scope = []
        for attr in self.scope:
            value = getattr(record, attr)
            if value is None:
                value = parent.scope_dict.get(attr) if parent is not None else self._column_default(attr)
                if value is not None:
                    setattr(record, attr, value)
            scope.append((attr, value))
        return tuple(scope)

    def scope_from_values(self, values: dict[str, Any] | None = None) -> Scope:
        """Scope built from explicit values, e.g. ``{"org_id": "acme"}``."""
        values = dict(values or {})
        unknown = set(values) - set(self.scope)
        if unknown:
            raise MappingError(f"{sorted(unknown)} are not scope columns of {self.model.__name__}")
        return tuple((attr, values[attr] if attr in values else self._column_default(attr)) for attr in self.scope)

    def _column_default(self, attr: str) -> Any:
        default = inspect(self.model).columns[attr].default
        if default is not None and default.is_scalar:
            return default.arg
        return None

    def scope_clause(self, scope: Scope) -> ColumnElement[bool]:
        clauses = []
        for attr, value in scope:
            column = getattr(self.model, attr)
            clauses.append(column.is_(None) if value is None else column == value)
        if not clauses:
            return true()
        return and_(*clauses)

    def resolve(self, record: Any) -> NodeDescriptor:
        """Read a placed record's coordinates; no database access."""
        self._check_instance(record)

        values = {role: getattr(record, getattr(self, role), None) for role in ROLES}
        for role in ("id", "depth", "left", "right"):
            if not _is_int(values[role]):
                raise MappingError(
                    f"{type(record).__name__}.{getattr(self, role)} must be an integer to resolve {role}, "
                    f"got {values[role]!r}"
                )
        if values["parent_id"] is not None and not _is_int(values["parent_id"]):
            raise MappingError(f"{type(record).__name__}.{self.parent_id} must be an integer or None")
        if values["children_count"] is None:
            values["children_count"] = 0

        return NodeDescriptor(scope=self.scope_of(record), mapping=self, **values)

    def attribute_names(self) -> set[str]:
        """Attributes a record must have loaded to be resolved."""
        return {getattr(self, role) for role in ROLES} | set(self.scope)

    def read_columns(self) -> list[InstrumentedAttribute]:
        return [self.column(role) for role in ROLES]

    def from_row(self, row: Any, scope: Scope) -> NodeDescriptor:
        """Build a descriptor from a row selected with ``read_columns()``."""
        node_id, parent_id, depth, left, right, children_count = row
        return NodeDescriptor(
            id=node_id,
            parent_id=parent_id,
            depth=depth,
            left=left,
            right=right,
            children_count=children_count or 0,
            scope=scope,
            mapping=self,
        )

    def check_unsaved(self, record: Any) -> None:
        """Reject records that already have a row; those are placed with move, not create."""
        self._check_instance(record)
        state = inspect(record)
        if state.has_identity:
            raise MappingError(
                f"{type(record).__name__} with key {state.identity} is already stored, move it instead of creating it"
            )

    def _check_instance(self, record: Any) -> None:
        if record is None or not isinstance(record, self.model):
            raise MappingError(f"Expected a {self.model.__name__} instance, got {type(record).__name__}")
