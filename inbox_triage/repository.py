"""
Generic data access over the SQLModel tables.

One :class:`Repository` per table exposes the usual CRUD/query operations
(find, create, update, upsert, delete, count, aggregate, group_by). Filters are
plain dicts::

    email_messages.find_many(
        session,
        where={"user_id": uid, "import_status": {"in": ["IMPORTED", "ARCHIVED"]}},
        order_by={"internal_date_ms": "desc"},
        take=50,
    )

Field values compare by equality (``None`` means IS NULL); a nested dict applies
operators (see ``_OPERATORS``); ``AND``/``OR`` take lists of filters and ``NOT``
takes one filter.

Writes commit immediately unless the session comes from ``db.transaction()``,
in which case they are only flushed.
"""
from __future__ import annotations
import logging
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    TypeVar,
    Union,
)

from sqlalchemy import UniqueConstraint, and_, false, func, not_, or_, true
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from .db import ATOMIC_KEY
from .errors import RecordNotFoundError, translate_integrity_error
from .models import (
    Account,
    Category,
    EmailAction,
    EmailMessage,
    GmailAccount,
    User,
    UserSession,
    VerificationToken,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)

Where = Mapping[str, Any]
OrderBy = Union[Mapping[str, str], Sequence[Mapping[str, str]]]

_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "equals": lambda col, v: col.is_(None) if v is None else col == v,
    "not": lambda col, v: col.is_not(None) if v is None else col != v,
    "in": lambda col, v: col.in_(list(v)),
    "not_in": lambda col, v: col.not_in(list(v)),
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "contains": lambda col, v: col.contains(v, autoescape=True),
    "startswith": lambda col, v: col.startswith(v, autoescape=True),
    "endswith": lambda col, v: col.endswith(v, autoescape=True),
}


class Repository(Generic[ModelT]):
    def __init__(self, model: Type[ModelT]):
        self.model = model
        self.name = model.__name__
        self.table = model.__table__
        self.unique_keys = self._collect_unique_keys()

    def __repr__(self) -> str:
        return f"Repository({self.name})"

    def _collect_unique_keys(self) -> List[FrozenSet[str]]:
        keys = [frozenset(c.name for c in self.table.primary_key.columns)]
        for column in self.table.columns:
            if column.unique:
                keys.append(frozenset([column.name]))
        for constraint in self.table.constraints:
            if isinstance(constraint, UniqueConstraint):
                keys.append(frozenset(c.name for c in constraint.columns))
        unique: List[FrozenSet[str]] = []
        for key in keys:
            if key and key not in unique:
                unique.append(key)
        return unique

    def _column(self, field: str):
        if field not in self.table.c:
            raise ValueError(f"Unknown field {field!r} on {self.name}")
        return getattr(self.model, field)

    def _check_fields(self, data: Mapping[str, Any]) -> None:
        unknown = [k for k in data if k not in self.table.c]
        if unknown:
            raise ValueError(f"Unknown field(s) {unknown} on {self.name}")

    def _conditions(self, where: Optional[Where]) -> List[Any]:
        conditions: List[Any] = []
        for key, value in (where or {}).items():
            if key == "AND":
                for sub in value:
                    conditions.extend(self._conditions(sub))
            elif key == "OR":
                clauses = [self._clause(sub) for sub in value]
                conditions.append(or_(*clauses) if clauses else false())
            elif key == "NOT":
                conditions.append(not_(self._clause(value)))
            else:
                column = self._column(key)
                if isinstance(value, Mapping):
                    for op, operand in value.items():
                        if op not in _OPERATORS:
                            raise ValueError(f"Unknown filter operator {op!r} for {self.name}.{key}")
                        conditions.append(_OPERATORS[op](column, operand))
                else:
                    conditions.append(column.is_(None) if value is None else column == value)
        return conditions

    def _clause(self, where: Optional[Where]):
        return and_(true(), *self._conditions(where))

    def _order(self, order_by: Optional[OrderBy]) -> List[Any]:
        if not order_by:
            return []
        items = [order_by] if isinstance(order_by, Mapping) else list(order_by)
        clauses = []
        for item in items:
            for field, direction in item.items():
                column = self._column(field)
                direction = direction.lower()
                if direction not in ("asc", "desc"):
                    raise ValueError(f"order_by direction must be 'asc' or 'desc', got {direction!r}")
                clauses.append(column.asc() if direction == "asc" else column.desc())
        return clauses

    def _key(self, key: Mapping[str, Any]) -> Dict[str, Any]:
        if frozenset(key) not in self.unique_keys:
            raise ValueError(
                f"{sorted(key)} is not a unique key of {self.name}; "
                f"expected one of {[sorted(k) for k in self.unique_keys]}"
            )
        return dict(key)

    def _select(self, where, order_by=None, skip=None, take=None):
        stmt = select(self.model)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        orders = self._order(order_by)
        if orders:
            stmt = stmt.order_by(*orders)
        if skip:
            stmt = stmt.offset(skip)
        if take is not None:
            stmt = stmt.limit(take)
        return stmt

    def _commit(self, session: Session) -> None:
        try:
            if session.info.get(ATOMIC_KEY):
                session.flush()
            else:
                session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise translate_integrity_error(self.name, exc) from exc

    def _apply(self, obj: ModelT, data: Mapping[str, Any]) -> None:
        self._check_fields(data)
        for field, value in data.items():
            setattr(obj, field, value)

    def _build(self, data: Union[Mapping[str, Any], ModelT]) -> ModelT:
        if isinstance(data, self.model):
            return data
        self._check_fields(data)
        return self.model(**data)

    def find_unique(self, session: Session, **key: Any) -> Optional[ModelT]:
        stmt = select(self.model).where(*self._conditions(self._key(key)))
        return session.exec(stmt).first()

    def find_unique_or_throw(self, session: Session, **key: Any) -> ModelT:
        obj = self.find_unique(session, **key)
        if obj is None:
            raise RecordNotFoundError(self.name, key)
        return obj

    def find_first(
        self,
        session: Session,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        skip: Optional[int] = None,
    ) -> Optional[ModelT]:
        return session.exec(self._select(where, order_by, skip, 1)).first()

    def find_first_or_throw(
        self,
        session: Session,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        skip: Optional[int] = None,
    ) -> ModelT:
        obj = self.find_first(session, where, order_by, skip)
        if obj is None:
            raise RecordNotFoundError(self.name, dict(where or {}))
        return obj

    def find_many(
        self,
        session: Session,
        where: Optional[Where] = None,
        order_by: Optional[OrderBy] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
    ) -> List[ModelT]:
        return list(session.exec(self._select(where, order_by, skip, take)).all())

    def count(self, session: Session, where: Optional[Where] = None) -> int:
        stmt = select(func.count()).select_from(self.model)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        return session.exec(stmt).one()

    def aggregate(
        self,
        session: Session,
        where: Optional[Where] = None,
        count: bool = False,
        min_of: Iterable[str] = (),
        max_of: Iterable[str] = (),
        sum_of: Iterable[str] = (),
        avg_of: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """Compute count/min/max/sum/avg over the filtered rows.

        Returns ``{"count": n, "min": {field: v}, ...}`` with only the requested parts.
        """
        columns = []
        if count:
            columns.append(func.count().label("count"))
        parts = (("min", func.min, min_of), ("max", func.max, max_of),
                 ("sum", func.sum, sum_of), ("avg", func.avg, avg_of))
        for name, fn, fields in parts:
            for field in fields:
                columns.append(fn(self._column(field)).label(f"{name}__{field}"))
        if not columns:
            raise ValueError("aggregate() needs at least one of count/min_of/max_of/sum_of/avg_of")

        stmt = sa_select(*columns).select_from(self.model)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        row = session.exec(stmt).one()

        result: Dict[str, Any] = {}
        for label, value in row._mapping.items():
            if label == "count":
                result["count"] = value
                continue
            name, field = label.split("__", 1)
            result.setdefault(name, {})[field] = value
        return result

    def group_by(
        self,
        session: Session,
        by: Sequence[str],
        where: Optional[Where] = None,
        count: bool = True,
        order_by: Optional[OrderBy] = None,
    ) -> List[Dict[str, Any]]:
        if not by:
            raise ValueError("group_by() needs at least one field")
        columns = [self._column(field) for field in by]
        selected = list(columns)
        if count:
            selected.append(func.count().label("count"))
        stmt = sa_select(*selected).select_from(self.model)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        stmt = stmt.group_by(*columns)
        orders = self._order(order_by)
        if orders:
            stmt = stmt.order_by(*orders)
        return [dict(row._mapping) for row in session.exec(stmt).all()]

    def create(self, session: Session, data: Union[Mapping[str, Any], ModelT]) -> ModelT:
        obj = self._build(data)
        session.add(obj)
        self._commit(session)
        session.refresh(obj)
        return obj

    def create_many(
        self,
        session: Session,
        rows: Iterable[Mapping[str, Any]],
        skip_duplicates: bool = False,
    ) -> int:
        """Insert many rows, returning how many were inserted.

        With ``skip_duplicates`` rows colliding with an existing row (or an earlier
        row of the same batch) on any unique key are dropped instead of failing.
        """
        objs = [self._build(row) for row in rows]
        if skip_duplicates:
            seen = set()
            kept = []
            for obj in objs:
                signatures = self._key_signatures(obj)
                if any(sig in seen for sig in signatures) or self._exists(session, obj):
                    logger.debug(f"Skipping duplicate {self.name} row")
                    continue
                seen.update(signatures)
                kept.append(obj)
            objs = kept
        session.add_all(objs)
        self._commit(session)
        return len(objs)

    def _key_signatures(self, obj: ModelT) -> List[tuple]:
        signatures = []
        for key in self.unique_keys:
            values = tuple((field, getattr(obj, field)) for field in sorted(key))
            if all(v is not None for _, v in values):
                signatures.append(values)
        return signatures

    def _exists(self, session: Session, obj: ModelT) -> bool:
        for signature in self._key_signatures(obj):
            if self.find_unique(session, **dict(signature)) is not None:
                return True
        return False

    def update(self, session: Session, key: Mapping[str, Any], data: Mapping[str, Any]) -> ModelT:
        obj = self.find_unique_or_throw(session, **self._key(key))
        self._apply(obj, data)
        session.add(obj)
        self._commit(session)
        session.refresh(obj)
        return obj

    def update_many(self, session: Session, where: Optional[Where], data: Mapping[str, Any]) -> int:
        self._check_fields(data)
        stmt = sa_update(self.model).values(**data)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        result = session.exec(stmt.execution_options(synchronize_session="fetch"))
        self._commit(session)
        return result.rowcount

    def upsert(
        self,
        session: Session,
        key: Mapping[str, Any],
        create: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> ModelT:
        existing = self.find_unique(session, **self._key(key))
        if existing is not None:
            self._apply(existing, update)
            obj = existing
        else:
            obj = self._build({**key, **create})
        session.add(obj)
        self._commit(session)
        session.refresh(obj)
        return obj

    def delete(self, session: Session, **key: Any) -> ModelT:
        obj = self.find_unique_or_throw(session, **key)
        session.delete(obj)
        self._commit(session)
        return obj

    def delete_many(self, session: Session, where: Optional[Where] = None) -> int:
        stmt = sa_delete(self.model)
        conditions = self._conditions(where)
        if conditions:
            stmt = stmt.where(*conditions)
        result = session.exec(stmt.execution_options(synchronize_session="fetch"))
        self._commit(session)
        return result.rowcount


users: Repository[User] = Repository(User)
accounts: Repository[Account] = Repository(Account)
user_sessions: Repository[UserSession] = Repository(UserSession)
verification_tokens: Repository[VerificationToken] = Repository(VerificationToken)
gmail_accounts: Repository[GmailAccount] = Repository(GmailAccount)
categories: Repository[Category] = Repository(Category)
email_messages: Repository[EmailMessage] = Repository(EmailMessage)
email_actions: Repository[EmailAction] = Repository(EmailAction)
