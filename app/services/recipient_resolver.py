"""Resolve a broadcast request into a deduplicated set of recipients.

Three strategies, combined:

* explicit ids (``target_users``): sanitised, deduplicated, looked up among
  active users; ids that do not resolve are reported back as invalid;
* filter groups (``target_filters``): each group is an independent bounded
  search, results are unioned by user id with the first-seen record kept;
* all active users: only for ``scope == "all"`` when nothing else matched.

"Active" means not soft-deleted. An empty result is not an error here.
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from app.core.utils import escape_like
from app.models.broadcast import BroadcastScope
from app.models.user import User
from app.schemas.broadcast import RecipientFilter

logger = logging.getLogger(__name__)

_INT_STRING = re.compile(r"\d+")
_SEARCH_COLUMNS = {
    "username": User.username,
    "email": User.email,
    "school": User.school,
    "location": User.location,
}


class RecipientResolutionError(ValueError):
    """Raised when the request names targets but none of them are usable."""


@dataclass(frozen=True)
class RecipientRecord:
    id: int
    username: str
    email: str | None
    school: str | None
    school_id: int | None
    location: str | None
    is_admin: bool
    status: str

    @classmethod
    def from_user(cls, user: User) -> "RecipientRecord":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            school=user.school,
            school_id=user.school_id,
            location=user.location,
            is_admin=bool(user.is_admin),
            status=user.status,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ResolvedRecipients:
    records: dict[int, RecipientRecord] = field(default_factory=dict)
    invalid_ids: list[int] = field(default_factory=list)
    scope: str = BroadcastScope.ALL.value

    @property
    def ids(self) -> list[int]:
        return list(self.records)

    def __len__(self) -> int:
        return len(self.records)


def sanitize_user_ids(raw_ids: Iterable[Any]) -> list[int]:
    """Keep positive integers (ints or digit strings), first occurrence wins."""
    seen: dict[int, None] = {}
    for value in raw_ids:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            candidate = value
        elif isinstance(value, str) and _INT_STRING.fullmatch(value):
            candidate = int(value)
        else:
            continue
        if candidate > 0:
            seen.setdefault(candidate, None)
    return list(seen)


def active_users_query(db: Session) -> Query:
    return db.query(User).filter(User.deleted_at.is_(None))


def resolve_explicit_ids(db: Session, raw_ids: Iterable[Any]) -> tuple[dict[int, RecipientRecord], list[int]]:
    """Look up explicit ids. Returns (records in request order, invalid ids)."""
    ids = sanitize_user_ids(raw_ids)
    if not ids:
        raise RecipientResolutionError("target_users must contain at least one valid id")

    users = active_users_query(db).filter(User.id.in_(ids)).all()
    by_id = {u.id: u for u in users}

    records = {uid: RecipientRecord.from_user(by_id[uid]) for uid in ids if uid in by_id}
    invalid_ids = [uid for uid in ids if uid not in by_id]
    return records, invalid_ids


def apply_recipient_filter(query: Query, criteria: RecipientFilter) -> Query:
    """Apply one filter group's predicates (no ordering or paging)."""
    if criteria.search:
        term = f"%{escape_like(criteria.search)}%"
        fields = criteria.fields or list(_SEARCH_COLUMNS)
        query = query.filter(
            or_(*[_SEARCH_COLUMNS[name].ilike(term, escape="\\") for name in fields])
        )
    if criteria.school_id is not None:
        query = query.filter(User.school_id == criteria.school_id)
    if criteria.school:
        query = query.filter(User.school.ilike(f"%{escape_like(criteria.school)}%", escape="\\"))
    if criteria.email_suffix:
        suffix = criteria.email_suffix.lower()
        query = query.filter(User.email.ilike(f"%{escape_like(suffix)}", escape="\\"))
    if criteria.status:
        query = query.filter(User.status == criteria.status.lower())
    if criteria.is_admin is not None:
        query = query.filter(User.is_admin == criteria.is_admin)
    if criteria.include_ids:
        query = query.filter(User.id.in_(criteria.include_ids))
    if criteria.exclude_ids:
        query = query.filter(User.id.notin_(criteria.exclude_ids))
    return query


def search_recipients(db: Session, criteria: RecipientFilter) -> tuple[list[RecipientRecord], int]:
    """Run one filter group. Returns (page of records, total matches)."""
    query = apply_recipient_filter(active_users_query(db), criteria)
    total = query.count()
    users = query.order_by(User.id.asc()).offset(criteria.offset).limit(criteria.limit).all()
    return [RecipientRecord.from_user(u) for u in users], total


def resolve_filter_groups(db: Session, groups: Iterable[RecipientFilter]) -> dict[int, RecipientRecord]:
    records: dict[int, RecipientRecord] = {}
    for index, criteria in enumerate(groups):
        matches, total = search_recipients(db, criteria)
        for record in matches:
            records.setdefault(record.id, record)
        logger.debug(
            "Filter group %d matched %d users (%d returned, offset=%d, limit=%d)",
            index, total, len(matches), criteria.offset, criteria.limit,
        )
    return records


def resolve_all_active(db: Session) -> dict[int, RecipientRecord]:
    users = active_users_query(db).order_by(User.id.asc()).all()
    return {u.id: RecipientRecord.from_user(u) for u in users}


def resolve_recipients(
    db: Session,
    target_users: Iterable[Any] | None = None,
    target_filters: Iterable[RecipientFilter] | None = None,
    scope: str = BroadcastScope.ALL.value,
) -> ResolvedRecipients:
    resolved = ResolvedRecipients(scope=scope)

    if target_users is not None:
        records, invalid_ids = resolve_explicit_ids(db, target_users)
        resolved.records.update(records)
        resolved.invalid_ids = invalid_ids

    if target_filters:
        for uid, record in resolve_filter_groups(db, target_filters).items():
            resolved.records.setdefault(uid, record)

    if not resolved.records and scope == BroadcastScope.ALL.value:
        resolved.records = resolve_all_active(db)

    logger.info(
        "Resolved %d broadcast recipients (scope=%s, invalid=%d)",
        len(resolved.records), scope, len(resolved.invalid_ids),
    )
    return resolved
