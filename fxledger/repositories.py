"""
Profile and category collaborators of the transaction store.

Both resolvers work directly on SQLAlchemy Core tables and report storage
failures as PersistenceError so callers never mistake an outage for a miss.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable, Optional

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fxledger.categories import DEFAULT_CATEGORIES
from fxledger.currency_conversion import normalize_currency
from fxledger.models import Category, Profile
from fxledger.schema import categories, profiles

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when the storage layer fails for infrastructure reasons."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProfileResolver:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self.clock = clock

    def find_by_id(self, user_id: str) -> Optional[Profile]:
        try:
            with self.engine.begin() as conn:
                return self._find(conn, user_id)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to find profile",
                extra={"user_id": user_id, "action": "profile_lookup_failed", "component": "ProfileResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to find profile.") from exc

    def ensure_exists(self, user_id: str, fallback_default_currency: str = "USD") -> Profile:
        """Return the user's profile, creating it and its default categories on first access.

        The primary key on profiles makes the check-then-create safe across
        concurrent first requests: the loser re-reads the winner's row.
        """
        currency = normalize_currency(fallback_default_currency)
        try:
            existing = self.find_by_id(user_id)
            if existing:
                return existing
            now = self.clock()
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        insert(profiles).values(
                            id=user_id,
                            default_currency=currency,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    CategoryResolver.insert_defaults(conn, owner_id=user_id, now=now)
            except IntegrityError:
                logger.info(
                    "Profile created concurrently, reusing existing row",
                    extra={"user_id": user_id, "action": "profile_create_race", "component": "ProfileResolver"},
                )
            else:
                logger.info(
                    "Created profile with default categories",
                    extra={
                        "user_id": user_id,
                        "default_currency": currency,
                        "action": "profile_created",
                        "component": "ProfileResolver",
                    },
                )
            with self.engine.begin() as conn:
                profile = self._find(conn, user_id)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to ensure profile exists",
                extra={"user_id": user_id, "action": "profile_ensure_failed", "component": "ProfileResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to ensure profile exists.") from exc
        if profile is None:
            raise PersistenceError("Profile missing after creation.")
        return profile

    def set_default_currency(self, user_id: str, currency: str) -> Profile:
        normalized = normalize_currency(currency)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(profiles)
                    .where(profiles.c.id == user_id)
                    .values(default_currency=normalized, updated_at=self.clock())
                )
                profile = self._find(conn, user_id)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to update default currency",
                extra={"user_id": user_id, "currency": normalized, "action": "profile_update_failed", "component": "ProfileResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to update profile.") from exc
        if profile is None:
            raise PersistenceError("Profile not found.")
        return profile

    @staticmethod
    def _find(conn: Connection, user_id: str) -> Optional[Profile]:
        row = conn.execute(select(profiles).where(profiles.c.id == user_id)).mappings().first()
        if not row:
            return None
        return Profile(
            id=row["id"],
            default_currency=row["default_currency"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class CategoryResolver:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find_by_name(self, user_id: str, name: str, transaction_type: str) -> Optional[Category]:
        return self._first(
            select(categories)
            .where(
                categories.c.owner_id == user_id,
                func.lower(categories.c.name) == name.strip().lower(),
                categories.c.type == transaction_type,
            )
            .order_by(categories.c.id)
        )

    def find_by_name_any_type(self, user_id: str, name: str) -> list[Category]:
        """User and global categories matching a name, user-owned first."""
        stmt = (
            select(categories)
            .where(
                func.lower(categories.c.name) == name.strip().lower(),
                (categories.c.owner_id == user_id)
                | and_(categories.c.owner_id.is_(None), categories.c.is_default.is_(True)),
            )
            .order_by(categories.c.owner_id.is_(None), categories.c.id)
        )
        return self._all(stmt)

    def find_defaults(self) -> list[Category]:
        return self._all(
            select(categories)
            .where(categories.c.owner_id.is_(None), categories.c.is_default.is_(True))
            .order_by(categories.c.name)
        )

    def find_for_user(self, user_id: str) -> list[Category]:
        return self._all(select(categories).where(categories.c.owner_id == user_id).order_by(categories.c.name))

    def create(self, user_id: Optional[str], name: str, transaction_type: str, is_default: bool = False) -> Category:
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Category name required.")
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(categories)
                    .values(owner_id=user_id, name=cleaned, type=transaction_type, is_default=is_default)
                    .returning(*categories.c)
                ).mappings().first()
        except IntegrityError as exc:
            existing = self.find_by_name(user_id, cleaned, transaction_type) if user_id else None
            if existing:
                return existing
            raise PersistenceError("Failed to create category.") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to create category",
                extra={"user_id": user_id, "name": cleaned, "action": "category_create_failed", "component": "CategoryResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to create category.") from exc
        logger.info(
            "Created category",
            extra={"user_id": user_id, "name": cleaned, "type": transaction_type, "action": "category_created", "component": "CategoryResolver"},
        )
        return _to_category(row)

    def find_or_create(self, user_id: str, name: str, transaction_type: str) -> Category:
        """User category (case-insensitive), else global default, else a new user category."""
        existing = self.find_by_name(user_id, name, transaction_type)
        if existing:
            return existing
        lowered = name.strip().lower()
        for category in self.find_defaults():
            if category.name.lower() == lowered and category.type == transaction_type:
                return category
        return self.create(user_id, name, transaction_type)

    def ensure_global_defaults(self) -> int:
        """Seed the shared default categories; safe to call on every startup."""
        try:
            with self.engine.begin() as conn:
                return self.insert_defaults(conn, owner_id=None)
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to seed global categories",
                extra={"action": "category_seed_failed", "component": "CategoryResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to seed default categories.") from exc

    @staticmethod
    def insert_defaults(conn: Connection, owner_id: Optional[str], now: Optional[datetime] = None) -> int:
        owner_clause = categories.c.owner_id.is_(None) if owner_id is None else categories.c.owner_id == owner_id
        existing = {
            (row["name"].lower(), row["type"])
            for row in conn.execute(
                select(categories.c.name, categories.c.type).where(owner_clause)
            ).mappings()
        }
        missing = [
            {
                "owner_id": owner_id,
                "name": name,
                "type": category_type,
                "is_default": True,
                "created_at": now or utcnow(),
            }
            for name, category_type in DEFAULT_CATEGORIES
            if (name.lower(), category_type) not in existing
        ]
        if missing:
            conn.execute(insert(categories), missing)
        return len(missing)

    def _first(self, stmt) -> Optional[Category]:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            logger.error(
                "Category lookup failed",
                extra={"action": "category_lookup_failed", "component": "CategoryResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to look up category.") from exc
        return _to_category(row) if row else None

    def _all(self, stmt) -> list[Category]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            logger.error(
                "Category lookup failed",
                extra={"action": "category_lookup_failed", "component": "CategoryResolver"},
                exc_info=True,
            )
            raise PersistenceError("Failed to look up categories.") from exc
        return [_to_category(row) for row in rows]


def _to_category(row) -> Category:
    return Category(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        type=row["type"],
        is_default=bool(row["is_default"]),
    )
