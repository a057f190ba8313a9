from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator
from uuid import UUID, uuid4

from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .auth_utils import hash_password, verify_password
from .config import settings
from .logging_config import get_logger
from .services.progression import level_for_xp, signed_amount
from .store import store

logger = get_logger(__name__)

PROFILE_COLUMNS = "user_id, xp, level, total_saved, updated_at"
TRANSACTION_COLUMNS = "id, user_id, kind, amount, category, description, occurred_at, created_at"
GOAL_COLUMNS = "id, user_id, name, target_amount, current_amount, deadline, created_at, updated_at"
ACHIEVEMENT_COLUMNS = "id, user_id, title, description, xp, unlocked_at"


def _newest_first(rows: list[dict[str, Any]], key: str) -> list[dict[str, Any]]:
    # reversed() first so rows sharing a timestamp keep newest-inserted first
    return sorted(reversed(rows), key=lambda row: row[key], reverse=True)


class Persistence:
    def get_profile(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def create_profile(self, user_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def update_profile(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def insert_transaction(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_transactions(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def count_transactions(self, user_id: UUID) -> int:
        raise NotImplementedError

    def record_transaction(self, user_id: UUID, record: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Insert a transaction and move total_saved by its signed amount in one unit of work."""
        raise NotImplementedError

    def insert_goal(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_goal(self, user_id: UUID, goal_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def count_goals(self, user_id: UUID) -> int:
        raise NotImplementedError

    def list_achievements(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def grant_achievement(self, user_id: UUID, title: str, description: str, xp: int) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        """Insert the achievement unless the title is already held, crediting xp in the same unit of work.

        Returns (achievement row or None when already unlocked, current profile).
        """
        raise NotImplementedError

    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        raise NotImplementedError

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def get_profile(self, user_id: UUID) -> dict[str, Any] | None:
        return store.profiles.get(user_id)

    def create_profile(self, user_id: UUID) -> dict[str, Any]:
        existing = store.profiles.get(user_id)
        if existing is not None:
            return existing
        row = {"user_id": user_id, "xp": 0, "level": 1, "total_saved": Decimal("0"), "updated_at": store.now()}
        store.profiles[user_id] = row
        return row

    def update_profile(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        row = store.profiles.get(user_id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"profile not found: {user_id}")
        row.update(fields)
        row["updated_at"] = store.now()
        return row

    def insert_transaction(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        now = store.now()
        row = {
            "id": store.make_id(),
            "user_id": user_id,
            "kind": record["kind"],
            "amount": record["amount"],
            "category": record.get("category"),
            "description": record.get("description"),
            "occurred_at": record.get("occurred_at") or now,
            "created_at": now,
        }
        store.transactions[row["id"]] = row
        return row

    def list_transactions(self, user_id: UUID) -> list[dict[str, Any]]:
        return _newest_first([t for t in store.transactions.values() if t["user_id"] == user_id], "occurred_at")

    def count_transactions(self, user_id: UUID) -> int:
        return sum(1 for t in store.transactions.values() if t["user_id"] == user_id)

    def record_transaction(self, user_id: UUID, record: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        profile = self.create_profile(user_id)
        row = self.insert_transaction(user_id, record)
        delta = signed_amount(row["kind"], row["amount"])
        try:
            profile = self.update_profile(user_id, {"total_saved": Decimal(profile["total_saved"]) + delta})
        except Exception:
            del store.transactions[row["id"]]
            raise
        return row, profile

    def insert_goal(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        now = store.now()
        row = {
            "id": store.make_id(),
            "user_id": user_id,
            "name": record["name"],
            "target_amount": record["target_amount"],
            "current_amount": Decimal("0"),
            "deadline": record.get("deadline"),
            "created_at": now,
            "updated_at": now,
        }
        store.goals[row["id"]] = row
        return row

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        return _newest_first([g for g in store.goals.values() if g["user_id"] == user_id], "created_at")

    def get_goal(self, user_id: UUID, goal_id: UUID) -> dict[str, Any] | None:
        row = store.goals.get(goal_id)
        if row is None or row["user_id"] != user_id:
            return None
        return row

    def count_goals(self, user_id: UUID) -> int:
        return sum(1 for g in store.goals.values() if g["user_id"] == user_id)

    def list_achievements(self, user_id: UUID) -> list[dict[str, Any]]:
        return _newest_first([a for a in store.achievements.values() if a["user_id"] == user_id], "unlocked_at")

    def grant_achievement(self, user_id: UUID, title: str, description: str, xp: int) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        profile = self.create_profile(user_id)
        if (user_id, title) in store.achievement_titles:
            return None, profile
        row = {
            "id": store.make_id(),
            "user_id": user_id,
            "title": title,
            "description": description,
            "xp": xp,
            "unlocked_at": store.now(),
        }
        store.achievements[row["id"]] = row
        store.achievement_titles.add((user_id, title))
        new_xp = int(profile["xp"]) + xp
        try:
            profile = self.update_profile(user_id, {"xp": new_xp, "level": level_for_xp(new_xp)})
        except Exception:
            del store.achievements[row["id"]]
            store.achievement_titles.discard((user_id, title))
            raise
        return row, profile

    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        for row in store.users.values():
            if row["email"] == email:
                raise HTTPException(status_code=409, detail="email already registered")
        user_id = uuid4()
        user_row = {"id": user_id, "email": email, "full_name": full_name, "created_at": store.now()}
        store.users[user_id] = user_row
        store.user_credentials[user_id] = hash_password(password)
        return user_row

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        for user_id, row in store.users.items():
            if row["email"] == email:
                stored_hash = store.user_credentials.get(user_id)
                if stored_hash and verify_password(password, stored_hash):
                    return row
                return None
        return None

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        return store.users.get(user_id)


class PostgresPersistence(Persistence):
    """Schema lives in db/migrations; apply it with backend/scripts/run_migrations.py."""

    def __init__(self, database_url: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)

    @staticmethod
    def _execute(conn: Connection, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = conn.execute(text(sql), params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("storage_error", error=exc.__class__.__name__)
            raise HTTPException(status_code=500, detail=f"postgres error: {exc.__class__.__name__}") from exc

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            return self._execute(conn, sql, params)

    def _ensure_profile(self, conn: Connection, user_id: UUID) -> dict[str, Any]:
        self._execute(
            conn,
            "insert into user_profile (user_id, xp, level, total_saved) values (:user_id, 0, 1, 0) on conflict (user_id) do nothing",
            {"user_id": user_id},
        )
        return self._execute(
            conn,
            f"select {PROFILE_COLUMNS} from user_profile where user_id = :user_id for update",
            {"user_id": user_id},
        )[0]

    def get_profile(self, user_id: UUID) -> dict[str, Any] | None:
        rows = self._run(f"select {PROFILE_COLUMNS} from user_profile where user_id = :user_id limit 1", {"user_id": user_id})
        return rows[0] if rows else None

    def create_profile(self, user_id: UUID) -> dict[str, Any]:
        with self._transaction() as conn:
            return self._ensure_profile(conn, user_id)

    def update_profile(self, user_id: UUID, fields: dict[str, Any]) -> dict[str, Any]:
        allowed = {k: v for k, v in fields.items() if k in {"xp", "level", "total_saved"}}
        if not allowed:
            raise ValueError("no updatable profile fields given")
        assignments = ", ".join(f"{col} = :{col}" for col in allowed)
        rows = self._run(
            f"update user_profile set {assignments}, updated_at = now() where user_id = :user_id returning {PROFILE_COLUMNS}",
            {**allowed, "user_id": user_id},
        )
        if not rows:
            raise HTTPException(status_code=404, detail=f"profile not found: {user_id}")
        return rows[0]

    def _insert_transaction(self, conn: Connection, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        return self._execute(
            conn,
            f"""
            insert into transactions (id, user_id, kind, amount, category, description, occurred_at)
            values (:id, :user_id, :kind, :amount, :category, :description, coalesce(:occurred_at, now()))
            returning {TRANSACTION_COLUMNS}
            """,
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "kind": record["kind"],
                "amount": record["amount"],
                "category": record.get("category"),
                "description": record.get("description"),
                "occurred_at": record.get("occurred_at"),
            },
        )[0]

    def insert_transaction(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        with self._transaction() as conn:
            return self._insert_transaction(conn, user_id, record)

    def list_transactions(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {TRANSACTION_COLUMNS} from transactions where user_id = :user_id order by occurred_at desc, created_at desc",
            {"user_id": user_id},
        )

    def count_transactions(self, user_id: UUID) -> int:
        rows = self._run("select count(*) as n from transactions where user_id = :user_id", {"user_id": user_id})
        return int(rows[0]["n"])

    def record_transaction(self, user_id: UUID, record: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        with self._transaction() as conn:
            self._ensure_profile(conn, user_id)
            row = self._insert_transaction(conn, user_id, record)
            profile = self._execute(
                conn,
                f"""
                update user_profile set total_saved = total_saved + :delta, updated_at = now()
                where user_id = :user_id
                returning {PROFILE_COLUMNS}
                """,
                {"delta": signed_amount(row["kind"], Decimal(row["amount"])), "user_id": user_id},
            )[0]
        return row, profile

    def insert_goal(self, user_id: UUID, record: dict[str, Any]) -> dict[str, Any]:
        return self._run(
            f"""
            insert into goals (id, user_id, name, target_amount, current_amount, deadline)
            values (:id, :user_id, :name, :target_amount, 0, :deadline)
            returning {GOAL_COLUMNS}
            """,
            {
                "id": str(uuid4()),
                "user_id": user_id,
                "name": record["name"],
                "target_amount": record["target_amount"],
                "deadline": record.get("deadline"),
            },
        )[0]

    def list_goals(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {GOAL_COLUMNS} from goals where user_id = :user_id order by created_at desc",
            {"user_id": user_id},
        )

    def get_goal(self, user_id: UUID, goal_id: UUID) -> dict[str, Any] | None:
        rows = self._run(
            f"select {GOAL_COLUMNS} from goals where id = :id and user_id = :user_id limit 1",
            {"id": goal_id, "user_id": user_id},
        )
        return rows[0] if rows else None

    def count_goals(self, user_id: UUID) -> int:
        rows = self._run("select count(*) as n from goals where user_id = :user_id", {"user_id": user_id})
        return int(rows[0]["n"])

    def list_achievements(self, user_id: UUID) -> list[dict[str, Any]]:
        return self._run(
            f"select {ACHIEVEMENT_COLUMNS} from achievements where user_id = :user_id order by unlocked_at desc",
            {"user_id": user_id},
        )

    def grant_achievement(self, user_id: UUID, title: str, description: str, xp: int) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        with self._transaction() as conn:
            profile = self._ensure_profile(conn, user_id)
            inserted = self._execute(
                conn,
                f"""
                insert into achievements (id, user_id, title, description, xp)
                values (:id, :user_id, :title, :description, :xp)
                on conflict (user_id, title) do nothing
                returning {ACHIEVEMENT_COLUMNS}
                """,
                {"id": str(uuid4()), "user_id": user_id, "title": title, "description": description, "xp": xp},
            )
            if not inserted:
                return None, profile
            new_xp = int(profile["xp"]) + xp
            profile = self._execute(
                conn,
                f"update user_profile set xp = :xp, level = :level, updated_at = now() where user_id = :user_id returning {PROFILE_COLUMNS}",
                {"xp": new_xp, "level": level_for_xp(new_xp), "user_id": user_id},
            )[0]
        return inserted[0], profile

    def register_user(self, email: str, password: str, full_name: str | None) -> dict[str, Any]:
        exists = self._run("select id from users where lower(email) = lower(:email) limit 1", {"email": email})
        if exists:
            raise HTTPException(status_code=409, detail="email already registered")
        user_id = uuid4()
        with self._transaction() as conn:
            self._execute(
                conn,
                "insert into users (id, email, full_name) values (:id, :email, :full_name)",
                {"id": user_id, "email": email, "full_name": full_name},
            )
            self._execute(
                conn,
                "insert into user_credentials (user_id, password_hash) values (:user_id, :password_hash)",
                {"user_id": user_id, "password_hash": hash_password(password)},
            )
        return {"id": user_id, "email": email, "full_name": full_name}

    def authenticate_user(self, email: str, password: str) -> dict[str, Any] | None:
        rows = self._run(
            """
            select u.id, u.email, u.full_name, c.password_hash
            from users u
            join user_credentials c on c.user_id = u.id
            where lower(u.email) = lower(:email)
            limit 1
            """,
            {"email": email},
        )
        if not rows:
            return None
        row = rows[0]
        if not verify_password(password, row["password_hash"]):
            return None
        return {"id": row["id"], "email": row["email"], "full_name": row["full_name"]}

    def get_user_by_id(self, user_id: UUID) -> dict[str, Any] | None:
        rows = self._run("select id, email, full_name from users where id = :id limit 1", {"id": user_id})
        return rows[0] if rows else None


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
