"""Progression engine.

Applies the owner-facing operations (record a transaction, create a goal,
unlock an achievement) against a ``Persistence`` backend and keeps the
profile consistent with them:

- ``total_saved`` moves by +amount for income and -amount for expenses, in
  the same storage unit of work as the insert;
- ``xp`` only grows, through achievements, and ``level`` is always
  ``xp // 50 + 1``;
- an achievement title is granted at most once per owner.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

from .logging_config import get_logger
from .persistence import Persistence
from .services.progression import (
    FIRST_GOAL,
    FIRST_TRANSACTION,
    AchievementRule,
    AchievementUnlock,
    Summary,
    parse_positive_amount,
    summarize,
    validate_kind,
)

logger = get_logger(__name__)


@dataclass
class TransactionOutcome:
    transaction: dict[str, Any]
    profile: dict[str, Any]
    unlocked: list[AchievementUnlock] = field(default_factory=list)


@dataclass
class GoalOutcome:
    goal: dict[str, Any]
    profile: dict[str, Any]
    unlocked: list[AchievementUnlock] = field(default_factory=list)


@dataclass
class OwnerState:
    profile: dict[str, Any]
    transactions: list[dict[str, Any]]
    goals: list[dict[str, Any]]
    achievements: list[dict[str, Any]]
    summary: Summary


class ProgressionEngine:
    def __init__(self, persistence: Persistence) -> None:
        self.persistence = persistence

    def ensure_profile(self, owner_id: UUID) -> dict[str, Any]:
        profile = self.persistence.get_profile(owner_id)
        if profile is None:
            profile = self.persistence.create_profile(owner_id)
            logger.info("profile_created", owner_id=str(owner_id))
        return profile

    def load_state(self, owner_id: UUID) -> OwnerState:
        profile = self.ensure_profile(owner_id)
        transactions = self.persistence.list_transactions(owner_id)
        return OwnerState(
            profile=profile,
            transactions=transactions,
            goals=self.persistence.list_goals(owner_id),
            achievements=self.persistence.list_achievements(owner_id),
            summary=summarize(transactions, profile["total_saved"]),
        )

    def summary(self, owner_id: UUID) -> Summary:
        profile = self.ensure_profile(owner_id)
        return summarize(self.persistence.list_transactions(owner_id), profile["total_saved"])

    def record_transaction(
        self,
        owner_id: UUID,
        kind: str,
        amount: Any,
        category: str | None,
        description: str | None,
        occurred_at: datetime | None = None,
    ) -> TransactionOutcome:
        if occurred_at is not None and occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        record = {
            "kind": validate_kind(kind),
            "amount": parse_positive_amount(amount),
            "category": category.strip() if category and category.strip() else None,
            "description": description,
            "occurred_at": occurred_at,
        }
        self.ensure_profile(owner_id)
        previous_count = self.persistence.count_transactions(owner_id)
        row, profile = self.persistence.record_transaction(owner_id, record)
        logger.info(
            "transaction_recorded",
            owner_id=str(owner_id),
            transaction_id=str(row["id"]),
            kind=row["kind"],
            amount=str(row["amount"]),
            total_saved=str(profile["total_saved"]),
        )
        outcome = TransactionOutcome(transaction=row, profile=profile)
        if previous_count == 0:
            self._apply_rule(owner_id, FIRST_TRANSACTION, outcome)
        return outcome

    def create_goal(
        self,
        owner_id: UUID,
        name: str,
        target_amount: Any,
        deadline: date | None = None,
    ) -> GoalOutcome:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("name must not be empty")
        record = {
            "name": clean_name,
            "target_amount": parse_positive_amount(target_amount, "targetAmount"),
            "deadline": deadline,
        }
        profile = self.ensure_profile(owner_id)
        previous_count = self.persistence.count_goals(owner_id)
        row = self.persistence.insert_goal(owner_id, record)
        logger.info("goal_created", owner_id=str(owner_id), goal_id=str(row["id"]), target_amount=str(row["target_amount"]))
        outcome = GoalOutcome(goal=row, profile=profile)
        if previous_count == 0:
            self._apply_rule(owner_id, FIRST_GOAL, outcome)
        return outcome

    def unlock_achievement(self, owner_id: UUID, title: str, description: str, xp_reward: int) -> AchievementUnlock | None:
        """Grant ``title`` to the owner once. Returns None when it was already unlocked."""
        unlock, _ = self._grant(owner_id, title, description, xp_reward)
        return unlock

    def _apply_rule(self, owner_id: UUID, rule: AchievementRule, outcome: TransactionOutcome | GoalOutcome) -> None:
        unlock, profile = self._grant(owner_id, rule.title, rule.description, rule.xp)
        outcome.profile = profile
        if unlock is not None:
            outcome.unlocked.append(unlock)

    def _grant(self, owner_id: UUID, title: str, description: str, xp_reward: int) -> tuple[AchievementUnlock | None, dict[str, Any]]:
        if not title or not title.strip():
            raise ValueError("title must not be empty")
        if isinstance(xp_reward, bool) or not isinstance(xp_reward, int) or xp_reward <= 0:
            raise ValueError("xp reward must be a positive integer")

        held = self.persistence.list_achievements(owner_id)
        if any(a["title"] == title for a in held):
            return None, self.ensure_profile(owner_id)

        row, profile = self.persistence.grant_achievement(owner_id, title, description, xp_reward)
        if row is None:
            # inserted concurrently by another request; the unique index kept one
            return None, profile

        unlock = AchievementUnlock(
            title=row["title"],
            description=row["description"],
            xp=int(row["xp"]),
            total_xp=int(profile["xp"]),
            level=int(profile["level"]),
        )
        logger.info(
            "achievement_unlocked",
            owner_id=str(owner_id),
            title=unlock.title,
            xp=unlock.xp,
            total_xp=unlock.total_xp,
            level=unlock.level,
        )
        return unlock, profile
