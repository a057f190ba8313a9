from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi import HTTPException

from cutpro.engine import ProgressionEngine
from cutpro.persistence import InMemoryPersistence

engine = ProgressionEngine(InMemoryPersistence())


def test_profile_is_created_lazily_with_defaults() -> None:
    owner = uuid4()
    assert engine.persistence.get_profile(owner) is None
    profile = engine.ensure_profile(owner)
    assert (profile["xp"], profile["level"], profile["total_saved"]) == (0, 1, Decimal("0"))
    assert engine.ensure_profile(owner) is profile


def test_first_income_unlocks_first_step() -> None:
    owner = uuid4()
    outcome = engine.record_transaction(owner, "income", 100, "Salário", "Pagamento")

    assert outcome.transaction["amount"] == Decimal("100")
    assert [u.title for u in outcome.unlocked] == ["Primeiro Passo"]
    assert outcome.unlocked[0].xp == 10
    assert outcome.profile["xp"] == 10
    assert outcome.profile["level"] == 1

    state = engine.load_state(owner)
    assert state.summary.total_income == Decimal("100")
    assert state.summary.balance == Decimal("100")
    assert [a["title"] for a in state.achievements] == ["Primeiro Passo"]


def test_second_transaction_unlocks_nothing() -> None:
    owner = uuid4()
    engine.record_transaction(owner, "expense", 5, "Lazer", "Cinema")
    outcome = engine.record_transaction(owner, "expense", 7, "Lazer", "Pipoca")
    assert outcome.unlocked == []
    assert outcome.profile["xp"] == 10


def test_transactions_move_sums_and_balance_by_amount() -> None:
    owner = uuid4()
    engine.record_transaction(owner, "income", Decimal("200"), "Salário", "Pagamento")
    engine.record_transaction(owner, "expense", Decimal("50"), "Alimentação", "Mercado")
    before = engine.summary(owner)
    engine.record_transaction(owner, "expense", Decimal("30"), "Transporte", "Ônibus")
    after = engine.summary(owner)

    assert after.total_expenses - before.total_expenses == Decimal("30")
    assert after.total_income == before.total_income
    assert before.balance - after.balance == Decimal("30")
    assert after.total_income == Decimal("200")
    assert after.total_expenses == Decimal("80")
    assert after.balance == Decimal("120")
    assert after.expenses_by_category == {"Transporte": Decimal("30"), "Alimentação": Decimal("50")}


def test_invalid_amount_is_rejected_before_any_write() -> None:
    owner = uuid4()
    for bad in ("abc", float("nan"), 0, -10, "0.001", "1000000000000"):
        with pytest.raises(ValueError):
            engine.record_transaction(owner, "income", bad, "Outros", "x")
    with pytest.raises(ValueError):
        engine.record_transaction(owner, "loan", 10, "Outros", "x")
    assert engine.persistence.count_transactions(owner) == 0
    assert engine.persistence.get_profile(owner) is None


def test_only_first_goal_unlocks_planner() -> None:
    owner = uuid4()
    first = engine.create_goal(owner, "Viagem", 500)
    second = engine.create_goal(owner, "Carro", 1000)

    assert [u.title for u in first.unlocked] == ["Planejador"]
    assert first.profile["xp"] == 25
    assert second.unlocked == []
    assert second.profile["xp"] == 25
    assert [g["name"] for g in engine.persistence.list_goals(owner)] == ["Carro", "Viagem"]


def test_goal_round_trip_starts_at_zero() -> None:
    owner = uuid4()
    outcome = engine.create_goal(owner, "Reserva", "200")
    stored = engine.persistence.get_goal(owner, outcome.goal["id"])
    assert stored["current_amount"] == Decimal("0")
    assert stored["target_amount"] == Decimal("200")


def test_goal_requires_positive_target_and_name() -> None:
    owner = uuid4()
    with pytest.raises(ValueError):
        engine.create_goal(owner, "Reserva", 0)
    with pytest.raises(ValueError):
        engine.create_goal(owner, "   ", 100)
    assert engine.persistence.count_goals(owner) == 0


def test_unlocking_same_title_twice_is_a_no_op() -> None:
    owner = uuid4()
    first = engine.unlock_achievement(owner, "Poupador", "Guarde dinheiro", 30)
    second = engine.unlock_achievement(owner, "Poupador", "Guarde dinheiro", 30)

    assert first is not None and first.total_xp == 30
    assert second is None
    assert len(engine.persistence.list_achievements(owner)) == 1
    assert engine.ensure_profile(owner)["xp"] == 30


def test_level_tracks_xp_after_every_unlock() -> None:
    owner = uuid4()
    for idx, reward in enumerate([10, 25, 15, 49, 1, 50, 7, 93]):
        unlock = engine.unlock_achievement(owner, f"Badge {idx}", "test", reward)
        profile = engine.ensure_profile(owner)
        assert unlock is not None
        assert profile["level"] == profile["xp"] // 50 + 1
        assert unlock.level == profile["level"]
    assert engine.ensure_profile(owner)["xp"] == 250
    assert engine.ensure_profile(owner)["level"] == 6


def test_unlock_validates_reward() -> None:
    owner = uuid4()
    with pytest.raises(ValueError):
        engine.unlock_achievement(owner, "Zero", "none", 0)
    with pytest.raises(ValueError):
        engine.unlock_achievement(owner, "", "none", 5)


def test_storage_guard_keeps_titles_unique() -> None:
    persistence = InMemoryPersistence()
    owner = uuid4()
    row, profile = persistence.grant_achievement(owner, "Único", "d", 20)
    again, profile_again = persistence.grant_achievement(owner, "Único", "d", 20)
    assert row is not None
    assert again is None
    assert profile_again["xp"] == 20


class FailingPersistence(InMemoryPersistence):
    def record_transaction(self, user_id, record):
        raise HTTPException(status_code=500, detail="postgres error: OperationalError")


def test_storage_failure_leaves_profile_untouched() -> None:
    failing = ProgressionEngine(FailingPersistence())
    owner = uuid4()
    with pytest.raises(HTTPException):
        failing.record_transaction(owner, "income", 50, "Salário", "x")
    profile = failing.ensure_profile(owner)
    assert profile["total_saved"] == Decimal("0")
    assert profile["xp"] == 0
    assert failing.persistence.list_achievements(owner) == []


class ProfileWriteFails(InMemoryPersistence):
    def update_profile(self, user_id, fields):
        raise HTTPException(status_code=500, detail="postgres error: OperationalError")


def test_failed_balance_update_discards_the_transaction() -> None:
    broken = ProgressionEngine(ProfileWriteFails())
    owner = uuid4()
    with pytest.raises(HTTPException):
        broken.record_transaction(owner, "income", 50, "Salário", "x")

    assert broken.persistence.list_transactions(owner) == []
    assert broken.persistence.count_transactions(owner) == 0
    assert broken.ensure_profile(owner)["total_saved"] == Decimal("0")


def test_failed_xp_credit_discards_the_achievement() -> None:
    broken = ProgressionEngine(ProfileWriteFails())
    owner = uuid4()
    with pytest.raises(HTTPException):
        broken.unlock_achievement(owner, "Poupador", "Guarde dinheiro", 15)
    assert broken.persistence.list_achievements(owner) == []

    unlock = engine.unlock_achievement(owner, "Poupador", "Guarde dinheiro", 15)
    assert unlock is not None
    assert unlock.total_xp == 15
