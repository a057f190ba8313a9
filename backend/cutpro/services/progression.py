from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

LEVEL_BAND_XP = 50
UNLOCK_HEADLINE = "🎉 Conquista Desbloqueada!"

DEFAULT_CATEGORIES = (
    "Alimentação",
    "Transporte",
    "Lazer",
    "Saúde",
    "Educação",
    "Moradia",
    "Salário",
    "Outros",
)

TRANSACTION_KINDS = ("income", "expense")

# money columns are numeric(14,2)
AMOUNT_MAX_DIGITS = 14
AMOUNT_DECIMAL_PLACES = 2
AMOUNT_QUANTUM = Decimal("0.01")
AMOUNT_LIMIT = Decimal(10) ** (AMOUNT_MAX_DIGITS - AMOUNT_DECIMAL_PLACES)


@dataclass(frozen=True)
class AchievementRule:
    title: str
    description: str
    xp: int


FIRST_TRANSACTION = AchievementRule("Primeiro Passo", "Registre sua primeira transação", 10)
FIRST_GOAL = AchievementRule("Planejador", "Crie sua primeira meta", 25)


@dataclass(frozen=True)
class AchievementUnlock:
    title: str
    description: str
    xp: int
    total_xp: int
    level: int

    @property
    def headline(self) -> str:
        return UNLOCK_HEADLINE

    @property
    def message(self) -> str:
        return f"{self.title} (+{self.xp} XP)"


@dataclass
class Summary:
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    expenses_by_category: dict[str, Decimal] = field(default_factory=dict)

    def category_shares(self) -> list[tuple[str, Decimal, float]]:
        shares = []
        for category, amount in self.expenses_by_category.items():
            share = float(amount / self.total_expenses * 100) if self.total_expenses > 0 else 0.0
            shares.append((category, amount, share))
        return shares


def level_for_xp(xp: int) -> int:
    if xp < 0:
        raise ValueError("xp must be >= 0")
    return xp // LEVEL_BAND_XP + 1


def xp_progress(xp: int) -> float:
    """Percent progress inside the current level band, in [0, 100)."""
    if xp < 0:
        raise ValueError("xp must be >= 0")
    return (xp % LEVEL_BAND_XP) * 100 / LEVEL_BAND_XP


def next_level_xp(level: int) -> int:
    return level * LEVEL_BAND_XP


def goal_progress_percent(current_amount: Decimal, target_amount: Decimal) -> float:
    target = Decimal(target_amount)
    if target <= 0:
        return 0.0
    return float(Decimal(current_amount) / target * 100)


def goal_remaining(current_amount: Decimal, target_amount: Decimal) -> Decimal:
    return Decimal(target_amount) - Decimal(current_amount)


def parse_positive_amount(value: Any, field_name: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field_name} must be a number") from exc
    if not amount.is_finite():
        raise ValueError(f"{field_name} must be a finite number")
    if amount <= 0:
        raise ValueError(f"{field_name} must be greater than 0")
    if amount >= AMOUNT_LIMIT:
        raise ValueError(f"{field_name} must be less than {AMOUNT_LIMIT}")
    if amount != amount.quantize(AMOUNT_QUANTUM):
        raise ValueError(f"{field_name} must have at most {AMOUNT_DECIMAL_PLACES} decimal places")
    return amount.quantize(AMOUNT_QUANTUM)


def validate_kind(kind: str) -> str:
    v = str(kind).lower().strip()
    if v not in TRANSACTION_KINDS:
        raise ValueError("kind must be income or expense")
    return v


def signed_amount(kind: str, amount: Decimal) -> Decimal:
    return amount if kind == "income" else -amount


def summarize(transactions: Iterable[Mapping[str, Any]], total_saved: Decimal) -> Summary:
    summary = Summary(balance=Decimal(total_saved))
    for tx in transactions:
        amount = Decimal(tx["amount"])
        if tx["kind"] == "income":
            summary.total_income += amount
            continue
        summary.total_expenses += amount
        category = tx.get("category") or "Outros"
        summary.expenses_by_category[category] = summary.expenses_by_category.get(category, Decimal("0")) + amount
    return summary
