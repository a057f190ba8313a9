from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=128)
    fullName: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        v = value.strip().lower()
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("invalid email format")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthResponse(BaseModel):
    token: str
    userId: UUID
    email: str
    fullName: Optional[str] = None


class IdentityResponse(BaseModel):
    ownerId: UUID
    kind: str
    email: Optional[str] = None


class TransactionCreate(BaseModel):
    kind: TransactionKind = TransactionKind.expense
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2, allow_inf_nan=False)
    category: str = Field(default="Outros", min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    occurredAt: Optional[datetime] = None

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, value: object) -> object:
        if isinstance(value, str):
            return value.lower().strip()
        return value

    @field_validator("category")
    @classmethod
    def strip_category(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("category must not be blank")
        return v


class TransactionResponse(BaseModel):
    id: UUID
    kind: TransactionKind
    amount: Decimal
    category: Optional[str] = None
    description: Optional[str] = None
    occurredAt: datetime
    createdAt: datetime


class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    targetAmount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2, allow_inf_nan=False)
    deadline: Optional[date] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class GoalResponse(BaseModel):
    id: UUID
    name: str
    targetAmount: Decimal
    currentAmount: Decimal
    remainingAmount: Decimal
    progressPercent: float
    deadline: Optional[date] = None
    createdAt: datetime
    updatedAt: datetime


class AchievementResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    xp: int
    unlockedAt: datetime


class AchievementUnlockedResponse(BaseModel):
    title: str
    description: str
    xp: int
    totalXp: int
    level: int
    headline: str
    message: str


class ProfileResponse(BaseModel):
    ownerId: UUID
    xp: int
    level: int
    totalSaved: Decimal
    xpProgress: float
    nextLevelXp: int
    updatedAt: Optional[datetime] = None


class CategoryExpense(BaseModel):
    category: str
    amount: Decimal
    sharePercent: float


class SummaryResponse(BaseModel):
    totalIncome: Decimal
    totalExpenses: Decimal
    balance: Decimal
    expensesByCategory: list[CategoryExpense]


class TransactionRecordedResponse(BaseModel):
    transaction: TransactionResponse
    profile: ProfileResponse
    unlocked: list[AchievementUnlockedResponse] = Field(default_factory=list)


class GoalCreatedResponse(BaseModel):
    goal: GoalResponse
    profile: ProfileResponse
    unlocked: list[AchievementUnlockedResponse] = Field(default_factory=list)


class StateResponse(BaseModel):
    identity: IdentityResponse
    profile: ProfileResponse
    summary: SummaryResponse
    transactions: list[TransactionResponse]
    goals: list[GoalResponse]
    achievements: list[AchievementResponse]


class CategoryListResponse(BaseModel):
    categories: list[str]
