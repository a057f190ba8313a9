import time
from typing import Any
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .engine import ProgressionEngine
from .identity import (
    ANONYMOUS_COOKIE_NAME,
    ANONYMOUS_HEADER_NAME,
    SESSION_COOKIE_NAME,
    Identity,
    create_session,
    drop_session,
    resolve_identity,
    token_from_header,
)
from .logging_config import configure_logging, get_logger
from .persistence import get_persistence
from .schemas import (
    AchievementResponse,
    AchievementUnlockedResponse,
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    AuthResponse,
    CategoryExpense,
    CategoryListResponse,
    GoalCreate,
    GoalCreatedResponse,
    GoalResponse,
    HealthResponse,
    IdentityResponse,
    LoginRequest,
    ProfileResponse,
    RegisterRequest,
    StateResponse,
    SummaryResponse,
    TransactionCreate,
    TransactionRecordedResponse,
    TransactionResponse,
)
from .services.progression import (
    DEFAULT_CATEGORIES,
    AchievementUnlock,
    Summary,
    goal_progress_percent,
    goal_remaining,
    next_level_xp,
    xp_progress,
)

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="CutPro API",
    version="0.1.0",
    description="Personal finance tracking with savings goals, XP levels and achievements.",
)
persistence = get_persistence()
engine = ProgressionEngine(persistence)
ANONYMOUS_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=422, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


def _identity(request: Request, response: Response) -> Identity:
    identity = resolve_identity(
        authorization=request.headers.get("Authorization"),
        session_token=request.cookies.get(SESSION_COOKIE_NAME),
        owner_header=request.headers.get(ANONYMOUS_HEADER_NAME),
        owner_cookie=request.cookies.get(ANONYMOUS_COOKIE_NAME),
        is_registered=lambda owner_id: persistence.get_user_by_id(owner_id) is not None,
    )
    if identity.issued:
        response.set_cookie(
            ANONYMOUS_COOKIE_NAME,
            str(identity.owner_id),
            httponly=True,
            samesite="lax",
            max_age=ANONYMOUS_COOKIE_MAX_AGE,
        )
    return identity


def _identity_response(identity: Identity) -> IdentityResponse:
    email = None
    if identity.is_authenticated:
        user = persistence.get_user_by_id(identity.owner_id)
        email = user["email"] if user else None
    return IdentityResponse(ownerId=identity.owner_id, kind=identity.kind.value, email=email)


def _profile_response(row: dict[str, Any]) -> ProfileResponse:
    xp = int(row["xp"])
    level = int(row["level"])
    return ProfileResponse(
        ownerId=row["user_id"],
        xp=xp,
        level=level,
        totalSaved=row["total_saved"],
        xpProgress=xp_progress(xp),
        nextLevelXp=next_level_xp(level),
        updatedAt=row.get("updated_at"),
    )


def _transaction_response(row: dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        kind=row["kind"],
        amount=row["amount"],
        category=row.get("category"),
        description=row.get("description"),
        occurredAt=row["occurred_at"],
        createdAt=row["created_at"],
    )


def _goal_response(row: dict[str, Any]) -> GoalResponse:
    return GoalResponse(
        id=row["id"],
        name=row["name"],
        targetAmount=row["target_amount"],
        currentAmount=row["current_amount"],
        remainingAmount=goal_remaining(row["current_amount"], row["target_amount"]),
        progressPercent=goal_progress_percent(row["current_amount"], row["target_amount"]),
        deadline=row.get("deadline"),
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


def _achievement_response(row: dict[str, Any]) -> AchievementResponse:
    return AchievementResponse(
        id=row["id"],
        title=row["title"],
        description=row.get("description"),
        xp=row["xp"],
        unlockedAt=row["unlocked_at"],
    )


def _unlock_response(unlock: AchievementUnlock) -> AchievementUnlockedResponse:
    return AchievementUnlockedResponse(
        title=unlock.title,
        description=unlock.description,
        xp=unlock.xp,
        totalXp=unlock.total_xp,
        level=unlock.level,
        headline=unlock.headline,
        message=unlock.message,
    )


def _summary_response(summary: Summary) -> SummaryResponse:
    return SummaryResponse(
        totalIncome=summary.total_income,
        totalExpenses=summary.total_expenses,
        balance=summary.balance,
        expensesByCategory=[
            CategoryExpense(category=category, amount=amount, sharePercent=share)
            for category, amount, share in summary.category_shares()
        ],
    )


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.post("/api/v1/auth/register", response_model=AuthResponse, status_code=201)
async def auth_register(payload: RegisterRequest, response: Response) -> AuthResponse:
    user = persistence.register_user(payload.email, payload.password, payload.fullName)
    token = create_session(user["id"])
    response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    logger.info("user_registered", user_id=str(user["id"]))
    return AuthResponse(token=token, userId=user["id"], email=user["email"], fullName=user.get("full_name"))


@app.post("/api/v1/auth/login", response_model=AuthResponse)
async def auth_login(payload: LoginRequest, response: Response) -> AuthResponse:
    user = persistence.authenticate_user(payload.email, payload.password)
    if user is None:
        logger.warning("login_failed")
        raise HTTPException(status_code=401, detail="invalid email or password")
    token = create_session(user["id"])
    response.set_cookie(SESSION_COOKIE_NAME, token, httponly=True, samesite="lax", secure=False)
    return AuthResponse(token=token, userId=user["id"], email=user["email"], fullName=user.get("full_name"))


@app.post("/api/v1/auth/logout")
async def auth_logout(request: Request, response: Response) -> dict[str, bool]:
    authorization = request.headers.get("Authorization")
    token = token_from_header(authorization) if authorization else request.cookies.get(SESSION_COOKIE_NAME)
    dropped = drop_session(token)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"ok": True, "dropped": dropped}


@app.get("/api/v1/me", response_model=IdentityResponse)
async def get_identity(request: Request, response: Response) -> IdentityResponse:
    return _identity_response(_identity(request, response))


@app.get("/api/v1/state", response_model=StateResponse)
async def get_state(request: Request, response: Response) -> StateResponse:
    identity = _identity(request, response)
    state = engine.load_state(identity.owner_id)
    return StateResponse(
        identity=_identity_response(identity),
        profile=_profile_response(state.profile),
        summary=_summary_response(state.summary),
        transactions=[_transaction_response(row) for row in state.transactions],
        goals=[_goal_response(row) for row in state.goals],
        achievements=[_achievement_response(row) for row in state.achievements],
    )


@app.get("/api/v1/profile", response_model=ProfileResponse)
async def get_profile(request: Request, response: Response) -> ProfileResponse:
    identity = _identity(request, response)
    return _profile_response(engine.ensure_profile(identity.owner_id))


@app.get("/api/v1/summary", response_model=SummaryResponse)
async def get_summary(request: Request, response: Response) -> SummaryResponse:
    identity = _identity(request, response)
    return _summary_response(engine.summary(identity.owner_id))


@app.post("/api/v1/transactions", response_model=TransactionRecordedResponse, status_code=201)
async def create_transaction(payload: TransactionCreate, request: Request, response: Response) -> TransactionRecordedResponse:
    identity = _identity(request, response)
    outcome = engine.record_transaction(
        identity.owner_id,
        kind=payload.kind.value,
        amount=payload.amount,
        category=payload.category,
        description=payload.description,
        occurred_at=payload.occurredAt,
    )
    return TransactionRecordedResponse(
        transaction=_transaction_response(outcome.transaction),
        profile=_profile_response(outcome.profile),
        unlocked=[_unlock_response(u) for u in outcome.unlocked],
    )


@app.get("/api/v1/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    request: Request,
    response: Response,
    limit: int | None = Query(default=None, ge=1, le=500),
) -> list[TransactionResponse]:
    identity = _identity(request, response)
    rows = persistence.list_transactions(identity.owner_id)
    if limit is not None:
        rows = rows[:limit]
    return [_transaction_response(row) for row in rows]


@app.post("/api/v1/goals", response_model=GoalCreatedResponse, status_code=201)
async def create_goal(payload: GoalCreate, request: Request, response: Response) -> GoalCreatedResponse:
    identity = _identity(request, response)
    outcome = engine.create_goal(identity.owner_id, payload.name, payload.targetAmount, payload.deadline)
    return GoalCreatedResponse(
        goal=_goal_response(outcome.goal),
        profile=_profile_response(outcome.profile),
        unlocked=[_unlock_response(u) for u in outcome.unlocked],
    )


@app.get("/api/v1/goals", response_model=list[GoalResponse])
async def list_goals(request: Request, response: Response) -> list[GoalResponse]:
    identity = _identity(request, response)
    return [_goal_response(row) for row in persistence.list_goals(identity.owner_id)]


@app.get("/api/v1/goals/{goal_id}", response_model=GoalResponse)
async def get_goal(goal_id: UUID, request: Request, response: Response) -> GoalResponse:
    identity = _identity(request, response)
    row = persistence.get_goal(identity.owner_id, goal_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"goal not found: {goal_id}")
    return _goal_response(row)


@app.get("/api/v1/achievements", response_model=list[AchievementResponse])
async def list_achievements(request: Request, response: Response) -> list[AchievementResponse]:
    identity = _identity(request, response)
    return [_achievement_response(row) for row in persistence.list_achievements(identity.owner_id)]


@app.get("/api/v1/categories", response_model=CategoryListResponse)
async def list_categories() -> CategoryListResponse:
    return CategoryListResponse(categories=list(DEFAULT_CATEGORIES))
