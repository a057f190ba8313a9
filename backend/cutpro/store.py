from datetime import datetime, timezone
from uuid import UUID, uuid4


class InMemoryStore:
    def __init__(self) -> None:
        self.users: dict[UUID, dict] = {}
        self.user_credentials: dict[UUID, str] = {}
        self.profiles: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.goals: dict[UUID, dict] = {}
        self.achievements: dict[UUID, dict] = {}
        # (owner id, title) pairs; mirrors the unique index on achievements
        self.achievement_titles: set[tuple[UUID, str]] = set()

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)


store = InMemoryStore()
