import re
from datetime import datetime, timezone
from enum import IntEnum

from pydantic import EmailStr, field_validator
from sqlalchemy import DateTime, SmallInteger, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Relationship, SQLModel

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class TaskStatus(IntEnum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    CANCELLED = 3

    @property
    def key(self) -> str:
        """Name used in cache keys and stats, e.g. ``in_progress``."""
        return self.name.lower()


class TaskPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4


class UserStatus(IntEnum):
    DISABLED = 0
    ENABLED = 1


class IntEnumType(TypeDecorator):
    """Stores an IntEnum as a small integer and loads it back as the enum."""

    impl = SmallInteger
    cache_ok = True

    def __init__(self, enum_cls, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        return None if value is None else int(value)

    def process_result_value(self, value, dialect):
        return None if value is None else self.enum_cls(value)


# ── Tables ──────────────────────────────────────────────


class TaskTagLink(SQLModel, table=True):
    """Join table between tasks and tags"""

    __tablename__ = "task_tags"

    task_id: int | None = Field(default=None, foreign_key="tasks.id", primary_key=True)
    tag_id: int | None = Field(default=None, foreign_key="tags.id", primary_key=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(max_length=50, unique=True, index=True)
    email: str = Field(max_length=100, unique=True, index=True)
    hashed_password: str = Field(max_length=255)
    nickname: str | None = Field(default=None, max_length=50)
    avatar: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=20)
    status: UserStatus = Field(
        default=UserStatus.ENABLED, sa_type=IntEnumType(UserStatus), nullable=False
    )
    last_login_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    created_at: datetime = Field(
        default_factory=get_utc_now, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    deleted_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True, index=True
    )

    tasks: list["Task"] = Relationship(back_populates="user")


class Tag(SQLModel, table=True):
    __tablename__ = "tags"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=50, unique=True, index=True)
    color: str | None = Field(default=None, max_length=7)
    created_at: datetime = Field(
        default_factory=get_utc_now, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )

    tasks: list["Task"] = Relationship(back_populates="tags", link_model=TaskTagLink)


class Task(SQLModel, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(max_length=200)
    description: str | None = Field(default=None, sa_type=Text, nullable=True)
    status: TaskStatus = Field(
        default=TaskStatus.PENDING,
        sa_type=IntEnumType(TaskStatus),
        nullable=False,
        index=True,
    )
    priority: TaskPriority = Field(
        default=TaskPriority.MEDIUM, sa_type=IntEnumType(TaskPriority), nullable=False
    )
    start_time: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    end_time: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    due_date: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    user_id: int = Field(foreign_key="users.id", index=True)
    created_at: datetime = Field(
        default_factory=get_utc_now, sa_type=DateTime(timezone=True), nullable=False
    )
    updated_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True
    )
    deleted_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True), nullable=True, index=True
    )

    user: User | None = Relationship(back_populates="tasks")
    tags: list[Tag] = Relationship(back_populates="tasks", link_model=TaskTagLink)


# ── User schemas ────────────────────────────────────────


class UserCreate(SQLModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    # bcrypt only looks at the first 72 bytes
    password: str = Field(min_length=6, max_length=72)
    nickname: str | None = Field(default=None, max_length=50)
    phone: str | None = Field(default=None, max_length=20)

    @field_validator("email")
    @classmethod
    def email_fits_column(cls, v: str) -> str:
        if len(v) > 100:
            raise ValueError("email must be at most 100 characters")
        return v


class UserUpdate(SQLModel):
    """Schema for updating a user - all fields optional"""

    nickname: str | None = Field(default=None, max_length=50)
    avatar: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=20)


class UserLogin(SQLModel):
    username: str
    password: str


class UserResponse(SQLModel):
    """User as returned to clients; never includes the password hash"""

    id: int
    username: str
    email: str
    nickname: str | None = None
    avatar: str | None = None
    phone: str | None = None
    status: UserStatus
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None


# ── Tag schemas ─────────────────────────────────────────


class TagCreate(SQLModel):
    name: str = Field(min_length=1, max_length=50)
    color: str | None = Field(default=None, max_length=7)

    @field_validator("color")
    @classmethod
    def color_is_hex(cls, v: str | None) -> str | None:
        if v is not None and not HEX_COLOR.match(v):
            raise ValueError("color must look like #RRGGBB")
        return v


class TagResponse(SQLModel):
    id: int
    name: str
    color: str | None = None


# ── Task schemas ────────────────────────────────────────


class TaskCreate(SQLModel):
    """Schema for creating a task; new tasks always start as pending"""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime | None = None
    tag_ids: list[int] = Field(default_factory=list)


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional

    ``None`` means "leave unchanged". ``tag_ids=[]`` removes every tag while
    an absent ``tag_ids`` keeps them.
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    due_date: datetime | None = None
    tag_ids: list[int] | None = None


class TaskQuery(SQLModel):
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    tag_id: int | None = None
    user_id: int | None = None
    keyword: str | None = None
    due_after: datetime | None = None
    due_before: datetime | None = None
    page: int = 1
    page_size: int = 10


class TaskResponse(SQLModel):
    """Schema for task responses"""

    id: int
    title: str
    description: str | None = None
    status: TaskStatus
    priority: TaskPriority
    start_time: datetime | None = None
    end_time: datetime | None = None
    due_date: datetime | None = None
    user_id: int
    created_at: datetime
    updated_at: datetime | None = None
    user: UserResponse | None = None
    tags: list[TagResponse] = []


# ── Pagination ──────────────────────────────────────────


class PageInfo(SQLModel):
    page: int
    page_size: int
    total: int


class TaskPage(SQLModel):
    items: list[TaskResponse]
    page_info: PageInfo


class UserPage(SQLModel):
    items: list[UserResponse]
    page_info: PageInfo
