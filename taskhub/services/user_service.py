import logging

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskhub.cache import keys
from taskhub.cache.decorators import async_cached, async_cached_expire
from taskhub.cache.layer import CacheLayer
from taskhub.core.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
)
from taskhub.core.security import get_password_hash, verify_password
from taskhub.models import (
    PageInfo,
    Task,
    User,
    UserCreate,
    UserPage,
    UserResponse,
    UserStatus,
    UserUpdate,
    get_utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class UserService:
    def __init__(self, db: AsyncSession, cache: CacheLayer):
        self.db = db
        self.cache = cache

    async def _find_user(self, *conditions) -> User | None:
        try:
            result = await self.db.exec(
                select(User).where(*conditions, col(User.deleted_at).is_(None))
            )
            return result.first()
        except SQLAlchemyError as exc:
            logger.error("User lookup failed: %s", exc)
            raise InternalError("failed to look up user") from exc

    async def _require_user(self, user_id: int) -> User:
        user = await self._find_user(User.id == user_id)
        if user is None:
            raise NotFoundError(f"user {user_id} not found")
        return user

    async def create_user(self, user_data: UserCreate) -> UserResponse:
        existing = await self._find_user(
            or_(col(User.username) == user_data.username, col(User.email) == user_data.email)
        )
        if existing is not None:
            if existing.username == user_data.username:
                raise ConflictError(f"username {user_data.username} is already registered")
            raise ConflictError(f"email {user_data.email} is already registered")

        # bcrypt is CPU-bound
        hashed = await run_in_threadpool(get_password_hash, user_data.password)
        user = User(
            username=user_data.username,
            email=user_data.email,
            hashed_password=hashed,
            nickname=user_data.nickname,
            phone=user_data.phone,
            status=UserStatus.ENABLED,
        )
        try:
            self.db.add(user)
            await self.db.commit()
            await self.db.refresh(user)
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError("username or email is already registered") from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Creating user %s failed: %s", user_data.username, exc)
            raise InternalError("failed to create user") from exc

        created = UserResponse.model_validate(user)
        logger.info("User %s registered as %s", created.id, created.username)
        await self.cache.set(keys.user(created.id), created.model_dump(mode="json"), ttl=keys.USER_TTL)
        return created

    @async_cached(lambda user_id, *_, **__: keys.user(user_id), UserResponse, ttl=keys.USER_TTL)
    async def get_user(self, user_id: int) -> UserResponse:
        return UserResponse.model_validate(await self._require_user(user_id))

    async def get_user_by_username(self, username: str) -> UserResponse:
        user = await self._find_user(User.username == username)
        if user is None:
            raise NotFoundError(f"user {username} not found")
        return UserResponse.model_validate(user)

    async def list_users(self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> UserPage:
        page = max(page, 1)
        page_size = page_size if page_size > 0 else DEFAULT_PAGE_SIZE
        page_size = min(page_size, MAX_PAGE_SIZE)

        live = col(User.deleted_at).is_(None)
        try:
            total = (await self.db.exec(select(func.count(col(User.id))).where(live))).one()
            users = (
                await self.db.exec(
                    select(User)
                    .where(live)
                    .order_by(col(User.id))
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).all()
        except SQLAlchemyError as exc:
            logger.error("Listing users failed: %s", exc)
            raise InternalError("failed to list users") from exc

        return UserPage(
            items=[UserResponse.model_validate(u) for u in users],
            page_info=PageInfo(page=page, page_size=page_size, total=total),
        )

    @async_cached_expire(lambda user_id, *_, **__: keys.user(user_id))
    async def update_user(self, user_id: int, user_data: UserUpdate) -> UserResponse:
        user = await self._require_user(user_id)

        changes = {k: v for k, v in user_data.model_dump(exclude_unset=True).items() if v is not None}
        try:
            for field, value in changes.items():
                setattr(user, field, value)
            user.updated_at = get_utc_now()
            await self.db.commit()
            await self.db.refresh(user)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Updating user %s failed: %s", user_id, exc)
            raise InternalError("failed to update user") from exc

        return UserResponse.model_validate(user)

    @async_cached_expire(lambda user_id, *_, **__: keys.user(user_id))
    async def record_login(self, user_id: int) -> UserResponse:
        user = await self._require_user(user_id)
        try:
            user.last_login_at = get_utc_now()
            await self.db.commit()
            await self.db.refresh(user)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Recording login for user %s failed: %s", user_id, exc)
            raise InternalError("failed to record login") from exc

        return UserResponse.model_validate(user)

    async def authenticate(self, username: str, password: str) -> UserResponse:
        user = await self._find_user(User.username == username)
        if user is None:
            raise NotFoundError(f"user {username} not found")
        if not await run_in_threadpool(verify_password, password, user.hashed_password):
            raise PermissionDeniedError("incorrect username or password")
        if user.status != UserStatus.ENABLED:
            raise PermissionDeniedError(f"user {username} is disabled")
        return await self.record_login(user.id)

    async def delete_user(self, user_id: int) -> None:
        """Soft-delete the user together with every task they own."""
        user = await self._require_user(user_id)

        try:
            now = get_utc_now()
            tasks = (
                await self.db.exec(
                    select(Task).where(Task.user_id == user_id, col(Task.deleted_at).is_(None))
                )
            ).all()
            for task in tasks:
                task.deleted_at = now
            user.deleted_at = now
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Deleting user %s failed: %s", user_id, exc)
            raise InternalError("failed to delete user") from exc

        logger.info("User %s deleted along with %s tasks", user_id, len(tasks))

        await self.cache.delete(keys.user(user_id))
        await self.cache.delete(keys.user_tasks(user_id))
        for task in tasks:
            await self.cache.delete(keys.task(task.id))
        await self.cache.delete_pattern(keys.task_count_pattern(user_id))
