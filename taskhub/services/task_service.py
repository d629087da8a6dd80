import logging
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskhub.cache import keys
from taskhub.cache.decorators import async_cached
from taskhub.cache.layer import CacheLayer
from taskhub.core.errors import (
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from taskhub.models import (
    PageInfo,
    Tag,
    Task,
    TaskCreate,
    TaskPage,
    TaskPriority,
    TaskQuery,
    TaskResponse,
    TaskStatus,
    TaskTagLink,
    TaskUpdate,
    User,
    get_utc_now,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _check_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise InvalidArgumentError("title must not be empty")
    if len(title) > TITLE_MAX_LENGTH:
        raise InvalidArgumentError(f"title must be at most {TITLE_MAX_LENGTH} characters")
    return title


def _check_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(str(int(m)) for m in enum_cls)
        raise InvalidArgumentError(f"{field} must be one of {allowed}, got {value!r}") from None


def apply_task_filters(stmt, query: TaskQuery):
    """
    AND-compose the optional predicates of ``query`` onto ``stmt``.

    Each predicate is added only when its field is set; soft-deleted tasks
    are always excluded.
    """
    stmt = stmt.where(col(Task.deleted_at).is_(None))

    if query.status is not None:
        stmt = stmt.where(col(Task.status) == query.status)
    if query.priority is not None:
        stmt = stmt.where(col(Task.priority) == query.priority)
    if query.user_id is not None:
        stmt = stmt.where(col(Task.user_id) == query.user_id)
    if query.due_after is not None:
        stmt = stmt.where(col(Task.due_date) >= query.due_after)
    if query.due_before is not None:
        stmt = stmt.where(col(Task.due_date) <= query.due_before)
    if query.tag_id is not None:
        stmt = stmt.join(TaskTagLink, col(TaskTagLink.task_id) == col(Task.id)).where(
            col(TaskTagLink.tag_id) == query.tag_id
        )
    if query.keyword:
        stmt = stmt.where(
            or_(
                col(Task.title).contains(query.keyword),
                col(Task.description).contains(query.keyword),
            )
        )
    return stmt


class TaskService:
    """
    Task workflow: every mutation commits to the database first, then brings
    the cache and the per-status counters in line on a best-effort basis.
    """

    def __init__(self, db: AsyncSession, cache: CacheLayer):
        self.db = db
        self.cache = cache

    # ---- helpers ----

    async def _require_user(self, user_id: int) -> User:
        try:
            result = await self.db.exec(
                select(User).where(User.id == user_id, col(User.deleted_at).is_(None))
            )
            user = result.first()
        except SQLAlchemyError as exc:
            logger.error("User lookup failed user_id=%s: %s", user_id, exc)
            raise InternalError("failed to look up user") from exc
        if user is None:
            raise NotFoundError(f"user {user_id} not found")
        return user

    async def _fetch_task(self, task_id: int) -> Task | None:
        """Load a live task with its user and tags, bypassing the cache."""
        stmt = (
            select(Task)
            .options(selectinload(Task.user), selectinload(Task.tags))
            .where(Task.id == task_id, col(Task.deleted_at).is_(None))
            .execution_options(populate_existing=True)
        )
        result = await self.db.exec(stmt)
        return result.first()

    async def _reload(self, task_id: int) -> TaskResponse:
        try:
            task = await self._fetch_task(task_id)
        except SQLAlchemyError as exc:
            logger.error("Reloading task %s failed: %s", task_id, exc)
            raise InternalError("failed to reload task") from exc
        if task is None:
            raise NotFoundError(f"task {task_id} not found")
        return TaskResponse.model_validate(task)

    async def _resolve_tags(self, tag_ids: list[int]) -> list[Tag]:
        # Unknown ids are dropped without complaint
        result = await self.db.exec(select(Tag).where(col(Tag.id).in_(set(tag_ids))))
        return list(result.all())

    async def _bump_status_count(self, user_id: int, status: TaskStatus, delta: int):
        await self.cache.incr(keys.task_count(user_id, status), delta, ttl=keys.TASK_COUNT_TTL)

    async def _invalidate(self, task_id: int, user_id: int):
        await self.cache.delete(keys.task(task_id))
        await self.cache.delete(keys.user_tasks(user_id))

    def _build_update_set(self, task_data: TaskUpdate) -> dict[str, Any]:
        changes = {
            field: value
            for field, value in task_data.model_dump(exclude_unset=True).items()
            if value is not None and field != "tag_ids"
        }
        if "title" in changes:
            _check_title(changes["title"])
        if "status" in changes:
            changes["status"] = _check_enum(TaskStatus, changes["status"], "status")
        if "priority" in changes:
            changes["priority"] = _check_enum(TaskPriority, changes["priority"], "priority")
        return changes

    # ---- reads ----

    @async_cached(lambda task_id, *_, **__: keys.task(task_id), TaskResponse, ttl=keys.TASK_TTL)
    async def get_task_by_id(self, task_id: int) -> TaskResponse:
        try:
            task = await self._fetch_task(task_id)
        except SQLAlchemyError as exc:
            logger.error("Loading task %s failed: %s", task_id, exc)
            raise InternalError("failed to load task") from exc
        if task is None:
            raise NotFoundError(f"task {task_id} not found")
        return TaskResponse.model_validate(task)

    async def query_tasks(self, query: TaskQuery) -> TaskPage:
        page = max(query.page, 1)
        page_size = query.page_size if query.page_size > 0 else DEFAULT_PAGE_SIZE
        page_size = min(page_size, MAX_PAGE_SIZE)

        count_stmt = select(func.count()).select_from(
            apply_task_filters(select(Task.id), query).subquery()
        )
        list_stmt = (
            apply_task_filters(select(Task), query)
            .options(selectinload(Task.user), selectinload(Task.tags))
            .order_by(col(Task.created_at).desc(), col(Task.id).desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        try:
            total = (await self.db.exec(count_stmt)).one()
            tasks = (await self.db.exec(list_stmt)).all()
        except SQLAlchemyError as exc:
            logger.error("Task query failed: %s", exc)
            raise InternalError("failed to query tasks") from exc

        return TaskPage(
            items=[TaskResponse.model_validate(t) for t in tasks],
            page_info=PageInfo(page=page, page_size=page_size, total=total),
        )

    async def get_user_task_stats(self, user_id: int) -> dict[str, int]:
        """
        Recount a user's tasks from the database and re-seed the counters.

        Returns per-status counts keyed by status name plus ``total`` and
        ``overdue`` (past due and not completed).
        """
        live = (col(Task.user_id) == user_id, col(Task.deleted_at).is_(None))
        by_status = (
            select(Task.status, func.count(col(Task.id))).where(*live).group_by(Task.status)
        )
        overdue_stmt = select(func.count(col(Task.id))).where(
            *live,
            col(Task.due_date) < get_utc_now(),
            col(Task.status) != TaskStatus.COMPLETED,
        )

        try:
            rows = (await self.db.exec(by_status)).all()
            overdue = (await self.db.exec(overdue_stmt)).one()
        except SQLAlchemyError as exc:
            logger.error("Task stats failed for user %s: %s", user_id, exc)
            raise InternalError("failed to count tasks") from exc

        stats = {status.key: 0 for status in TaskStatus}
        for status, count in rows:
            stats[TaskStatus(status).key] = count

        for status in TaskStatus:
            await self.cache.set(
                keys.task_count(user_id, status), stats[status.key], ttl=keys.TASK_COUNT_TTL
            )

        stats["total"] = sum(stats.values())
        stats["overdue"] = overdue
        return stats

    async def get_status_count(self, user_id: int, status: TaskStatus) -> int:
        """Answer from the cached counter, recounting when it is missing."""
        status = _check_enum(TaskStatus, status, "status")
        count = await self.cache.get_int(keys.task_count(user_id, status))
        if count is not None:
            return count
        stats = await self.get_user_task_stats(user_id)
        return stats[status.key]

    # ---- mutations ----

    async def create_task(self, user_id: int, task_data: TaskCreate) -> TaskResponse:
        title = _check_title(task_data.title)
        priority = _check_enum(TaskPriority, task_data.priority, "priority")
        await self._require_user(user_id)

        try:
            task = Task(
                title=title,
                description=task_data.description,
                priority=priority,
                due_date=task_data.due_date,
                status=TaskStatus.PENDING,
                user_id=user_id,
                tags=[],
            )
            self.db.add(task)
            await self.db.flush()

            if task_data.tag_ids:
                task.tags = await self._resolve_tags(task_data.tag_ids)

            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Creating task for user %s failed: %s", user_id, exc)
            raise InternalError("failed to create task") from exc

        created = await self._reload(task.id)
        logger.info("Task %s created by user %s", created.id, user_id)

        await self.cache.set(keys.task(created.id), created.model_dump(mode="json"), ttl=keys.TASK_TTL)
        await self.cache.delete(keys.user_tasks(user_id))
        await self._bump_status_count(user_id, TaskStatus.PENDING, 1)
        return created

    async def update_task(self, task_id: int, user_id: int, task_data: TaskUpdate) -> TaskResponse:
        current = await self.get_task_by_id(task_id)
        if current.user_id != user_id:
            raise PermissionDeniedError(f"user {user_id} may not modify task {task_id}")

        old_status = current.status
        changes = self._build_update_set(task_data)

        try:
            task = await self._fetch_task(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")

            # First entry into a state stamps its time; explicit values win
            now = get_utc_now()
            new_status = changes.get("status")
            if new_status == TaskStatus.IN_PROGRESS and task.start_time is None:
                changes.setdefault("start_time", now)
            elif new_status == TaskStatus.COMPLETED and task.end_time is None:
                changes.setdefault("end_time", now)

            for field, value in changes.items():
                setattr(task, field, value)
            task.updated_at = now

            if task_data.tag_ids is not None:
                task.tags = await self._resolve_tags(task_data.tag_ids) if task_data.tag_ids else []

            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Updating task %s failed: %s", task_id, exc)
            raise InternalError("failed to update task") from exc

        updated = await self._reload(task_id)
        logger.info("Task %s updated by user %s", task_id, user_id)

        await self._invalidate(task_id, user_id)
        if "status" in changes and changes["status"] != old_status:
            await self._bump_status_count(user_id, old_status, -1)
            await self._bump_status_count(user_id, changes["status"], 1)
        return updated

    async def complete_task(self, task_id: int, user_id: int) -> TaskResponse:
        return await self.update_task(task_id, user_id, TaskUpdate(status=TaskStatus.COMPLETED))

    async def delete_task(self, task_id: int, user_id: int) -> None:
        current = await self.get_task_by_id(task_id)
        if current.user_id != user_id:
            raise PermissionDeniedError(f"user {user_id} may not delete task {task_id}")

        try:
            task = await self._fetch_task(task_id)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            task.tags = []
            task.deleted_at = get_utc_now()
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Deleting task %s failed: %s", task_id, exc)
            raise InternalError("failed to delete task") from exc

        logger.info("Task %s deleted by user %s", task_id, user_id)

        await self._invalidate(task_id, user_id)
        await self._bump_status_count(user_id, current.status, -1)
