# tests/test_task_service.py

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import col, select

from taskhub.cache import keys
from taskhub.core.errors import (
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)
from taskhub.models import (
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskTagLink,
    TaskUpdate,
)

from .fakes import FakeRedis


async def load_row(db, task_id: int) -> Task:
    """Read the task straight from the database, ignoring the cache."""
    result = await db.exec(
        select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
    )
    return result.one()


async def tag_links(db, task_id: int) -> list[TaskTagLink]:
    result = await db.exec(select(TaskTagLink).where(TaskTagLink.task_id == task_id))
    return list(result.all())


def counter(fake_redis: FakeRedis, user_id: int, status: TaskStatus) -> int | None:
    raw = fake_redis.store.get(keys.task_count(user_id, status))
    return None if raw is None else int(raw)


# ---- create ----


@pytest.mark.asyncio
async def test_create_task_starts_pending_and_warms_cache(task_service, alice, fake_redis) -> None:
    fake_redis.store[keys.user_tasks(alice.id)] = "[]"

    created = await task_service.create_task(
        alice.id, TaskCreate(title="draft proposal", priority=TaskPriority.HIGH)
    )

    assert created.id > 0
    assert created.status == TaskStatus.PENDING
    assert created.priority == TaskPriority.HIGH
    assert created.user is not None and created.user.id == alice.id
    assert created.tags == []

    cached = json.loads(fake_redis.store[keys.task(created.id)])
    assert cached["title"] == "draft proposal"
    assert fake_redis.ttls[keys.task(created.id)] == keys.TASK_TTL
    assert keys.user_tasks(alice.id) not in fake_redis.store
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 1
    assert fake_redis.ttls[keys.task_count(alice.id, TaskStatus.PENDING)] == keys.TASK_COUNT_TTL


@pytest.mark.asyncio
async def test_create_task_ignores_smuggled_status(task_service, alice) -> None:
    payload = TaskCreate.model_validate({"title": "sneaky", "status": TaskStatus.COMPLETED})

    created = await task_service.create_task(alice.id, payload)

    assert created.status == TaskStatus.PENDING
    assert created.end_time is None


@pytest.mark.asyncio
async def test_create_task_for_unknown_user_is_not_found(task_service, db) -> None:
    with pytest.raises(NotFoundError):
        await task_service.create_task(424242, TaskCreate(title="orphan"))

    total = (await db.exec(select(func.count(col(Task.id))))).one()
    assert total == 0


@pytest.mark.asyncio
async def test_create_task_rejects_blank_title_and_bad_priority(task_service, alice) -> None:
    with pytest.raises(InvalidArgumentError):
        await task_service.create_task(alice.id, TaskCreate(title="   "))

    bad_priority = TaskCreate.model_construct(
        title="fine", description=None, priority=9, due_date=None, tag_ids=[]
    )
    with pytest.raises(InvalidArgumentError):
        await task_service.create_task(alice.id, bad_priority)


@pytest.mark.asyncio
async def test_create_task_rolls_back_when_tag_lookup_fails(
    task_service, alice, tags, db, fake_redis, monkeypatch
) -> None:
    async def broken_resolve(tag_ids):
        raise OperationalError("SELECT tags", {}, Exception("database went away"))

    monkeypatch.setattr(task_service, "_resolve_tags", broken_resolve)

    with pytest.raises(InternalError):
        await task_service.create_task(
            alice.id, TaskCreate(title="doomed", tag_ids=[tags[0].id])
        )

    total = (await db.exec(select(func.count(col(Task.id))))).one()
    assert total == 0
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) is None
    assert not any(k.startswith(keys.TASK_PREFIX) for k in fake_redis.store)


# ---- tags ----


@pytest.mark.asyncio
async def test_tags_are_replaced_not_merged(task_service, alice, tags) -> None:
    work, home, errands = tags
    created = await task_service.create_task(
        alice.id, TaskCreate(title="tagged", tag_ids=[work.id, home.id])
    )
    assert {t.name for t in created.tags} == {"work", "home"}

    replaced = await task_service.update_task(
        created.id, alice.id, TaskUpdate(tag_ids=[errands.id])
    )
    assert [t.name for t in replaced.tags] == ["errands"]

    untouched = await task_service.update_task(created.id, alice.id, TaskUpdate(title="renamed"))
    assert [t.name for t in untouched.tags] == ["errands"]

    cleared = await task_service.update_task(created.id, alice.id, TaskUpdate(tag_ids=[]))
    assert cleared.tags == []


@pytest.mark.asyncio
async def test_unknown_and_repeated_tag_ids_are_dropped(task_service, alice, tags) -> None:
    work = tags[0]
    created = await task_service.create_task(
        alice.id, TaskCreate(title="tagged", tag_ids=[work.id, work.id, 999])
    )
    assert [t.name for t in created.tags] == ["work"]


# ---- ownership ----


@pytest.mark.asyncio
async def test_other_users_cannot_update_or_delete(task_service, alice, bob, db) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="mine"))

    with pytest.raises(PermissionDeniedError):
        await task_service.update_task(
            created.id, bob.id, TaskUpdate(title="stolen", status=TaskStatus.COMPLETED)
        )
    with pytest.raises(PermissionDeniedError):
        await task_service.delete_task(created.id, bob.id)

    row = await load_row(db, created.id)
    assert row.title == "mine"
    assert row.status == TaskStatus.PENDING
    assert row.end_time is None
    assert row.deleted_at is None
    assert row.updated_at is None


@pytest.mark.asyncio
async def test_update_missing_task_is_not_found(task_service, alice) -> None:
    with pytest.raises(NotFoundError):
        await task_service.update_task(404, alice.id, TaskUpdate(title="nothing"))
    with pytest.raises(NotFoundError):
        await task_service.delete_task(404, alice.id)


@pytest.mark.asyncio
async def test_update_rejects_blank_title(task_service, alice, db) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="keep me"))

    with pytest.raises(InvalidArgumentError):
        await task_service.update_task(created.id, alice.id, TaskUpdate(title="  "))

    row = await load_row(db, created.id)
    assert row.title == "keep me"


# ---- status transitions ----


@pytest.mark.asyncio
async def test_start_time_is_stamped_once(task_service, alice) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="stamp"))
    assert created.start_time is None

    started = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS)
    )
    assert started.start_time is not None
    first_start = started.start_time

    await task_service.update_task(created.id, alice.id, TaskUpdate(description="more detail"))
    await task_service.update_task(created.id, alice.id, TaskUpdate(status=TaskStatus.PENDING))
    again = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS)
    )

    assert again.start_time == first_start
    assert again.description == "more detail"


@pytest.mark.asyncio
async def test_end_time_is_stamped_once(task_service, alice) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="finish"))

    done = await task_service.complete_task(created.id, alice.id)
    assert done.status == TaskStatus.COMPLETED
    assert done.end_time is not None

    reopened = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS)
    )
    assert reopened.end_time == done.end_time

    done_again = await task_service.complete_task(created.id, alice.id)
    assert done_again.end_time == done.end_time


@pytest.mark.asyncio
async def test_explicit_start_time_wins_over_stamp(task_service, alice) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="backdated"))
    when = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)

    started = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS, start_time=when)
    )

    assert started.start_time.replace(tzinfo=None) == when.replace(tzinfo=None)


@pytest.mark.asyncio
async def test_null_fields_leave_values_unchanged(task_service, alice) -> None:
    created = await task_service.create_task(
        alice.id, TaskCreate(title="keep", description="original", priority=TaskPriority.LOW)
    )

    updated = await task_service.update_task(
        created.id, alice.id, TaskUpdate(title=None, description=None, priority=TaskPriority.URGENT)
    )

    assert updated.title == "keep"
    assert updated.description == "original"
    assert updated.priority == TaskPriority.URGENT
    assert updated.updated_at is not None


# ---- counters ----


@pytest.mark.asyncio
async def test_status_change_moves_counters(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="count me"))
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 1

    await task_service.update_task(created.id, alice.id, TaskUpdate(status=TaskStatus.COMPLETED))

    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 0
    assert counter(fake_redis, alice.id, TaskStatus.COMPLETED) == 1


@pytest.mark.asyncio
async def test_same_status_update_keeps_counters(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="still pending"))

    await task_service.update_task(created.id, alice.id, TaskUpdate(status=TaskStatus.PENDING))

    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 1
    assert fake_redis.calls.count("decrby") == 0


@pytest.mark.asyncio
async def test_counters_converge_with_store(task_service, alice, fake_redis) -> None:
    created = [
        await task_service.create_task(alice.id, TaskCreate(title=f"task {i}")) for i in range(5)
    ]
    for task in created[:3]:
        await task_service.complete_task(task.id, alice.id)
    await task_service.update_task(
        created[3].id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS)
    )
    await task_service.delete_task(created[0].id, alice.id)
    await task_service.delete_task(created[4].id, alice.id)

    cached = {s: counter(fake_redis, alice.id, s) or 0 for s in TaskStatus}
    stats = await task_service.get_user_task_stats(alice.id)

    assert cached == {s: stats[s.key] for s in TaskStatus}
    assert stats == {
        "pending": 0,
        "in_progress": 1,
        "completed": 2,
        "cancelled": 0,
        "total": 3,
        "overdue": 0,
    }


@pytest.mark.asyncio
async def test_counter_below_zero_is_dropped(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="lost counter"))
    del fake_redis.store[keys.task_count(alice.id, TaskStatus.PENDING)]

    await task_service.delete_task(created.id, alice.id)

    assert keys.task_count(alice.id, TaskStatus.PENDING) not in fake_redis.store
    assert await task_service.get_status_count(alice.id, TaskStatus.PENDING) == 0


# ---- cache-aside ----


@pytest.mark.asyncio
async def test_get_task_uses_cache(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="cached"))

    cached = json.loads(fake_redis.store[keys.task(created.id)])
    cached["title"] = "from cache"
    fake_redis.store[keys.task(created.id)] = json.dumps(cached)

    fetched = await task_service.get_task_by_id(created.id)
    assert fetched.title == "from cache"


@pytest.mark.asyncio
async def test_get_task_refills_cache_on_miss(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="refill"))
    del fake_redis.store[keys.task(created.id)]

    fetched = await task_service.get_task_by_id(created.id)

    assert fetched.title == "refill"
    assert keys.task(created.id) in fake_redis.store
    assert fake_redis.ttls[keys.task(created.id)] == keys.TASK_TTL


@pytest.mark.asyncio
async def test_read_after_update_is_fresh(task_service, alice, fake_redis) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="before"))
    await task_service.get_task_by_id(created.id)
    fake_redis.store[keys.user_tasks(alice.id)] = "[]"

    await task_service.update_task(created.id, alice.id, TaskUpdate(title="after"))

    assert keys.task(created.id) not in fake_redis.store
    assert keys.user_tasks(alice.id) not in fake_redis.store
    fetched = await task_service.get_task_by_id(created.id)
    assert fetched.title == "after"


@pytest.mark.asyncio
async def test_deleted_task_is_gone(task_service, alice, db) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="bye"))
    await task_service.get_task_by_id(created.id)

    await task_service.delete_task(created.id, alice.id)

    with pytest.raises(NotFoundError):
        await task_service.get_task_by_id(created.id)
    row = await load_row(db, created.id)
    assert row.deleted_at is not None


@pytest.mark.asyncio
async def test_delete_clears_tag_links(task_service, alice, tags, db) -> None:
    work, home, _ = tags
    created = await task_service.create_task(
        alice.id, TaskCreate(title="tagged", tag_ids=[work.id, home.id])
    )
    assert len(await tag_links(db, created.id)) == 2

    await task_service.delete_task(created.id, alice.id)

    assert await tag_links(db, created.id) == []


@pytest.mark.asyncio
async def test_delete_rollback_keeps_task_links_and_counter(
    task_service, alice, tags, db, fake_redis, monkeypatch
) -> None:
    created = await task_service.create_task(
        alice.id, TaskCreate(title="survivor", tag_ids=[tags[0].id])
    )

    async def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("database went away"))

    monkeypatch.setattr(db, "commit", broken_commit)

    with pytest.raises(InternalError):
        await task_service.delete_task(created.id, alice.id)

    row = await load_row(db, created.id)
    assert row.deleted_at is None
    assert [link.tag_id for link in await tag_links(db, created.id)] == [tags[0].id]
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 1
    assert keys.task(created.id) in fake_redis.store


@pytest.mark.asyncio
async def test_workflow_survives_cache_outage(task_service, alice, cache, fake_redis) -> None:
    fake_redis.fail_on.add("*")

    created = await task_service.create_task(alice.id, TaskCreate(title="no cache"))
    updated = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.IN_PROGRESS)
    )
    fetched = await task_service.get_task_by_id(created.id)
    await task_service.delete_task(created.id, alice.id)

    assert updated.status == TaskStatus.IN_PROGRESS
    assert fetched.status == TaskStatus.IN_PROGRESS
    assert cache.stats["errors"] > 0
    # only the user entry written before the outage remains
    assert set(fake_redis.store) == {keys.user(alice.id)}


@pytest.mark.asyncio
async def test_update_rollback_keeps_old_values(
    task_service, alice, tags, db, fake_redis, monkeypatch
) -> None:
    created = await task_service.create_task(alice.id, TaskCreate(title="stable"))

    async def broken_resolve(tag_ids):
        raise OperationalError("SELECT tags", {}, Exception("database went away"))

    monkeypatch.setattr(task_service, "_resolve_tags", broken_resolve)

    with pytest.raises(InternalError):
        await task_service.update_task(
            created.id,
            alice.id,
            TaskUpdate(title="half done", status=TaskStatus.COMPLETED, tag_ids=[tags[0].id]),
        )

    row = await load_row(db, created.id)
    assert row.title == "stable"
    assert row.status == TaskStatus.PENDING
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == 1
    assert counter(fake_redis, alice.id, TaskStatus.COMPLETED) is None


# ---- end to end ----


@pytest.mark.asyncio
async def test_create_complete_and_foreign_delete(task_service, alice, bob, fake_redis) -> None:
    created = await task_service.create_task(
        alice.id, TaskCreate(title="draft proposal", priority=TaskPriority.HIGH)
    )
    assert created.status == TaskStatus.PENDING
    assert created.priority == TaskPriority.HIGH
    assert created.user_id == alice.id
    assert created.tags == []
    pending_before = counter(fake_redis, alice.id, TaskStatus.PENDING)
    completed_before = counter(fake_redis, alice.id, TaskStatus.COMPLETED) or 0

    done = await task_service.update_task(
        created.id, alice.id, TaskUpdate(status=TaskStatus.COMPLETED)
    )
    assert done.status == TaskStatus.COMPLETED
    assert done.end_time is not None
    assert counter(fake_redis, alice.id, TaskStatus.PENDING) == pending_before - 1
    assert counter(fake_redis, alice.id, TaskStatus.COMPLETED) == completed_before + 1

    with pytest.raises(PermissionDeniedError):
        await task_service.delete_task(created.id, bob.id)

    still_there = await task_service.get_task_by_id(created.id)
    assert still_there.id == created.id
    assert still_there.status == TaskStatus.COMPLETED
