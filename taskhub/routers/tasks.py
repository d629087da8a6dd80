from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from taskhub.dependencies import CurrentUserId, TaskServiceDep
from taskhub.models import (
    TaskCreate,
    TaskPage,
    TaskPriority,
    TaskQuery,
    TaskResponse,
    TaskStatus,
    TaskUpdate,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


def task_query_params(
    status: TaskStatus | None = None,
    priority: TaskPriority | None = None,
    tag_id: int | None = None,
    user_id: int | None = None,
    keyword: str | None = Query(default=None, max_length=200),
    due_after: datetime | None = None,
    due_before: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
) -> TaskQuery:
    return TaskQuery(
        status=status,
        priority=priority,
        tag_id=tag_id,
        user_id=user_id,
        keyword=keyword,
        due_after=due_after,
        due_before=due_before,
        page=page,
        page_size=page_size,
    )


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, user_id: CurrentUserId, service: TaskServiceDep):
    """Create a new task owned by the acting user"""
    return await service.create_task(user_id, task_data)


@router.get("", response_model=TaskPage)
async def query_tasks(service: TaskServiceDep, query: TaskQuery = Depends(task_query_params)):
    return await service.query_tasks(query)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: int, service: TaskServiceDep):
    """Get a specific task by ID"""
    return await service.get_task_by_id(task_id)


@router.put("/{task_id}", response_model=TaskResponse)
@router.patch("/{task_id}", response_model=TaskResponse, include_in_schema=False)
async def update_task(
    task_id: int, task_data: TaskUpdate, user_id: CurrentUserId, service: TaskServiceDep
):
    return await service.update_task(task_id, user_id, task_data)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int, user_id: CurrentUserId, service: TaskServiceDep):
    """Delete a task"""
    await service.delete_task(task_id, user_id)


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def mark_task_complete(task_id: int, user_id: CurrentUserId, service: TaskServiceDep):
    """Mark a task as completed"""
    return await service.complete_task(task_id, user_id)
