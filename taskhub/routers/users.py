from fastapi import APIRouter, Depends, Query, status

from taskhub.dependencies import TaskServiceDep, UserServiceDep
from taskhub.models import (
    TaskPage,
    TaskQuery,
    TaskStatus,
    UserCreate,
    UserLogin,
    UserPage,
    UserResponse,
    UserUpdate,
)
from taskhub.routers.tasks import task_query_params

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(user_data: UserCreate, service: UserServiceDep):
    return await service.create_user(user_data)


@router.get("", response_model=UserPage)
async def list_users(
    service: UserServiceDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
):
    return await service.list_users(page, page_size)


@router.post("/login", response_model=UserResponse)
async def login(credentials: UserLogin, service: UserServiceDep):
    return await service.authenticate(credentials.username, credentials.password)


@router.get("/username/{username}", response_model=UserResponse)
async def get_user_by_username(username: str, service: UserServiceDep):
    return await service.get_user_by_username(username)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, service: UserServiceDep):
    return await service.get_user(user_id)


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(user_id: int, user_data: UserUpdate, service: UserServiceDep):
    return await service.update_user(user_id, user_data)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(user_id: int, service: UserServiceDep):
    await service.delete_user(user_id)


@router.post("/{user_id}/login", response_model=UserResponse)
async def update_last_login(user_id: int, service: UserServiceDep):
    return await service.record_login(user_id)


@router.get("/{user_id}/tasks", response_model=TaskPage)
async def get_user_tasks(
    user_id: int, service: TaskServiceDep, query: TaskQuery = Depends(task_query_params)
):
    query.user_id = user_id
    return await service.query_tasks(query)


@router.get("/{user_id}/tasks/stats", response_model=dict[str, int])
async def get_user_task_stats(user_id: int, service: TaskServiceDep):
    return await service.get_user_task_stats(user_id)


@router.get("/{user_id}/tasks/count")
async def get_user_task_count(user_id: int, status: TaskStatus, service: TaskServiceDep):
    count = await service.get_status_count(user_id, status)
    return {"status": status.key, "count": count}
