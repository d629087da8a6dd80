from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskhub.cache.layer import CacheLayer
from taskhub.database import get_db
from taskhub.services import TagService, TaskService, UserService


def get_cache(request: Request) -> CacheLayer:
    return request.app.state.cache


def get_task_service(
    db: AsyncSession = Depends(get_db), cache: CacheLayer = Depends(get_cache)
) -> TaskService:
    return TaskService(db, cache)


def get_user_service(
    db: AsyncSession = Depends(get_db), cache: CacheLayer = Depends(get_cache)
) -> UserService:
    return UserService(db, cache)


def get_tag_service(db: AsyncSession = Depends(get_db)) -> TagService:
    return TagService(db)


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> int:
    """Acting user, taken from the X-User-ID header set by the upstream auth proxy."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-ID must be an integer",
        ) from None


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
UserServiceDep = Annotated[UserService, Depends(get_user_service)]
TagServiceDep = Annotated[TagService, Depends(get_tag_service)]
CurrentUserId = Annotated[int, Depends(get_current_user_id)]
