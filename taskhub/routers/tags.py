from fastapi import APIRouter, Depends, status

from taskhub.dependencies import TagServiceDep, TaskServiceDep
from taskhub.models import TagCreate, TagResponse, TaskPage, TaskQuery
from taskhub.routers.tasks import task_query_params

router = APIRouter(prefix="/api/v1/tags", tags=["tags"])


@router.post("", response_model=TagResponse, status_code=status.HTTP_201_CREATED)
async def create_tag(tag_data: TagCreate, service: TagServiceDep):
    return await service.create_tag(tag_data)


@router.get("", response_model=list[TagResponse])
async def list_tags(service: TagServiceDep):
    return await service.list_tags()


@router.get("/{tag_id}/tasks", response_model=TaskPage)
async def get_tasks_by_tag(
    tag_id: int,
    tag_service: TagServiceDep,
    task_service: TaskServiceDep,
    query: TaskQuery = Depends(task_query_params),
):
    await tag_service.get_tag(tag_id)
    query.tag_id = tag_id
    return await task_service.query_tasks(query)
