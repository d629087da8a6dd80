from taskhub.services.tag_service import TagService
from taskhub.services.task_service import TaskService
from taskhub.services.user_service import UserService

__all__ = ["TagService", "TaskService", "UserService"]
