"""Cache key layout and lifetimes.

    task:<id>                       serialized task, 1h
    user:<id>                       serialized user, 1h
    user_tasks:<user_id>            invalidation only, never read here
    task_count:<user_id>:<status>   integer counter, 24h
"""

from taskhub.models import TaskStatus

TASK_PREFIX = "task:"
USER_PREFIX = "user:"
USER_TASKS_PREFIX = "user_tasks:"
TASK_COUNT_PREFIX = "task_count:"

TASK_TTL = 60 * 60
USER_TTL = 60 * 60
TASK_COUNT_TTL = 24 * 60 * 60


def task(task_id: int) -> str:
    return f"{TASK_PREFIX}{task_id}"


def user(user_id: int) -> str:
    return f"{USER_PREFIX}{user_id}"


def user_tasks(user_id: int) -> str:
    return f"{USER_TASKS_PREFIX}{user_id}"


def task_count(user_id: int, status: TaskStatus) -> str:
    return f"{TASK_COUNT_PREFIX}{user_id}:{TaskStatus(status).key}"


def task_count_pattern(user_id: int) -> str:
    return f"{TASK_COUNT_PREFIX}{user_id}:*"
