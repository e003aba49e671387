"""
業務規則檢查 (state guards)

這些檢查跟權限無關: 就算是 Admin 也不能刪除進行中的任務。
違反時丟出 PreconditionFailed, 由 app 轉成 400 Bad Request。
"""
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class InvalidTaskStatus(ValueError):
    """狀態字串無法對應到已知的任務狀態"""

    def __init__(self, value):
        self.value = value
        super().__init__(
            f"Unknown task status {value!r}. Expected one of: "
            f"{', '.join(s.value for s in TaskStatus)}"
        )


class TaskStatus(str, Enum):
    OPEN = 'Open'
    IN_PROGRESS = 'In Progress'
    DONE = 'Done'

    @classmethod
    def parse(cls, value):
        """
        把各種寫法轉成標準狀態

        'To Do', 'todo', 'InProgress', 'in_progress', 'in-progress' 都接受,
        對應不到的一律丟出 InvalidTaskStatus (不做靜默 fallback)
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidTaskStatus(value)

        key = ''.join(ch for ch in value.lower() if ch.isalnum())
        status = _STATUS_ALIASES.get(key)
        if status is None:
            raise InvalidTaskStatus(value)
        return status

    @property
    def is_terminal(self):
        return self is TaskStatus.DONE


_STATUS_ALIASES = {
    'open': TaskStatus.OPEN,
    'todo': TaskStatus.OPEN,
    'inprogress': TaskStatus.IN_PROGRESS,
    'done': TaskStatus.DONE,
}


class PreconditionFailed(Exception):
    """業務規則不允許這個操作 (對任何人都一樣)"""

    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


def _is_unfinished(task):
    return not TaskStatus.parse(task.status).is_terminal


def ensure_task_deletable(task):
    """進行中的任務不能刪除"""
    if TaskStatus.parse(task.status) is TaskStatus.IN_PROGRESS:
        logger.info(f"Blocked deletion of in-progress task {task.id}")
        raise PreconditionFailed('Cannot delete a task that is In Progress.')


def ensure_project_deletable(project):
    """專案內還有未完成的任務時不能刪除"""
    if any(_is_unfinished(task) for task in project.tasks):
        logger.info(f"Blocked deletion of project {project.id}: unfinished tasks")
        raise PreconditionFailed('Cannot delete project: it still contains unfinished tasks.')


def ensure_member_removable(project, user_id):
    """
    檢查成員是否可以從專案移除

    1. 專案建立者永遠不能被移除
    2. 成員在這個專案還有未完成的任務時不能移除
    """
    user_id = str(user_id)

    if project.creator_id is not None and str(project.creator_id) == user_id:
        raise PreconditionFailed('The project creator cannot be removed from the project.')

    active = [
        task for task in project.tasks
        if task.assigned_user_id is not None
        and str(task.assigned_user_id) == user_id
        and _is_unfinished(task)
    ]
    if active:
        logger.info(
            f"Blocked removal of user {user_id} from project {project.id}: "
            f"{len(active)} active task(s)"
        )
        raise PreconditionFailed(
            'Cannot remove member. They are assigned to active tasks. '
            'Please reassign or complete those tasks first.'
        )
