"""
權限判斷引擎

authorize(principal, operation, resource) -> Decision

- 純函數: 只讀 principal 與已載入的 resource 欄位, 不寫入任何東西
- Admin 一律放行, 而且在所有資源規則之前判斷
- 沒有 user id、不認得的 operation、資源種類不符 -> 一律 Deny (fail-closed)
"""
from dataclasses import dataclass
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = 'Admin'
    MANAGER = 'Manager'
    MEMBER = 'Member'

    @classmethod
    def from_name(cls, name):
        """不認得的角色名稱回傳 None"""
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(frozen=True)
class Principal:
    """目前呼叫者: user id + 角色集合 (每個 request 建立一次)"""

    user_id: str
    roles: frozenset = frozenset()

    @classmethod
    def from_claims(cls, identity, role_names):
        if isinstance(role_names, str):
            role_names = [role_names]
        roles = frozenset(
            role for role in (Role.from_name(name) for name in role_names or ())
            if role is not None
        )
        return cls(user_id=str(identity) if identity is not None else '', roles=roles)

    @property
    def is_authenticated(self):
        return bool(self.user_id)

    def has_role(self, role):
        return role in self.roles

    def has_any_role(self, *roles):
        return any(role in self.roles for role in roles)

    def is_user(self, user_id):
        return user_id is not None and str(user_id) == self.user_id


# ============================================
# Operations (每種資源各自一組)
# ============================================

class ProjectOperation(Enum):
    VIEW = 'View'
    UPDATE = 'Update'
    DELETE = 'Delete'
    MANAGE_MEMBERS = 'ManageMembers'


class TaskOperation(Enum):
    VIEW = 'View'
    UPDATE = 'Update'
    MODIFY = 'Update'  # alias
    DELETE = 'Delete'
    CREATE = 'Create'


class CommentOperation(Enum):
    EDIT = 'Edit'
    DELETE = 'Delete'


# ============================================
# Decision
# ============================================

@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ''

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True, 'Allowed')


def deny(reason):
    return Decision(False, reason)


# ============================================
# Project policy
# ============================================

def _project_policy(principal, operation, project):
    is_creator = principal.is_user(project.creator_id)
    is_manager = principal.has_role(Role.MANAGER)

    if operation is ProjectOperation.VIEW:
        if is_manager:
            return ALLOW
        if principal.has_role(Role.MEMBER) and principal.user_id in project.member_ids:
            return ALLOW
        return deny("You don't have permission to view this project.")

    if operation is ProjectOperation.UPDATE:
        if is_manager and is_creator:
            return ALLOW
        return deny('Only the managing creator of the project can update it.')

    if operation is ProjectOperation.DELETE:
        if is_manager and is_creator:
            return ALLOW
        return deny('Only the managing creator of the project can delete it.')

    if operation is ProjectOperation.MANAGE_MEMBERS:
        if is_manager and is_creator:
            return ALLOW
        return deny('Only the managing creator of the project can manage its members.')

    return deny(f'Unsupported project operation: {operation}')


# ============================================
# Task policy
# ============================================

def _owns_task_project(principal, task):
    project = task.project
    return project is not None and principal.is_user(project.creator_id)


def _task_policy(principal, operation, task):
    is_manager = principal.has_role(Role.MANAGER)
    is_member = principal.has_role(Role.MEMBER)

    if operation is TaskOperation.VIEW:
        if is_manager:
            return ALLOW
        if is_member and principal.is_user(task.assigned_user_id):
            return ALLOW
        return deny('Members can only view tasks assigned to them.')

    if operation is TaskOperation.UPDATE:
        if is_manager and _owns_task_project(principal, task):
            return ALLOW
        if is_member and principal.is_user(task.assigned_user_id):
            return ALLOW
        return deny(
            'Managers can only modify tasks within projects they manage; '
            'members can only modify tasks assigned to them.'
        )

    if operation is TaskOperation.DELETE:
        if is_manager and _owns_task_project(principal, task):
            return ALLOW
        return deny('Only the manager of the owning project can delete this task.')

    return deny(f'Unsupported task operation: {operation}')


def _task_create_policy(principal, operation, project):
    # resource 是目標專案
    if principal.has_role(Role.MANAGER) and principal.is_user(project.creator_id):
        return ALLOW
    return deny('Managers can only create tasks in projects they manage.')


# ============================================
# Comment policy
# ============================================

def _comment_policy(principal, operation, comment):
    # 只有作者本人, 專案 manager 沒有額外權限
    if operation in (CommentOperation.EDIT, CommentOperation.DELETE):
        if principal.is_user(comment.author_id):
            return ALLOW
        verb = 'edit' if operation is CommentOperation.EDIT else 'delete'
        return deny(f'You do not have permission to {verb} this comment.')

    return deny(f'Unsupported comment operation: {operation}')


# ============================================
# Dispatch
# ============================================

# operation -> (預期的資源種類, policy)
def _route(operation):
    if isinstance(operation, ProjectOperation):
        return 'project', _project_policy
    if operation is TaskOperation.CREATE:
        return 'project', _task_create_policy
    if isinstance(operation, TaskOperation):
        return 'task', _task_policy
    if isinstance(operation, CommentOperation):
        return 'comment', _comment_policy
    return None, None


_OPERATIONS_BY_KIND = {
    'project': ProjectOperation,
    'task': TaskOperation,
    'comment': CommentOperation,
}


def resolve_operation(name, resource):
    """
    把 operation 名稱 (例如 'Update', 'Modify') 依 resource 種類轉成 enum

    找不到回傳 None
    """
    if isinstance(name, Enum):
        return name
    operations = _OPERATIONS_BY_KIND.get(getattr(resource, 'resource_kind', None))
    if operations is None or not isinstance(name, str):
        return None
    try:
        return operations(name)
    except ValueError:
        # 也接受成員名稱, 例如 'Modify' / 'MANAGE_MEMBERS'
        return operations.__members__.get(name.upper())


def authorize(principal, operation, resource):
    """
    判斷 principal 能否對 resource 執行 operation

    Args:
        principal: Principal
        operation: ProjectOperation / TaskOperation / CommentOperation,
                   或是名稱字串 (依 resource 種類解析)
        resource: 已載入的 Project / Task / Comment;
                  TaskOperation.CREATE 時傳入目標 Project

    Returns:
        Decision (bool(decision) 即為是否允許)
    """
    if principal is None or not principal.is_authenticated:
        return deny('Authentication required.')

    resolved = resolve_operation(operation, resource)
    kind, policy = _route(resolved)
    if policy is None:
        logger.debug(f"Denied unknown operation {operation!r} for user {principal.user_id}")
        return deny(f'Unknown operation: {operation}')

    if principal.has_role(Role.ADMIN):
        return ALLOW

    if resource is None or getattr(resource, 'resource_kind', None) != kind:
        return deny(f'Operation {resolved.value} requires a {kind} resource.')

    decision = policy(principal, resolved, resource)
    if not decision:
        logger.debug(
            f"Denied {type(resolved).__name__}.{resolved.name} on {kind} "
            f"{getattr(resource, 'id', None)} for user {principal.user_id}"
        )
    return decision
