"""權限判斷引擎: 不需要 app 或資料庫, 直接用未存檔的 model 物件"""
import pytest

from models import Project, ProjectMember, Task, Comment
from permissions import (
    authorize, resolve_operation, Principal, Role, Decision,
    ProjectOperation, TaskOperation, CommentOperation,
)

MANAGER_ID = '10'
OTHER_MANAGER_ID = '11'
MEMBER_ID = '20'
OUTSIDER_ID = '30'


def principal(user_id, *roles):
    return Principal(user_id=user_id, roles=frozenset(roles))


def seed_project(creator_id=MANAGER_ID, member_ids=(MEMBER_ID,)):
    project = Project(id=1, name='P', creator_id=int(creator_id))
    project.members = [ProjectMember(user_id=int(uid)) for uid in member_ids]
    return project


def seed_task(project, assigned_user_id=MEMBER_ID, status='Open'):
    return Task(
        id=5,
        title='T',
        project=project,
        creator_id=project.creator_id,
        assigned_user_id=int(assigned_user_id) if assigned_user_id else None,
        status=status
    )


def seed_comment(task, author_id=MEMBER_ID):
    return Comment(id=9, task=task, author_id=int(author_id), content='c')


ALL_CASES = [
    (ProjectOperation.VIEW, 'project'),
    (ProjectOperation.UPDATE, 'project'),
    (ProjectOperation.DELETE, 'project'),
    (ProjectOperation.MANAGE_MEMBERS, 'project'),
    (TaskOperation.VIEW, 'task'),
    (TaskOperation.UPDATE, 'task'),
    (TaskOperation.DELETE, 'task'),
    (TaskOperation.CREATE, 'project'),
    (CommentOperation.EDIT, 'comment'),
    (CommentOperation.DELETE, 'comment'),
]


def resource_for(kind):
    # 管理員跟這些資源完全沒有關係
    project = seed_project(creator_id=OTHER_MANAGER_ID, member_ids=())
    task = seed_task(project, assigned_user_id=None, status='In Progress')
    comment = seed_comment(task, author_id=OUTSIDER_ID)
    return {'project': project, 'task': task, 'comment': comment}[kind]

# --- 共通規則 -------------------------------------------------------------

@pytest.mark.parametrize('operation,kind', ALL_CASES)
def test_admin_is_allowed_everything(operation, kind):
    decision = authorize(principal('1', Role.ADMIN), operation, resource_for(kind))
    assert decision.allowed is True


@pytest.mark.parametrize('operation,kind', ALL_CASES)
def test_missing_user_id_is_denied(operation, kind):
    for user_id in ('', None):
        p = Principal.from_claims(user_id, ['Admin'])
        assert not authorize(p, operation, resource_for(kind))


def test_none_principal_is_denied():
    assert not authorize(None, ProjectOperation.VIEW, seed_project())


def test_unknown_operation_is_denied():
    project = seed_project()
    admin = principal('1', Role.ADMIN)
    assert not authorize(admin, 'Archive', project)
    assert not authorize(admin, None, project)
    assert not authorize(admin, 42, project)

    decision = authorize(principal(MANAGER_ID, Role.MANAGER), 'Archive', project)
    assert decision.allowed is False
    assert 'Unknown operation' in decision.reason


def test_operation_names_resolve_by_resource_kind():
    project = seed_project()
    task = seed_task(project)
    comment = seed_comment(task)

    assert resolve_operation('Update', project) is ProjectOperation.UPDATE
    assert resolve_operation('Update', task) is TaskOperation.UPDATE
    assert resolve_operation('Modify', task) is TaskOperation.UPDATE
    assert resolve_operation('ManageMembers', project) is ProjectOperation.MANAGE_MEMBERS
    assert resolve_operation('Edit', comment) is CommentOperation.EDIT
    assert resolve_operation('Edit', project) is None
    assert resolve_operation('View', object()) is None


def test_string_operation_gives_same_decision_as_enum():
    project = seed_project()
    task = seed_task(project)
    member = principal(MEMBER_ID, Role.MEMBER)

    assert authorize(member, 'Update', task) == authorize(member, TaskOperation.UPDATE, task)
    assert authorize(member, 'Modify', task).allowed is True
    assert authorize(member, 'Delete', task).allowed is False


def test_operation_on_wrong_resource_kind_is_denied():
    project = seed_project()
    task = seed_task(project)
    manager = principal(MANAGER_ID, Role.MANAGER)

    assert not authorize(manager, ProjectOperation.VIEW, task)
    assert not authorize(manager, TaskOperation.VIEW, project)
    assert not authorize(manager, TaskOperation.CREATE, task)
    assert not authorize(manager, TaskOperation.UPDATE, None)


def test_decision_is_falsy_on_deny_and_carries_reason():
    decision = authorize(principal(OUTSIDER_ID, Role.MEMBER), ProjectOperation.VIEW, seed_project())
    assert isinstance(decision, Decision)
    assert not decision
    assert decision.reason


def test_authorize_is_idempotent_and_does_not_touch_resource():
    project = seed_project()
    task = seed_task(project)
    member = principal(MEMBER_ID, Role.MEMBER)
    before = (project.member_ids, task.status, task.assigned_user_id)

    first = authorize(member, TaskOperation.UPDATE, task)
    second = authorize(member, TaskOperation.UPDATE, task)

    assert first == second
    assert (project.member_ids, task.status, task.assigned_user_id) == before

# --- Principal -------------------------------------------------------------

def test_principal_from_claims_ignores_unknown_roles():
    p = Principal.from_claims(7, ['Member', 'Superuser'])
    assert p.user_id == '7'
    assert p.roles == frozenset({Role.MEMBER})


def test_principal_from_claims_accepts_single_role_string():
    assert Principal.from_claims('3', 'Manager').roles == frozenset({Role.MANAGER})


def test_principal_compares_ids_as_strings():
    p = principal('42', Role.MEMBER)
    assert p.is_user(42)
    assert p.is_user('42')
    assert not p.is_user(None)

# --- Project ---------------------------------------------------------------

def test_project_view():
    project = seed_project()

    assert authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), ProjectOperation.VIEW, project)
    assert authorize(principal(MEMBER_ID, Role.MEMBER), ProjectOperation.VIEW, project)
    assert not authorize(principal(OUTSIDER_ID, Role.MEMBER), ProjectOperation.VIEW, project)


def test_project_creator_is_implicit_member():
    project = seed_project(creator_id=MEMBER_ID, member_ids=())
    assert MEMBER_ID in project.member_ids
    assert authorize(principal(MEMBER_ID, Role.MEMBER), ProjectOperation.VIEW, project)


def test_project_view_requires_member_role():
    project = seed_project()
    decision = authorize(principal(MEMBER_ID), ProjectOperation.VIEW, project)

    assert not decision
    assert decision.reason
    assert not authorize(principal(MEMBER_ID), TaskOperation.VIEW, seed_task(project))


@pytest.mark.parametrize('operation', [
    ProjectOperation.UPDATE, ProjectOperation.DELETE, ProjectOperation.MANAGE_MEMBERS
])
def test_project_owner_operations(operation):
    project = seed_project()

    assert authorize(principal(MANAGER_ID, Role.MANAGER), operation, project)
    assert not authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), operation, project)
    assert not authorize(principal(MEMBER_ID, Role.MEMBER), operation, project)


@pytest.mark.parametrize('operation', [
    ProjectOperation.UPDATE, ProjectOperation.DELETE, ProjectOperation.MANAGE_MEMBERS
])
def test_member_who_created_project_still_cannot_manage_it(operation):
    project = seed_project(creator_id=MEMBER_ID, member_ids=())
    assert not authorize(principal(MEMBER_ID, Role.MEMBER), operation, project)

# --- Task ------------------------------------------------------------------

def test_task_view():
    task = seed_task(seed_project())

    assert authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), TaskOperation.VIEW, task)
    assert authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.VIEW, task)
    assert not authorize(principal(OUTSIDER_ID, Role.MEMBER), TaskOperation.VIEW, task)


def test_task_update():
    task = seed_task(seed_project())

    assert authorize(principal(MANAGER_ID, Role.MANAGER), TaskOperation.UPDATE, task)
    assert not authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), TaskOperation.UPDATE, task)
    assert authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.UPDATE, task)
    assert not authorize(principal(OUTSIDER_ID, Role.MEMBER), TaskOperation.UPDATE, task)


def test_task_update_on_unassigned_task():
    task = seed_task(seed_project(), assigned_user_id=None)

    assert authorize(principal(MANAGER_ID, Role.MANAGER), TaskOperation.UPDATE, task)
    assert not authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.UPDATE, task)


def test_task_delete_is_never_allowed_for_member():
    project = seed_project(creator_id=MEMBER_ID)
    task = seed_task(project, assigned_user_id=MEMBER_ID)

    assert not authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.DELETE, task)


def test_task_delete_for_managers():
    task = seed_task(seed_project())

    assert authorize(principal(MANAGER_ID, Role.MANAGER), TaskOperation.DELETE, task)
    assert not authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), TaskOperation.DELETE, task)


def test_task_create_uses_target_project():
    project = seed_project()

    assert authorize(principal(MANAGER_ID, Role.MANAGER), TaskOperation.CREATE, project)
    assert not authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), TaskOperation.CREATE, project)
    assert not authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.CREATE, project)


def test_task_without_project_denies_manager():
    task = Task(id=6, title='orphan', assigned_user_id=None, status='Open')
    assert not authorize(principal(MANAGER_ID, Role.MANAGER), TaskOperation.UPDATE, task)


def test_multiple_roles_are_a_union_of_grants():
    # 不是專案 owner 的 Manager, 同時也是被指派的 Member
    task = seed_task(seed_project(), assigned_user_id=OTHER_MANAGER_ID)
    both = principal(OTHER_MANAGER_ID, Role.MANAGER, Role.MEMBER)

    assert authorize(both, TaskOperation.UPDATE, task)
    assert not authorize(principal(OTHER_MANAGER_ID, Role.MANAGER), TaskOperation.UPDATE, task)

# --- Comment ---------------------------------------------------------------

@pytest.mark.parametrize('operation', [CommentOperation.EDIT, CommentOperation.DELETE])
def test_comment_only_author(operation):
    comment = seed_comment(seed_task(seed_project()), author_id=MEMBER_ID)

    assert authorize(principal(MEMBER_ID, Role.MEMBER), operation, comment)
    assert not authorize(principal(OUTSIDER_ID, Role.MEMBER), operation, comment)
    # 專案 owner 沒有額外權限
    assert not authorize(principal(MANAGER_ID, Role.MANAGER), operation, comment)

# --- 情境 -------------------------------------------------------------------

def test_scenario_assigned_member_updates_task_outsider_cannot():
    project = seed_project(creator_id=MANAGER_ID, member_ids=(MEMBER_ID,))
    task = seed_task(project, assigned_user_id=MEMBER_ID, status='Open')

    assert authorize(principal(MEMBER_ID, Role.MEMBER), TaskOperation.UPDATE, task)
    assert not authorize(principal(OUTSIDER_ID, Role.MEMBER), TaskOperation.UPDATE, task)


def test_scenario_comment_edit_by_author_manager_and_admin():
    author_id = '50'
    project = seed_project(creator_id=MANAGER_ID, member_ids=(author_id,))
    comment = seed_comment(seed_task(project, assigned_user_id=author_id), author_id=author_id)

    assert not authorize(principal(MANAGER_ID, Role.MANAGER), CommentOperation.EDIT, comment)
    assert authorize(principal(author_id, Role.MEMBER), CommentOperation.EDIT, comment)
    assert authorize(principal('1', Role.ADMIN), CommentOperation.EDIT, comment)
