import pytest

from models import Project, ProjectMember, Task
from guards import (
    TaskStatus, InvalidTaskStatus, PreconditionFailed,
    ensure_task_deletable, ensure_project_deletable, ensure_member_removable,
)


def seed_project(creator_id=10, member_ids=(20,), task_specs=()):
    project = Project(id=1, name='P', creator_id=creator_id)
    project.members = [ProjectMember(user_id=uid) for uid in member_ids]
    for n, (assignee, status) in enumerate(task_specs, start=1):
        Task(id=n, title=f'T{n}', project=project, assigned_user_id=assignee, status=status)
    return project

# --- TaskStatus ------------------------------------------------------------

@pytest.mark.parametrize('raw,expected', [
    ('Open', TaskStatus.OPEN),
    ('open', TaskStatus.OPEN),
    ('To Do', TaskStatus.OPEN),
    ('todo', TaskStatus.OPEN),
    ('In Progress', TaskStatus.IN_PROGRESS),
    ('InProgress', TaskStatus.IN_PROGRESS),
    ('in_progress', TaskStatus.IN_PROGRESS),
    ('in-progress', TaskStatus.IN_PROGRESS),
    ('Done', TaskStatus.DONE),
    (' DONE ', TaskStatus.DONE),
])
def test_parse_accepts_aliases(raw, expected):
    assert TaskStatus.parse(raw) is expected


@pytest.mark.parametrize('raw', ['', 'Closed', 'In Hiatus', 'finished', None, 3])
def test_parse_rejects_unknown_values(raw):
    with pytest.raises(InvalidTaskStatus):
        TaskStatus.parse(raw)


def test_parse_returns_enum_unchanged():
    assert TaskStatus.parse(TaskStatus.DONE) is TaskStatus.DONE


def test_only_done_is_terminal():
    assert TaskStatus.DONE.is_terminal
    assert not TaskStatus.OPEN.is_terminal
    assert not TaskStatus.IN_PROGRESS.is_terminal


def test_invalid_status_is_a_value_error():
    assert issubclass(InvalidTaskStatus, ValueError)

# --- 刪除任務 ---------------------------------------------------------------

def test_in_progress_task_cannot_be_deleted():
    task = Task(id=1, title='T', status='In Progress')
    with pytest.raises(PreconditionFailed) as exc:
        ensure_task_deletable(task)
    assert exc.value.status_code == 400
    assert 'In Progress' in exc.value.message


@pytest.mark.parametrize('status', ['Open', 'Done', 'To Do'])
def test_other_tasks_can_be_deleted(status):
    ensure_task_deletable(Task(id=1, title='T', status=status))


def test_stored_alias_spelling_is_still_guarded():
    with pytest.raises(PreconditionFailed):
        ensure_task_deletable(Task(id=1, title='T', status='InProgress'))

# --- 刪除專案 ---------------------------------------------------------------

def test_project_with_unfinished_tasks_cannot_be_deleted():
    project = seed_project(task_specs=[(20, 'Done'), (20, 'Open')])
    with pytest.raises(PreconditionFailed):
        ensure_project_deletable(project)


def test_project_with_only_done_tasks_can_be_deleted():
    ensure_project_deletable(seed_project(task_specs=[(20, 'Done'), (None, 'Done')]))
    ensure_project_deletable(seed_project())

# --- 移除成員 ---------------------------------------------------------------

def test_creator_can_never_be_removed():
    project = seed_project()
    with pytest.raises(PreconditionFailed) as exc:
        ensure_member_removable(project, 10)
    assert 'creator' in exc.value.message


def test_member_with_active_task_cannot_be_removed():
    project = seed_project(task_specs=[(20, 'In Progress')])
    with pytest.raises(PreconditionFailed):
        ensure_member_removable(project, '20')


def test_member_with_only_done_tasks_can_be_removed():
    project = seed_project(task_specs=[(20, 'Done'), (30, 'Open')])
    ensure_member_removable(project, 20)


def test_removal_blocked_while_assigned_task_not_done():
    # P 的建立者要移除 X, X 的任務還是 Open
    project = seed_project(creator_id=10, member_ids=(20,), task_specs=[(20, 'Open')])
    with pytest.raises(PreconditionFailed):
        ensure_member_removable(project, 20)
