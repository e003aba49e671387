"""Pytest fixtures: 每個測試一個全新的 app + in-memory SQLite"""
import itertools
import pytest

from app import create_app
from config import TestingConfig
from models import db, User, Project, ProjectMember, Task, Comment
from auth import hash_password, set_user_role, issue_access_token
from permissions import Role


@pytest.fixture()
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin(app):
    """seed 建立的預設管理員"""
    return User.query.filter_by(email=app.config['SEED_ADMIN_EMAIL']).first()


@pytest.fixture()
def make_user(app):
    counter = itertools.count(1)

    def _make_user(role=Role.MEMBER, username=None, password='Password123'):
        n = next(counter)
        username = username or f'{role.value.lower()}{n}'
        user = User(
            email=f'{username}.{n}@example.com',
            username=username,
            password_hash=hash_password(password)
        )
        set_user_role(user, role)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture()
def headers(app):
    def _headers(user):
        return {'Authorization': f'Bearer {issue_access_token(user)}'}
    return _headers


@pytest.fixture()
def make_project(app):
    def _make_project(creator, members=(), name='Demo'):
        project = Project(name=name, creator_id=creator.id)
        project.members.append(ProjectMember(user_id=creator.id))
        for member in members:
            project.members.append(ProjectMember(user_id=member.id))
        db.session.add(project)
        db.session.commit()
        return project
    return _make_project


@pytest.fixture()
def make_task(app):
    def _make_task(project, assignee=None, status='Open', title='T'):
        task = Task(
            title=title,
            project_id=project.id,
            creator_id=project.creator_id,
            assigned_user_id=assignee.id if assignee else None,
            status=status
        )
        db.session.add(task)
        db.session.commit()
        return task
    return _make_task


@pytest.fixture()
def make_comment(app):
    def _make_comment(task, author, content='hello'):
        comment = Comment(task_id=task.id, author_id=author.id, content=content)
        db.session.add(comment)
        db.session.commit()
        return comment
    return _make_comment
