
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from guards import TaskStatus

db = SQLAlchemy()

# ============================================
# 1. 多對多關聯表: 使用者與角色
# ============================================
user_roles = db.Table('user_roles',
    db.Column('user_id', db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True),
    db.Column('role_id', db.Integer, db.ForeignKey('role.id', ondelete='CASCADE'), primary_key=True)
)

# ============================================
# 2. Role 模型 (角色定義, 由 seed 建立)
# ============================================
class RoleRecord(db.Model):
    __tablename__ = 'role'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)

# ============================================
# 3. User 模型
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(225), nullable=False)
    username = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    roles = db.relationship('RoleRecord', secondary=user_roles, lazy='selectin')
    owned_projects = db.relationship('Project', backref='creator', lazy=True)
    tasks_assigned = db.relationship('Task', foreign_keys='Task.assigned_user_id', backref='assignee', lazy=True)
    tasks_created = db.relationship('Task', foreign_keys='Task.creator_id', backref='creator', lazy=True)
    notifications = db.relationship('Notification', backref='user', lazy=True, cascade='all,delete-orphan')
    comments = db.relationship('Comment', backref='author', lazy=True)

    @property
    def role_names(self):
        return sorted(role.name for role in self.roles)

    @property
    def primary_role(self):
        names = self.role_names
        return names[0] if names else None

# ============================================
# 4. Project 模型
# ============================================
class Project(db.Model):
    resource_kind = 'project'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), default='active')  # active, archived, completed
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    members = db.relationship('ProjectMember', backref='project', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_project_creator', 'creator_id'),
    )

    @property
    def member_ids(self):
        """成員的 user id (字串), 建立者一定算成員"""
        ids = {str(m.user_id) for m in self.members if m.user_id is not None}
        if self.creator_id is not None:
            ids.add(str(self.creator_id))
        return ids

# ============================================
# 5. ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref=db.backref('project_memberships', cascade='all,delete-orphan'))

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 6. 多對多關聯表: 任務與標籤
# ============================================
task_tags = db.Table('task_tags',
    db.Column('task_id', db.Integer, db.ForeignKey('task.id'), primary_key=True),
    db.Column('tag_id', db.Integer, db.ForeignKey('tag.id'), primary_key=True)
)

# ============================================
# 7. Task 模型
# ============================================
class Task(db.Model):
    resource_kind = 'task'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    # 存標準值: Open, In Progress, Done
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.OPEN.value)
    priority = db.Column(db.String(20), nullable=False, default='Medium')  # Low, Medium, High

    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    assigned_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    due_date = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    tags = db.relationship('Tag', secondary=task_tags, backref='tasks')
    comments = db.relationship('Comment', backref='task', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_assigned_status', 'assigned_user_id', 'status'),
    )

# ============================================
# 8. Tag 模型
# ============================================
class Tag(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    color = db.Column(db.String(7), default='#667eea')

# ============================================
# 9. Comment 模型
# ============================================
class Comment(db.Model):
    resource_kind = 'comment'

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    content = db.Column(db.Text, nullable=False)
    is_edited = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

# ============================================
# 10. Notification 模型
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # task_assigned, comment_added, etc
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False)
    related_project_id = db.Column(db.Integer, nullable=True)
    related_task_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

# ============================================
# 11. ActivityLog 模型 (稽核紀錄)
# ============================================
class ActivityLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)  # 使用者刪除後仍保留紀錄
    project_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(100), nullable=False)  # Created, Updated, Deleted, ...
    entity_name = db.Column(db.String(50), nullable=False)  # Project, Task, Comment, ...
    entity_id = db.Column(db.Integer)
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

# ============================================
# 12. TokenBlocklist 模型 (登出後的 token)
# ============================================
class TokenBlocklist(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(36), nullable=False, unique=True, index=True)
    token_type = db.Column(db.String(10), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
