from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import or_
from sqlalchemy.orm import joinedload, selectinload
from marshmallow import Schema, fields, validate
from models import db, Task, Project, Tag, User
from auth import (get_current_principal, get_current_user, validate_request_data,
                  permission_denied, UTCDateTime)
from permissions import authorize, TaskOperation, Role
from guards import TaskStatus, InvalidTaskStatus, ensure_task_deletable
from audit import record_activity, snapshot
from notifications import notify_task_event
from datetime import datetime
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

PRIORITIES = ['Low', 'Medium', 'High']
TASK_FIELDS = ['title', 'description', 'status', 'priority', 'assigned_user_id',
               'due_date', 'completed_at']

# ============================================
# Input Validation Schemas
# ============================================

class TaskStatusField(fields.Field):
    """接受各種狀態寫法, 轉成 TaskStatus"""

    default_error_messages = {
        'invalid': 'Unknown task status. Expected one of: '
                   + ', '.join(s.value for s in TaskStatus)
    }

    def _serialize(self, value, attr, obj, **kwargs):
        return None if value is None else TaskStatus.parse(value).value

    def _deserialize(self, value, attr, data, **kwargs):
        try:
            return TaskStatus.parse(value)
        except InvalidTaskStatus:
            raise self.make_error('invalid')

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000))
    status = TaskStatusField(load_default=TaskStatus.OPEN)
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='Medium')
    assigned_user_id = fields.Int(allow_none=True)
    due_date = UTCDateTime(allow_none=True)
    tag_ids = fields.List(fields.Int(), load_default=list)

class UpdateTaskSchema(Schema):
    """更新任務驗證"""
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000))
    status = TaskStatusField()
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    assigned_user_id = fields.Int(allow_none=True)
    due_date = UTCDateTime(allow_none=True)
    tag_ids = fields.List(fields.Int())

class AssignTaskSchema(Schema):
    user_id = fields.Int(required=True, allow_none=True)

# ============================================
# 輔助函數
# ============================================

def serialize_task(task, detail=False):
    data = {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'project_id': task.project_id,
        'assigned_user': {
            'id': task.assignee.id,
            'username': task.assignee.username
        } if task.assignee else None,
        'creator': {
            'id': task.creator.id,
            'username': task.creator.username
        } if task.creator else None,
        'due_date': task.due_date.isoformat() if task.due_date else None,
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'completed_at': task.completed_at.isoformat() if task.completed_at else None,
        'tags': [{'id': t.id, 'name': t.name, 'color': t.color} for t in task.tags]
    }
    if detail:
        data['comment_count'] = len(task.comments)
    return data

def load_task(task_id):
    return Task.query.options(
        joinedload(Task.project),
        joinedload(Task.assignee),
        selectinload(Task.tags)
    ).filter_by(id=task_id).first()

def check_assignee(project, user_id):
    """
    指派對象必須是專案成員

    Returns:
        錯誤訊息, 沒問題回傳 None
    """
    if user_id is None:
        return None
    if not db.session.get(User, user_id):
        return 'Assigned user not found'
    if str(user_id) not in project.member_ids:
        return 'Assigned user is not a member of this project'
    return None

def load_tags(tag_ids):
    """回傳 (tags, missing_ids)"""
    if not tag_ids:
        return [], []
    tags = Tag.query.filter(Tag.id.in_(tag_ids)).all()
    found = {t.id for t in tags}
    return tags, sorted(set(tag_ids) - found)

def apply_status(task, new_status):
    """更新狀態並維護 completed_at"""
    old_status = TaskStatus.parse(task.status)
    task.status = new_status.value
    if new_status.is_terminal and not old_status.is_terminal:
        task.completed_at = datetime.utcnow()
    elif old_status.is_terminal and not new_status.is_terminal:
        task.completed_at = None

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@jwt_required()
def create_task(project_id):
    """
    在專案中建立任務

    權限判斷用目標專案 (TaskOperation.CREATE)
    """
    principal = get_current_principal()

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(principal, TaskOperation.CREATE, project)
    if not decision:
        logger.warning(f"User {principal.user_id} denied task creation in project {project_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    error = check_assignee(project, result.get('assigned_user_id'))
    if error:
        return jsonify({'error': error}), 400

    tags, missing = load_tags(result['tag_ids'])
    if missing:
        return jsonify({'error': 'Tags not found', 'tag_ids': missing}), 400

    status = result['status']
    task = Task(
        title=result['title'],
        description=result.get('description'),
        project_id=project_id,
        creator_id=int(principal.user_id),
        assigned_user_id=result.get('assigned_user_id'),
        status=status.value,
        priority=result['priority'],
        due_date=result.get('due_date'),
        completed_at=datetime.utcnow() if status.is_terminal else None
    )
    task.tags = tags

    try:
        db.session.add(task)
        db.session.flush()  # 取得 task.id

        if task.assigned_user_id:
            notify_task_event(task, 'assigned', get_current_user())

        record_activity(
            principal.user_id, 'Created', 'Task', task.id,
            new_values=snapshot(task, TASK_FIELDS),
            project_id=project_id
        )

        # 一次性 commit
        db.session.commit()

        logger.info(f"Task created: {task.title} in project {project_id} by user {principal.user_id}")

        return jsonify({
            'message': 'Task created successfully',
            'task': serialize_task(task)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task creation failed due to server error'}), 500

# ============================================
# 查詢任務列表
# ============================================

@tasks_bp.route('/tasks', methods=['GET'])
@jwt_required()
def get_tasks():
    """
    依角色過濾的任務列表

    - Admin: 全部
    - Manager: 自己建立的專案裡的任務; 指定 project_id 時看該專案全部任務
    - Member: 只有指派給自己的任務
    """
    principal = get_current_principal()
    if not principal.has_any_role(*Role):
        return permission_denied('You do not have a role that can list tasks.')

    query = Task.query.options(
        joinedload(Task.creator),
        joinedload(Task.assignee),
        selectinload(Task.tags)
    )

    project_id = request.args.get('project_id', type=int)
    if project_id is not None:
        query = query.filter(Task.project_id == project_id)

    if not principal.has_role(Role.ADMIN):
        user_id = int(principal.user_id)
        conditions = []
        if principal.has_role(Role.MANAGER):
            if project_id is None:
                conditions.append(Task.project.has(Project.creator_id == user_id))
            else:
                conditions.append(Task.project_id == project_id)
        if principal.has_role(Role.MEMBER):
            conditions.append(Task.assigned_user_id == user_id)
        query = query.filter(or_(*conditions))

    # 篩選: 按狀態
    status = request.args.get('status')
    if status:
        try:
            query = query.filter(Task.status == TaskStatus.parse(status).value)
        except InvalidTaskStatus as e:
            return jsonify({'error': str(e)}), 400

    # 篩選: 按負責人
    assigned_user_id = request.args.get('assigned_user_id', type=int)
    if assigned_user_id:
        query = query.filter(Task.assigned_user_id == assigned_user_id)

    # 篩選: 按優先級
    priority = request.args.get('priority')
    if priority:
        query = query.filter(Task.priority == priority)

    # 篩選: 逾期任務
    if request.args.get('overdue', '').lower() == 'true':
        query = query.filter(
            Task.due_date < datetime.utcnow(),
            Task.status != TaskStatus.DONE.value
        )

    # 排序
    sort_by = request.args.get('sort_by', 'created_at')
    sort_order = request.args.get('sort_order', 'desc')

    if sort_by == 'due_date':
        order_column = Task.due_date
    elif sort_by == 'priority':
        order_column = Task.priority
    else:
        order_column = Task.created_at

    if sort_order == 'asc':
        query = query.order_by(order_column.asc(), Task.id.asc())
    else:
        query = query.order_by(order_column.desc(), Task.id.desc())

    # 分頁
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    tasks_paginated = query.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'tasks': [serialize_task(task) for task in tasks_paginated.items],
        'total': tasks_paginated.total,
        'page': page,
        'per_page': per_page,
        'total_pages': tasks_paginated.pages
    }), 200

# ============================================
# 查詢單一任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['GET'])
@jwt_required()
def get_task(task_id):
    task = load_task(task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(get_current_principal(), TaskOperation.VIEW, task)
    if not decision:
        return permission_denied(decision)

    return jsonify(serialize_task(task, detail=True)), 200

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['PATCH'])
@jwt_required()
def update_task(task_id):
    """
    更新任務資訊

    1. 狀態只接受 Open / In Progress / Done (及其別名)
    2. 狀態變更時自動更新 completed_at
    3. 完成或重新指派時通知相關人員
    """
    principal = get_current_principal()

    task = load_task(task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(principal, TaskOperation.UPDATE, task)
    if not decision:
        logger.warning(f"User {principal.user_id} denied update on task {task_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'assigned_user_id' in result:
        error = check_assignee(task.project, result['assigned_user_id'])
        if error:
            return jsonify({'error': error}), 400

    tags = None
    if 'tag_ids' in result:
        tags, missing = load_tags(result['tag_ids'])
        if missing:
            return jsonify({'error': 'Tags not found', 'tag_ids': missing}), 400

    old_values = snapshot(task, TASK_FIELDS)
    old_tag_ids = sorted(t.id for t in task.tags)

    for field in ['title', 'description', 'priority', 'due_date', 'assigned_user_id']:
        if field in result:
            setattr(task, field, result[field])

    if 'status' in result:
        apply_status(task, result['status'])

    if tags is not None:
        task.tags = tags

    new_values = snapshot(task, TASK_FIELDS)
    changes = {
        field: {'old': old_values[field], 'new': new_values[field]}
        for field in TASK_FIELDS if old_values[field] != new_values[field]
    }
    new_tag_ids = sorted(t.id for t in task.tags)
    if new_tag_ids != old_tag_ids:
        changes['tag_ids'] = {'old': old_tag_ids, 'new': new_tag_ids}

    if not changes:
        return jsonify({'message': 'No changes to update'}), 200

    try:
        actor = get_current_user()

        if 'status' in changes and task.status == TaskStatus.DONE.value:
            notify_task_event(task, 'completed', actor)

        if 'assigned_user_id' in changes and task.assigned_user_id:
            notify_task_event(task, 'assigned', actor)

        record_activity(
            principal.user_id, 'Updated', 'Task', task.id,
            old_values=old_values, new_values=new_values,
            project_id=task.project_id
        )

        db.session.commit()

        logger.info(f"Task {task_id} updated by user {principal.user_id}")

        return jsonify({
            'message': 'Task updated successfully',
            'task': serialize_task(task),
            'changes': changes
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task update failed due to server error'}), 500

# ============================================
# 指派任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>/assign', methods=['POST'])
@jwt_required()
def assign_task(task_id):
    """指派 (或取消指派) 任務, user_id 為 null 時取消"""
    principal = get_current_principal()

    task = load_task(task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(principal, TaskOperation.UPDATE, task)
    if not decision:
        logger.warning(f"User {principal.user_id} denied assignment on task {task_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if data is None:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AssignTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user_id = result['user_id']
    error = check_assignee(task.project, user_id)
    if error:
        return jsonify({'error': error}), 400

    if task.assigned_user_id == user_id:
        return jsonify({'message': 'No changes to update', 'task': serialize_task(task)}), 200

    old_assignee = task.assigned_user_id
    task.assigned_user_id = user_id

    try:
        if user_id:
            notify_task_event(task, 'assigned', get_current_user())

        record_activity(
            principal.user_id, 'Assigned', 'Task', task.id,
            old_values={'assigned_user_id': old_assignee},
            new_values={'assigned_user_id': user_id},
            project_id=task.project_id
        )
        db.session.commit()

        logger.info(f"Task {task_id} assigned to {user_id} by user {principal.user_id}")

        return jsonify({
            'message': 'Task assigned successfully',
            'task': serialize_task(task)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task assignment error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task assignment failed due to server error'}), 500

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    """
    刪除任務

    進行中的任務不能刪除 (對 Admin 也一樣)
    """
    principal = get_current_principal()

    task = load_task(task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(principal, TaskOperation.DELETE, task)
    if not decision:
        logger.warning(f"User {principal.user_id} denied delete on task {task_id}")
        return permission_denied(decision)

    ensure_task_deletable(task)

    try:
        old_values = snapshot(task, TASK_FIELDS)
        project_id = task.project_id

        # cascade 會一起刪除評論
        db.session.delete(task)
        record_activity(
            principal.user_id, 'Deleted', 'Task', task_id,
            old_values=old_values, project_id=project_id
        )
        db.session.commit()

        logger.info(f"Task deleted: {old_values['title']} by user {principal.user_id}")

        return '', 204

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task deletion failed due to server error'}), 500

# ============================================
# 標籤
# ============================================

@tasks_bp.route('/tags', methods=['GET'])
@jwt_required()
def get_tags():
    tags = Tag.query.order_by(Tag.name).all()
    return jsonify({
        'tags': [{'id': t.id, 'name': t.name, 'color': t.color} for t in tags]
    }), 200
