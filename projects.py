from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func, or_
from sqlalchemy.orm import selectinload
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import db, Project, ProjectMember, User, Task
from auth import (get_current_principal, get_current_user, validate_request_data, UTCDateTime,
                  permission_denied, roles_required)
from permissions import authorize, ProjectOperation, Role
from guards import TaskStatus, ensure_project_deletable, ensure_member_removable
from audit import record_activity, snapshot
from notifications import notify_users
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

PROJECT_STATUSES = ['active', 'archived', 'completed']
PROJECT_FIELDS = ['name', 'description', 'status', 'start_date', 'end_date']

# ============================================
# Input Validation Schemas
# ============================================

class _DateRangeMixin:
    @validates_schema
    def validate_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise ValidationError('End date must not be before start date', 'end_date')

class CreateProjectSchema(_DateRangeMixin, Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(validate=validate.Length(max=2000))
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES), load_default='active')
    start_date = UTCDateTime(allow_none=True)
    end_date = UTCDateTime(allow_none=True)

class UpdateProjectSchema(_DateRangeMixin, Schema):
    """更新專案驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=2000))
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES))
    start_date = UTCDateTime(allow_none=True)
    end_date = UTCDateTime(allow_none=True)

class AddMemberSchema(Schema):
    """新增成員驗證"""
    user_id = fields.Int(required=True)

# ============================================
# 輔助函數
# ============================================

def serialize_member(membership):
    return {
        'id': membership.user.id,
        'username': membership.user.username,
        'email': membership.user.email,
        'joined_at': membership.joined_at.isoformat() if membership.joined_at else None
    }

def serialize_project(project, include_members=False):
    data = {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'status': project.status,
        'start_date': project.start_date.isoformat() if project.start_date else None,
        'end_date': project.end_date.isoformat() if project.end_date else None,
        'creator': {
            'id': project.creator.id,
            'username': project.creator.username
        } if project.creator else None,
        'created_at': project.created_at.isoformat() if project.created_at else None
    }
    if include_members:
        data['members'] = [serialize_member(m) for m in project.members]
    return data

def load_project(project_id, with_members=False):
    query = Project.query
    if with_members:
        query = query.options(selectinload(Project.members).joinedload(ProjectMember.user))
    return query.filter_by(id=project_id).first()

# ============================================
# 建立專案 (Admin / Manager)
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
@roles_required(Role.ADMIN, Role.MANAGER)
def create_project():
    """
    建立新專案

    建立者會自動加入成員
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    project = Project(
        name=result['name'],
        description=result.get('description'),
        status=result['status'],
        creator_id=current_user.id,
        start_date=result.get('start_date'),
        end_date=result.get('end_date')
    )
    project.members.append(ProjectMember(user_id=current_user.id))

    try:
        db.session.add(project)
        db.session.flush()  # 取得 project.id 但不 commit

        record_activity(
            current_user.id, 'Created', 'Project', project.id,
            new_values=snapshot(project, PROJECT_FIELDS),
            project_id=project.id
        )

        db.session.commit()

        logger.info(f"Project created: {project.name} by user {current_user.email}")

        return jsonify({
            'message': 'Project created successfully',
            'project': serialize_project(project)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project creation failed due to server error'}), 500

# ============================================
# 查詢專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def get_projects():
    """
    Admin / Manager 看得到所有專案, Member 只看得到自己參與的專案
    """
    principal = get_current_principal()

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    query = Project.query.options(selectinload(Project.members).joinedload(ProjectMember.user))

    if not principal.has_any_role(Role.ADMIN, Role.MANAGER):
        user_id = int(principal.user_id)
        query = query.filter(or_(
            Project.creator_id == user_id,
            Project.members.any(ProjectMember.user_id == user_id)
        ))

    projects = query.order_by(Project.created_at.desc(), Project.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return jsonify({
        'projects': [serialize_project(p, include_members=True) for p in projects.items],
        'total': projects.total,
        'page': page,
        'per_page': per_page,
        'total_pages': projects.pages
    }), 200

# ============================================
# 查詢單一專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    project = load_project(project_id, with_members=True)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(get_current_principal(), ProjectOperation.VIEW, project)
    if not decision:
        return permission_denied(decision)

    return jsonify(serialize_project(project, include_members=True)), 200

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['PATCH'])
@jwt_required()
def update_project(project_id):
    """更新專案資訊, 記錄變更內容"""
    principal = get_current_principal()

    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(principal, ProjectOperation.UPDATE, project)
    if not decision:
        logger.warning(f"User {principal.user_id} denied update on project {project_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    old_values = snapshot(project, PROJECT_FIELDS)
    changed = False

    for field in PROJECT_FIELDS:
        if field in result and getattr(project, field) != result[field]:
            setattr(project, field, result[field])
            changed = True

    if project.start_date and project.end_date and project.end_date < project.start_date:
        db.session.rollback()
        return jsonify({
            'error': 'Validation failed',
            'details': {'end_date': ['End date must not be before start date']}
        }), 400

    if not changed:
        return jsonify({'message': 'No changes to update'}), 200

    try:
        new_values = snapshot(project, PROJECT_FIELDS)
        record_activity(
            principal.user_id, 'Updated', 'Project', project.id,
            old_values=old_values, new_values=new_values, project_id=project.id
        )
        db.session.commit()

        logger.info(f"Project {project_id} updated by user {principal.user_id}")

        changes = {
            field: {'old': old_values[field], 'new': new_values[field]}
            for field in PROJECT_FIELDS if old_values[field] != new_values[field]
        }
        return jsonify({
            'message': 'Project updated successfully',
            'project': serialize_project(project),
            'changes': changes
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project update failed due to server error'}), 500

# ============================================
# 刪除專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    """
    刪除專案

    專案內還有未完成任務時回 400 (對 Admin 也一樣)
    """
    principal = get_current_principal()

    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(principal, ProjectOperation.DELETE, project)
    if not decision:
        logger.warning(f"User {principal.user_id} denied delete on project {project_id}")
        return permission_denied(decision)

    ensure_project_deletable(project)

    try:
        old_values = snapshot(project, PROJECT_FIELDS)
        db.session.delete(project)
        record_activity(
            principal.user_id, 'Deleted', 'Project', project_id,
            old_values=old_values, project_id=project_id
        )
        db.session.commit()

        logger.info(f"Project deleted: {old_values['name']} by user {principal.user_id}")

        return '', 204

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project deletion failed due to server error'}), 500

# ============================================
# 專案成員管理
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@jwt_required()
def get_project_members(project_id):
    """取得專案成員列表"""
    project = load_project(project_id, with_members=True)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(get_current_principal(), ProjectOperation.VIEW, project)
    if not decision:
        return permission_denied(decision)

    members = [serialize_member(m) for m in project.members]
    return jsonify({'members': members, 'total': len(members)}), 200

@projects_bp.route('/<int:project_id>/members', methods=['POST'])
@jwt_required()
def add_project_member(project_id):
    """新增專案成員, 並通知被加入的使用者"""
    principal = get_current_principal()

    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(principal, ProjectOperation.MANAGE_MEMBERS, project)
    if not decision:
        logger.warning(f"User {principal.user_id} denied member management on project {project_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddMemberSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = db.session.get(User, result['user_id'])
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if str(user.id) in project.member_ids:
        return jsonify({'error': 'User is already a member'}), 409

    try:
        member = ProjectMember(project_id=project_id, user_id=user.id)
        db.session.add(member)

        notify_users(
            [user.id], 'member_added', 'You were added to a project',
            content=f'Project: {project.name}',
            project_id=project_id,
            exclude_user_id=principal.user_id
        )
        record_activity(
            principal.user_id, 'MemberAdded', 'Project', project_id,
            new_values={'user_id': user.id, 'username': user.username},
            project_id=project_id
        )

        db.session.commit()

        logger.info(f"Member added to project {project_id}: user {user.email}")

        return jsonify({
            'message': 'Member added successfully',
            'member': serialize_member(member)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error adding member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add member due to server error'}), 500

@projects_bp.route('/<int:project_id>/members/<int:user_id>', methods=['DELETE'])
@jwt_required()
def remove_project_member(project_id, user_id):
    """
    移除專案成員

    建立者不能被移除; 成員還有未完成任務時不能移除
    """
    principal = get_current_principal()

    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(principal, ProjectOperation.MANAGE_MEMBERS, project)
    if not decision:
        logger.warning(f"User {principal.user_id} denied member management on project {project_id}")
        return permission_denied(decision)

    membership = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if not membership and str(user_id) != str(project.creator_id):
        return jsonify({'error': 'Member not found in this project'}), 404

    ensure_member_removable(project, user_id)

    try:
        db.session.delete(membership)
        record_activity(
            principal.user_id, 'MemberRemoved', 'Project', project_id,
            old_values={'user_id': user_id}, project_id=project_id
        )
        db.session.commit()

        logger.info(f"Member {user_id} removed from project {project_id} by user {principal.user_id}")

        return '', 204

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error removing member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove member due to server error'}), 500

# ============================================
# 專案統計
# ============================================

@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@jwt_required()
def get_project_stats(project_id):
    """取得專案統計資訊 (單一聚合查詢)"""
    project = load_project(project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    decision = authorize(get_current_principal(), ProjectOperation.VIEW, project)
    if not decision:
        return permission_denied(decision)

    rows = db.session.query(
        Task.status, func.count(Task.id)
    ).filter(Task.project_id == project_id).group_by(Task.status).all()

    counts = {status.value: 0 for status in TaskStatus}
    for status, count in rows:
        counts[TaskStatus.parse(status).value] += count

    total = sum(counts.values())

    return jsonify({
        'tasks': dict(counts, total=total),
        'members': len(project.member_ids),
        'completion_rate': round(counts[TaskStatus.DONE.value] / (total or 1) * 100, 2)
    }), 200
