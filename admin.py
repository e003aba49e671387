from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, User, RoleRecord
from auth import (get_current_principal, validate_request_data, hash_password,
                  set_user_role, serialize_user, roles_required, RegisterSchema)
from permissions import Role
from audit import record_activity
import logging

admin_bp = Blueprint('admin', __name__)
logger = logging.getLogger(__name__)

ROLE_NAMES = [role.value for role in Role]

# ============================================
# Input Validation Schemas
# ============================================

class CreateUserSchema(RegisterSchema):
    """Admin 建立使用者 (可以指定角色)"""
    role = fields.Str(validate=validate.OneOf(ROLE_NAMES), load_default=Role.MEMBER.value)

class ChangeRoleSchema(Schema):
    role = fields.Str(
        required=True,
        validate=validate.OneOf(ROLE_NAMES),
        error_messages={'required': 'Role is required'}
    )

# ============================================
# 使用者管理
# ============================================

@admin_bp.route('/users', methods=['POST'])
@jwt_required()
@roles_required(Role.ADMIN)
def create_user():
    """建立使用者並指定角色"""
    principal = get_current_principal()

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateUserSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if User.query.filter_by(email=result['email']).first():
        return jsonify({'error': 'Email already exists'}), 409

    user = User(
        email=result['email'],
        username=result['username'],
        password_hash=hash_password(result['password'])
    )
    set_user_role(user, Role(result['role']))

    try:
        db.session.add(user)
        db.session.flush()

        record_activity(
            principal.user_id, 'Created', 'User', user.id,
            new_values={'email': user.email, 'username': user.username, 'role': result['role']}
        )
        db.session.commit()

        logger.info(f"User {user.email} created with role {result['role']} by admin {principal.user_id}")

        return jsonify({
            'message': 'User created successfully',
            'user': serialize_user(user)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Admin user creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'User creation failed due to server error'}), 500

@admin_bp.route('/users', methods=['GET'])
@jwt_required()
@roles_required(Role.ADMIN, Role.MANAGER)
def list_users():
    """
    使用者列表 (Admin / Manager)

    Manager 需要這個列表來挑選專案成員
    """
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    query = User.query

    role = request.args.get('role')
    if role:
        if role not in ROLE_NAMES:
            return jsonify({'error': f"Unknown role: {role}"}), 400
        query = query.filter(User.roles.any(RoleRecord.name == role))

    search = request.args.get('search')
    if search:
        pattern = f'%{search}%'
        query = query.filter(db.or_(User.username.ilike(pattern), User.email.ilike(pattern)))

    users = query.order_by(User.id.asc()).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'users': [dict(serialize_user(u), role=u.primary_role) for u in users.items],
        'total': users.total,
        'page': page,
        'per_page': per_page,
        'total_pages': users.pages
    }), 200

@admin_bp.route('/users/<int:user_id>', methods=['DELETE'])
@jwt_required()
@roles_required(Role.ADMIN)
def delete_user(user_id):
    """
    刪除使用者

    不能刪除自己; 還擁有專案的使用者要先轉移或刪除專案
    """
    principal = get_current_principal()

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if principal.is_user(user.id):
        return jsonify({'error': 'You cannot delete your own account'}), 400

    if user.owned_projects:
        return jsonify({
            'error': 'User still owns projects',
            'project_ids': [p.id for p in user.owned_projects]
        }), 400

    try:
        old_values = {'email': user.email, 'username': user.username, 'roles': user.role_names}

        # 指派的任務與評論作者會被設為 NULL
        db.session.delete(user)
        record_activity(principal.user_id, 'Deleted', 'User', user_id, old_values=old_values)
        db.session.commit()

        logger.info(f"User {old_values['email']} deleted by admin {principal.user_id}")

        return '', 204

    except Exception as e:
        db.session.rollback()
        logger.error(f"User deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'User deletion failed due to server error'}), 500

@admin_bp.route('/users/<int:user_id>/role', methods=['POST'])
@jwt_required()
@roles_required(Role.ADMIN)
def change_user_role(user_id):
    """
    變更使用者角色

    新角色在使用者下一次登入或 refresh token 後生效
    """
    principal = get_current_principal()

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if principal.is_user(user.id):
        return jsonify({'error': 'You cannot change your own role'}), 400

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ChangeRoleSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    old_roles = user.role_names
    if old_roles == [result['role']]:
        return jsonify({'message': 'No changes to update', 'user': serialize_user(user)}), 200

    try:
        set_user_role(user, Role(result['role']))
        record_activity(
            principal.user_id, 'RoleChanged', 'User', user.id,
            old_values={'roles': old_roles},
            new_values={'roles': [result['role']]}
        )
        db.session.commit()

        logger.info(f"Role of user {user.email} changed {old_roles} -> {result['role']} by admin {principal.user_id}")

        return jsonify({
            'message': 'Role updated successfully',
            'user': serialize_user(user)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Role change error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Role change failed due to server error'}), 500
