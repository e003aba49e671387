from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from models import db, ActivityLog, User
from permissions import Role
from auth import get_current_principal, permission_denied
import logging

audit_bp = Blueprint('audit', __name__)
logger = logging.getLogger(__name__)

# ============================================
# 稽核紀錄 (供其他模組使用)
# ============================================

def record_activity(user_id, action, entity_name, entity_id,
                    old_values=None, new_values=None, project_id=None):
    """
    新增一筆稽核紀錄到目前的 session

    不會 commit: 跟被授權的異動放在同一個 transaction, 異動失敗 rollback 時紀錄也一起消失
    """
    activity = ActivityLog(
        user_id=int(user_id) if user_id is not None else None,
        project_id=project_id,
        action=action,
        entity_name=entity_name,
        entity_id=entity_id,
        old_values=old_values,
        new_values=new_values
    )
    db.session.add(activity)
    return activity

def snapshot(obj, fields):
    """取出指定欄位做成可序列化的 dict"""
    data = {}
    for field in fields:
        value = getattr(obj, field)
        data[field] = value.isoformat() if hasattr(value, 'isoformat') else value
    return data

# ============================================
# 查詢稽核紀錄 (只有 Admin)
# ============================================

@audit_bp.route('', methods=['GET'])
@jwt_required()
def get_logs():
    """分頁查詢稽核紀錄, 最新的在前"""
    principal = get_current_principal()
    if not principal.has_role(Role.ADMIN):
        return permission_denied('Only administrators can read the audit log.')

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    query = ActivityLog.query

    entity_name = request.args.get('entity_name')
    if entity_name:
        query = query.filter_by(entity_name=entity_name)

    entity_id = request.args.get('entity_id', type=int)
    if entity_id is not None:
        query = query.filter_by(entity_id=entity_id)

    logs = query.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    user_ids = {log.user_id for log in logs.items if log.user_id is not None}
    usernames = {}
    if user_ids:
        usernames = {
            u.id: u.username for u in User.query.filter(User.id.in_(user_ids)).all()
        }

    return jsonify({
        'logs': [{
            'id': log.id,
            'action': log.action,
            'entity_name': log.entity_name,
            'entity_id': log.entity_id,
            'project_id': log.project_id,
            'user_id': log.user_id,
            'username': usernames.get(log.user_id),
            'old_values': log.old_values,
            'new_values': log.new_values,
            'timestamp': log.timestamp.isoformat()
        } for log in logs.items],
        'total': logs.total,
        'page': page,
        'per_page': per_page,
        'total_pages': logs.pages
    }), 200
