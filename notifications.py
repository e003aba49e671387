# ============================================
# 通知系統
# 授權過的異動成功後才會建立通知 (side effect, 跟異動同一個 transaction)
# ============================================

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required, get_jwt_identity
from models import db, Notification
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)

# ============================================
# 1. 建立通知 (內部使用)
# ============================================

def notify_users(user_ids, notification_type, title, content=None,
                 project_id=None, task_id=None, exclude_user_id=None):
    """為多個使用者建立通知, 不 commit"""
    notifications = []
    for user_id in {uid for uid in user_ids if uid is not None}:
        if exclude_user_id is not None and str(user_id) == str(exclude_user_id):
            continue

        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            content=content,
            related_project_id=project_id,
            related_task_id=task_id
        )
        notifications.append(notification)
        db.session.add(notification)

    return notifications

def notify_task_event(task, action_type, actor):
    """
    任務相關通知

    通知指派對象與建立者, 操作者本人不通知
    """
    notification_config = {
        'assigned': ('task_assigned', f'{actor.username} assigned a task to you'),
        'completed': ('task_completed', f'{actor.username} completed a task'),
        'commented': ('comment_added', f'{actor.username} commented on a task'),
    }

    config = notification_config.get(action_type)
    if not config:
        return []

    notification_type, title = config

    if action_type == 'assigned':
        recipients = [task.assigned_user_id]
    else:
        recipients = [task.assigned_user_id, task.creator_id]

    return notify_users(
        recipients,
        notification_type,
        title,
        content=f'Task: {task.title}',
        project_id=task.project_id,
        task_id=task.id,
        exclude_user_id=actor.id
    )

# ============================================
# 2. 取得使用者的通知
# ============================================

@notifications_bp.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    """取得當前使用者的通知"""
    user_id = int(get_jwt_identity())

    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    notification_type = request.args.get('type')
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    query = Notification.query.filter_by(user_id=user_id)

    if unread_only:
        query = query.filter_by(is_read=False)

    if notification_type:
        query = query.filter_by(type=notification_type)

    # 最新的在前
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())

    notifications = query.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'notifications': [{
            'id': n.id,
            'type': n.type,
            'title': n.title,
            'content': n.content,
            'is_read': n.is_read,
            'project_id': n.related_project_id,
            'task_id': n.related_task_id,
            'created_at': n.created_at.isoformat()
        } for n in notifications.items],
        'total': notifications.total,
        'unread_count': Notification.query.filter_by(user_id=user_id, is_read=False).count(),
        'page': page,
        'per_page': per_page,
        'total_pages': notifications.pages
    }), 200

# ============================================
# 3. 標記通知為已讀
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
@jwt_required()
def mark_notification_read(notification_id):
    """標記單個通知為已讀"""
    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=int(get_jwt_identity())
    ).first()

    if not notification:
        return jsonify({'error': 'Notification not found'}), 404

    notification.is_read = True

    try:
        db.session.commit()
        return jsonify({'message': 'Notification marked as read'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to mark notification {notification_id} read: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update notification'}), 500

@notifications_bp.route('/notifications/read-all', methods=['PATCH'])
@jwt_required()
def mark_all_notifications_read():
    """標記所有通知為已讀"""
    user_id = int(get_jwt_identity())

    try:
        updated = Notification.query.filter_by(user_id=user_id, is_read=False)\
            .update({'is_read': True})
        db.session.commit()

        return jsonify({'message': 'All notifications marked as read', 'updated': updated}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to mark notifications read: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update notifications'}), 500

# ============================================
# 4. 刪除通知
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    """刪除單個通知"""
    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=int(get_jwt_identity())
    ).first()

    if not notification:
        return jsonify({'error': 'Notification not found'}), 404

    try:
        db.session.delete(notification)
        db.session.commit()
        return jsonify({'message': 'Notification deleted'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to delete notification {notification_id}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to delete notification'}), 500
