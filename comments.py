from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from models import db, Comment, Task
from auth import get_current_principal, get_current_user, validate_request_data, permission_denied
from permissions import authorize, TaskOperation, CommentOperation
from audit import record_activity
from notifications import notify_task_event
import logging

comments_bp = Blueprint('comments', __name__)
logger = logging.getLogger(__name__)


class CommentSchema(Schema):
    """評論驗證"""
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=2000),
        error_messages={'required': 'Comment content is required'}
    )


def serialize_comment(comment):
    return {
        'id': comment.id,
        'task_id': comment.task_id,
        'content': comment.content,
        'author': {
            'id': comment.author.id,
            'username': comment.author.username
        } if comment.author else None,
        'is_edited': comment.is_edited,
        'created_at': comment.created_at.isoformat() if comment.created_at else None,
        'updated_at': comment.updated_at.isoformat() if comment.updated_at else None
    }


def load_comment(comment_id):
    return Comment.query.options(
        joinedload(Comment.task).joinedload(Task.project),
        joinedload(Comment.author)
    ).filter_by(id=comment_id).first()

# ============================================
# 任務的評論
# ============================================

@comments_bp.route('/tasks/<int:task_id>/comments', methods=['GET'])
@jwt_required()
def get_task_comments(task_id):
    """看得到任務就看得到評論, 由舊到新"""
    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(get_current_principal(), TaskOperation.VIEW, task)
    if not decision:
        return permission_denied(decision)

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    comments = Comment.query.options(joinedload(Comment.author))\
        .filter_by(task_id=task_id)\
        .order_by(Comment.created_at.asc(), Comment.id.asc())\
        .paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'comments': [serialize_comment(c) for c in comments.items],
        'total': comments.total,
        'page': page,
        'per_page': per_page,
        'total_pages': comments.pages
    }), 200

@comments_bp.route('/tasks/<int:task_id>/comments', methods=['POST'])
@jwt_required()
def create_comment(task_id):
    """
    新增任務評論

    評論、通知、稽核紀錄在同一個 transaction
    """
    principal = get_current_principal()

    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    decision = authorize(principal, TaskOperation.VIEW, task)
    if not decision:
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CommentSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    try:
        comment = Comment(
            task_id=task_id,
            author_id=int(principal.user_id),
            content=result['content']
        )
        db.session.add(comment)
        db.session.flush()

        notify_task_event(task, 'commented', get_current_user())

        record_activity(
            principal.user_id, 'Created', 'Comment', comment.id,
            new_values={'task_id': task_id, 'content': result['content'][:100]},
            project_id=task.project_id
        )

        db.session.commit()

        logger.info(f"Comment added to task {task_id} by user {principal.user_id}")

        return jsonify({
            'message': 'Comment added successfully',
            'comment': serialize_comment(comment)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add comment due to server error'}), 500

# ============================================
# 單一評論
# ============================================

@comments_bp.route('/comments/<int:comment_id>', methods=['GET'])
@jwt_required()
def get_comment(comment_id):
    comment = load_comment(comment_id)
    if not comment:
        return jsonify({'error': 'Comment not found'}), 404

    decision = authorize(get_current_principal(), TaskOperation.VIEW, comment.task)
    if not decision:
        return permission_denied(decision)

    return jsonify(serialize_comment(comment)), 200

@comments_bp.route('/comments/<int:comment_id>', methods=['PATCH'])
@jwt_required()
def update_comment(comment_id):
    """只有作者本人 (或 Admin) 可以編輯"""
    principal = get_current_principal()

    comment = load_comment(comment_id)
    if not comment:
        return jsonify({'error': 'Comment not found'}), 404

    decision = authorize(principal, CommentOperation.EDIT, comment)
    if not decision:
        logger.warning(f"User {principal.user_id} denied edit on comment {comment_id}")
        return permission_denied(decision)

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CommentSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if result['content'] == comment.content:
        return jsonify({'message': 'No changes to update'}), 200

    old_content = comment.content
    comment.content = result['content']
    comment.is_edited = True

    try:
        record_activity(
            principal.user_id, 'Updated', 'Comment', comment.id,
            old_values={'content': old_content[:100]},
            new_values={'content': comment.content[:100]},
            project_id=comment.task.project_id
        )
        db.session.commit()

        logger.info(f"Comment {comment_id} edited by user {principal.user_id}")

        return jsonify({
            'message': 'Comment updated successfully',
            'comment': serialize_comment(comment)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Comment update failed due to server error'}), 500

@comments_bp.route('/comments/<int:comment_id>', methods=['DELETE'])
@jwt_required()
def delete_comment(comment_id):
    principal = get_current_principal()

    comment = load_comment(comment_id)
    if not comment:
        return jsonify({'error': 'Comment not found'}), 404

    decision = authorize(principal, CommentOperation.DELETE, comment)
    if not decision:
        logger.warning(f"User {principal.user_id} denied delete on comment {comment_id}")
        return permission_denied(decision)

    try:
        project_id = comment.task.project_id
        old_values = {'task_id': comment.task_id, 'content': comment.content[:100]}

        db.session.delete(comment)
        record_activity(
            principal.user_id, 'Deleted', 'Comment', comment_id,
            old_values=old_values, project_id=project_id
        )
        db.session.commit()

        logger.info(f"Comment {comment_id} deleted by user {principal.user_id}")

        return '', 204

    except Exception as e:
        db.session.rollback()
        logger.error(f"Comment deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Comment deletion failed due to server error'}), 500
