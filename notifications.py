from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from models import db, Notification
from auth import get_current_user
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)


def notification_to_dict(n):
    return {
        'id': n.id,
        'type': n.type,
        'title': n.title,
        'content': n.content,
        'is_read': n.is_read,
        'project': {
            'id': n.project.id,
            'name': n.project.name
        } if n.project else None,
        'task': {
            'id': n.task.id,
            'name': n.task.name
        } if n.task else None,
        'created_at': n.created_at.isoformat()
    }


def _own_notification(notification_id, user_id):
    return Notification.query.filter_by(id=notification_id, user_id=user_id).first()

# ============================================
# 1. 取得使用者的通知
# ============================================

@notifications_bp.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    """
    當前使用者的通知 (最新的在前)

    Query 參數: unread_only, type, page, per_page
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    notification_type = request.args.get('type')
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    query = Notification.query.filter_by(user_id=current_user.id)

    if unread_only:
        query = query.filter_by(is_read=False)

    if notification_type:
        query = query.filter_by(type=notification_type)

    notifications = query.order_by(
        Notification.created_at.desc(), Notification.id.desc()
    ).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'notifications': [notification_to_dict(n) for n in notifications.items],
        'total': notifications.total,
        'unread_count': Notification.query.filter_by(user_id=current_user.id, is_read=False).count(),
        'page': page,
        'per_page': per_page,
        'total_pages': notifications.pages
    }), 200

# ============================================
# 2. 標記通知為已讀
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>/read', methods=['PATCH'])
@jwt_required()
def mark_notification_read(notification_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    notification = _own_notification(notification_id, current_user.id)
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
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    try:
        updated = Notification.query.filter_by(user_id=current_user.id, is_read=False)\
            .update({'is_read': True})
        db.session.commit()

        return jsonify({
            'message': 'All notifications marked as read',
            'updated': updated
        }), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to mark notifications read for user {current_user.id}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update notifications'}), 500

# ============================================
# 3. 刪除通知
# ============================================

@notifications_bp.route('/notifications/<int:notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    notification = _own_notification(notification_id, current_user.id)
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
