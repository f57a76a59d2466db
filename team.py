from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from marshmallow import Schema, fields, validate
from models import db, User, Task, ProjectMember, PerformanceFlag
from auth import get_current_user, validate_request_data, user_summary
from projects import log_activity
import logging

team_bp = Blueprint('team', __name__)
logger = logging.getLogger(__name__)

FLAG_TYPES = ['red', 'orange', 'yellow', 'green']

# ============================================
# Input Validation Schemas
# ============================================

class UpdateTeamMemberSchema(Schema):
    """更新成員驗證"""
    username = fields.Str(validate=validate.Length(min=2, max=50, error='Username must be 2-50 characters'))
    is_active = fields.Bool()

class CreateFlagSchema(Schema):
    """建立績效旗標驗證"""
    user_id = fields.Int(required=True, error_messages={'required': 'Team member ID is required'})
    task_id = fields.Int(allow_none=True)
    flag_type = fields.Str(required=True, validate=validate.OneOf(FLAG_TYPES))
    reason = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=1000, error='Reason must be 1-1000 characters'),
        error_messages={'required': 'Reason is required'}
    )

class UpdateFlagSchema(Schema):
    flag_type = fields.Str(validate=validate.OneOf(FLAG_TYPES))
    reason = fields.Str(validate=validate.Length(min=1, max=1000, error='Reason must be 1-1000 characters'))

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def flag_to_dict(flag):
    return {
        'id': flag.id,
        'user': user_summary(flag.user),
        'task': {
            'id': flag.task.id,
            'name': flag.task.name,
            'project_id': flag.task.project_id
        } if flag.task else None,
        'flag_type': flag.flag_type,
        'reason': flag.reason,
        'added_by': user_summary(flag.author),
        'created_at': _iso(flag.created_at),
        'updated_at': _iso(flag.updated_at)
    }

def flag_summary(user_id):
    """每種顏色的數量與最後一次標記時間,沒有的顏色也列出來 (count 0)"""
    rows = db.session.query(
        PerformanceFlag.flag_type,
        func.count(PerformanceFlag.id),
        func.max(PerformanceFlag.created_at)
    ).filter(
        PerformanceFlag.user_id == user_id
    ).group_by(PerformanceFlag.flag_type).all()

    by_type = {flag_type: (count, last) for flag_type, count, last in rows}
    return [{
        'flag_type': flag_type,
        'count': by_type.get(flag_type, (0, None))[0],
        'last_flag_date': _iso(by_type.get(flag_type, (0, None))[1])
    } for flag_type in FLAG_TYPES]

def task_stats_subquery():
    """每個使用者被指派的任務數與未完成數"""
    return db.session.query(
        Task.assigned_to.label('user_id'),
        func.count(Task.id).label('assigned_tasks'),
        func.sum(case((Task.status != 'completed', 1), else_=0)).label('open_tasks')
    ).filter(Task.assigned_to.isnot(None)).group_by(Task.assigned_to).subquery()

# ============================================
# 團隊成員
# ============================================

@team_bp.route('/team', methods=['GET'])
@jwt_required()
def list_team_members():
    """
    團隊成員列表 (分頁)

    Query 參數: search (username / email), status (active / inactive)
    """
    stats = task_stats_subquery()
    query = db.session.query(
        User,
        func.coalesce(stats.c.assigned_tasks, 0),
        func.coalesce(stats.c.open_tasks, 0)
    ).outerjoin(stats, stats.c.user_id == User.id)

    search = request.args.get('search')
    if search:
        query = query.filter(or_(
            User.username.ilike(f'%{search}%'),
            User.email.ilike(f'%{search}%')
        ))

    status = request.args.get('status')
    if status in ('active', 'inactive'):
        query = query.filter(User.is_active.is_(status == 'active'))

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    total = query.count()
    rows = query.order_by(User.username, User.id).offset((page - 1) * per_page).limit(per_page).all()

    return jsonify({
        'team_members': [{
            **user_summary(user),
            'is_active': user.is_active,
            'assigned_tasks': int(assigned),
            'open_tasks': int(open_tasks or 0)
        } for user, assigned, open_tasks in rows],
        'total': total,
        'page': page,
        'per_page': per_page
    }), 200

@team_bp.route('/team/<int:user_id>', methods=['GET'])
@jwt_required()
def get_team_member(user_id):
    """單一成員: 參與的專案、任務統計、績效旗標摘要"""
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'Team member not found'}), 404

    memberships = ProjectMember.query.filter_by(user_id=user_id).all()
    status_rows = db.session.query(Task.status, func.count(Task.id)).filter(
        Task.assigned_to == user_id
    ).group_by(Task.status).all()

    return jsonify({
        **user_summary(user),
        'is_active': user.is_active,
        'created_at': _iso(user.created_at),
        'projects': [{
            'id': m.project.id,
            'name': m.project.name,
            'role': m.role
        } for m in memberships],
        'tasks_by_status': {status: count for status, count in status_rows},
        'performance_flags': flag_summary(user_id)
    }), 200

@team_bp.route('/team/<int:user_id>', methods=['PATCH'])
@jwt_required()
def update_team_member(user_id):
    """更新名稱或啟用狀態;停用的帳號不能登入,自己不能停用自己"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'Team member not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateTeamMemberSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if result.get('is_active') is False and user.id == current_user.id:
        return jsonify({'error': 'You cannot deactivate your own account'}), 400

    changes = {}
    for field in ['username', 'is_active']:
        if field in result and getattr(user, field) != result[field]:
            changes[field] = {'old': getattr(user, field), 'new': result[field]}
            setattr(user, field, result[field])

    if not changes:
        return jsonify({'message': 'No changes to update'}), 200

    try:
        db.session.commit()
        logger.info(f"Team member {user.email} updated by {current_user.email}: {sorted(changes)}")
        return jsonify({
            'message': 'Team member updated successfully',
            'team_member': {**user_summary(user), 'is_active': user.is_active},
            'changes': changes
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Team member update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Team member update failed due to server error'}), 500

# ============================================
# 績效旗標
# ============================================

@team_bp.route('/performance-flags', methods=['POST'])
@jwt_required()
def create_performance_flag():
    """
    對成員加一個績效旗標,可以掛在某個任務上

    掛任務時在該專案的活動日誌留一筆紀錄
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateFlagSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = db.session.get(User, result['user_id'])
    if not user:
        return jsonify({'error': 'Team member not found'}), 404

    task = None
    if result.get('task_id'):
        task = db.session.get(Task, result['task_id'])
        if not task:
            return jsonify({'error': 'Task not found'}), 404

    flag = PerformanceFlag(
        user_id=user.id,
        task_id=task.id if task else None,
        flag_type=result['flag_type'],
        reason=result['reason'],
        added_by=current_user.id
    )

    try:
        db.session.add(flag)
        db.session.flush()

        if task:
            log_activity(task.project_id, current_user.id, 'add_performance_flag', 'task', task.id,
                         {'user_id': user.id, 'flag_type': flag.flag_type})

        db.session.commit()

        logger.info(f"{flag.flag_type} flag added for {user.email} by {current_user.email}")

        return jsonify({
            'message': 'Performance flag created successfully',
            'flag': flag_to_dict(flag)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Performance flag creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Performance flag creation failed due to server error'}), 500

@team_bp.route('/performance-flags/<int:flag_id>', methods=['PATCH'])
@jwt_required()
def update_performance_flag(flag_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    flag = db.session.get(PerformanceFlag, flag_id)
    if not flag:
        return jsonify({'error': 'Performance flag not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateFlagSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if not result:
        return jsonify({'error': 'No fields to update'}), 400

    try:
        for field, value in result.items():
            setattr(flag, field, value)
        db.session.commit()

        logger.info(f"Performance flag {flag_id} updated by {current_user.email}")

        return jsonify({
            'message': 'Performance flag updated successfully',
            'flag': flag_to_dict(flag)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Performance flag update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Performance flag update failed due to server error'}), 500

@team_bp.route('/performance-flags/<int:flag_id>', methods=['DELETE'])
@jwt_required()
def delete_performance_flag(flag_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    flag = db.session.get(PerformanceFlag, flag_id)
    if not flag:
        return jsonify({'error': 'Performance flag not found'}), 404

    try:
        db.session.delete(flag)
        db.session.commit()
        logger.info(f"Performance flag {flag_id} deleted by {current_user.email}")
        return jsonify({'message': 'Performance flag deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Performance flag deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Performance flag deletion failed due to server error'}), 500

@team_bp.route('/team/<int:user_id>/performance-flags', methods=['GET'])
@jwt_required()
def get_member_flags(user_id):
    """成員的旗標 (最新的在前),可用 flag_type 篩選"""
    if not db.session.get(User, user_id):
        return jsonify({'error': 'Team member not found'}), 404

    query = PerformanceFlag.query.filter_by(user_id=user_id)
    flag_type = request.args.get('flag_type')
    if flag_type:
        query = query.filter_by(flag_type=flag_type)

    flags = query.order_by(PerformanceFlag.created_at.desc(), PerformanceFlag.id.desc()).all()
    return jsonify({'flags': [flag_to_dict(f) for f in flags], 'total': len(flags)}), 200

@team_bp.route('/team/<int:user_id>/performance-flags/summary', methods=['GET'])
@jwt_required()
def get_member_flag_summary(user_id):
    if not db.session.get(User, user_id):
        return jsonify({'error': 'Team member not found'}), 404
    return jsonify({'user_id': user_id, 'summary': flag_summary(user_id)}), 200

@team_bp.route('/tasks/<int:task_id>/performance-flags', methods=['GET'])
@jwt_required()
def get_task_flags(task_id):
    if not db.session.get(Task, task_id):
        return jsonify({'error': 'Task not found'}), 404

    flags = PerformanceFlag.query.filter_by(task_id=task_id).order_by(
        PerformanceFlag.created_at.desc(), PerformanceFlag.id.desc()
    ).all()
    return jsonify({'flags': [flag_to_dict(f) for f in flags], 'total': len(flags)}), 200
