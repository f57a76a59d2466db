from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import db, Allocation, Project, ProjectMember, Task, User
from auth import get_current_user, validate_request_data, user_summary
from workload import workload_by_user, status_counts
from datetime import datetime
import logging

allocations_bp = Blueprint('allocations', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class _DateRangeSchema(Schema):
    """end_date 不能早於 start_date"""

    @validates_schema
    def validate_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise ValidationError('End date must be on or after start date', 'end_date')

class CreateAllocationSchema(_DateRangeSchema):
    """建立排程驗證"""
    user_id = fields.Int(required=True, error_messages={'required': 'User ID is required'})
    project_id = fields.Int(required=True, error_messages={'required': 'Project ID is required'})
    task_id = fields.Int(allow_none=True)
    hours_per_day = fields.Float(validate=validate.Range(min=0, max=24), load_default=8)
    start_date = fields.Date(required=True)
    end_date = fields.Date(required=True)
    notes = fields.Str(allow_none=True, validate=validate.Length(max=2000))

class UpdateAllocationSchema(_DateRangeSchema):
    task_id = fields.Int(allow_none=True)
    hours_per_day = fields.Float(validate=validate.Range(min=0, max=24))
    start_date = fields.Date()
    end_date = fields.Date()
    notes = fields.Str(allow_none=True, validate=validate.Length(max=2000))

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def allocation_to_dict(allocation):
    return {
        'id': allocation.id,
        'user': user_summary(allocation.user),
        'project': {
            'id': allocation.project.id,
            'name': allocation.project.name
        },
        'task': {
            'id': allocation.task.id,
            'name': allocation.task.name
        } if allocation.task else None,
        'hours_per_day': allocation.hours_per_day,
        'start_date': _iso(allocation.start_date),
        'end_date': _iso(allocation.end_date),
        'notes': allocation.notes,
        'created_at': _iso(allocation.created_at)
    }

def _parse_date(value):
    return datetime.strptime(value, '%Y-%m-%d').date()

def check_task_in_project(task_id, project_id):
    """
    Returns:
        tuple: (error message | None, status code)
    """
    task = db.session.get(Task, task_id)
    if not task:
        return 'Task not found', 404
    if task.project_id != project_id:
        return 'Task does not belong to this project', 400
    return None, 200

# ============================================
# 排程列表 / 查詢
# ============================================

@allocations_bp.route('/allocations', methods=['GET'])
@jwt_required()
def list_allocations():
    """
    排程列表

    篩選: user_id, project_id, task_id,
    start_date / end_date (和區間有交集), date (當天有效)
    """
    query = Allocation.query.options(
        joinedload(Allocation.user),
        joinedload(Allocation.project),
        joinedload(Allocation.task)
    )

    for field in ['user_id', 'project_id', 'task_id']:
        value = request.args.get(field, type=int)
        if value:
            query = query.filter(getattr(Allocation, field) == value)

    try:
        range_start = request.args.get('start_date')
        if range_start:
            query = query.filter(Allocation.end_date >= _parse_date(range_start))

        range_end = request.args.get('end_date')
        if range_end:
            query = query.filter(Allocation.start_date <= _parse_date(range_end))

        day = request.args.get('date')
        if day:
            day = _parse_date(day)
            query = query.filter(Allocation.start_date <= day, Allocation.end_date >= day)
    except ValueError:
        return jsonify({'error': 'Invalid date format, expected YYYY-MM-DD'}), 400

    allocations = query.order_by(Allocation.start_date, Allocation.id).all()

    return jsonify({
        'allocations': [allocation_to_dict(a) for a in allocations],
        'total': len(allocations)
    }), 200

@allocations_bp.route('/allocations/<int:allocation_id>', methods=['GET'])
@jwt_required()
def get_allocation(allocation_id):
    allocation = db.session.get(Allocation, allocation_id)
    if not allocation:
        return jsonify({'error': 'Allocation not found'}), 404
    return jsonify(allocation_to_dict(allocation)), 200

# ============================================
# 建立 / 更新 / 刪除排程
# ============================================

@allocations_bp.route('/allocations', methods=['POST'])
@jwt_required()
def create_allocation():
    """排程給專案成員;有給 task_id 時任務必須屬於同一個專案"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateAllocationSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = db.session.get(User, result['user_id'])
    if not user:
        return jsonify({'error': 'User not found'}), 404

    if not db.session.get(Project, result['project_id']):
        return jsonify({'error': 'Project not found'}), 404

    is_member = ProjectMember.query.filter_by(project_id=result['project_id'], user_id=user.id).first()
    if not is_member:
        return jsonify({'error': 'User is not a member of this project'}), 400

    if result.get('task_id'):
        error, status_code = check_task_in_project(result['task_id'], result['project_id'])
        if error:
            return jsonify({'error': error}), status_code

    allocation = Allocation(**result)

    try:
        db.session.add(allocation)
        db.session.commit()

        logger.info(
            f"Allocation created: {user.email} on project {allocation.project_id}, "
            f"{allocation.hours_per_day}h/day {allocation.start_date} - {allocation.end_date}"
        )

        return jsonify({
            'message': 'Allocation created successfully',
            'allocation': allocation_to_dict(allocation)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Allocation creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Allocation creation failed due to server error'}), 500

@allocations_bp.route('/allocations/<int:allocation_id>', methods=['PATCH'])
@jwt_required()
def update_allocation(allocation_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    allocation = db.session.get(Allocation, allocation_id)
    if not allocation:
        return jsonify({'error': 'Allocation not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateAllocationSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    # 只改其中一端時,要和原本的另一端比
    start = result.get('start_date', allocation.start_date)
    end = result.get('end_date', allocation.end_date)
    if end < start:
        return jsonify({'error': 'Validation failed',
                        'details': {'end_date': ['End date must be on or after start date']}}), 400

    if result.get('task_id'):
        error, status_code = check_task_in_project(result['task_id'], allocation.project_id)
        if error:
            return jsonify({'error': error}), status_code

    try:
        for field, value in result.items():
            setattr(allocation, field, value)
        db.session.commit()

        logger.info(f"Allocation {allocation_id} updated by {current_user.email}: {sorted(result)}")

        return jsonify({
            'message': 'Allocation updated successfully',
            'allocation': allocation_to_dict(allocation)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Allocation update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Allocation update failed due to server error'}), 500

@allocations_bp.route('/allocations/<int:allocation_id>', methods=['DELETE'])
@jwt_required()
def delete_allocation(allocation_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    allocation = db.session.get(Allocation, allocation_id)
    if not allocation:
        return jsonify({'error': 'Allocation not found'}), 404

    try:
        db.session.delete(allocation)
        db.session.commit()
        logger.info(f"Allocation {allocation_id} deleted by {current_user.email}")
        return jsonify({'message': 'Allocation deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Allocation deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Allocation deletion failed due to server error'}), 500

# ============================================
# 工作負載摘要
# ============================================

@allocations_bp.route('/allocations/workload-summary', methods=['GET'])
@jwt_required()
def get_workload_summary():
    """
    某一天每個人的排程工時與負載等級

    只列出當天有排程的人;門檻見 config 的 WORKLOAD_FULL_DAY_HOURS / WORKLOAD_BUSY_HOURS
    """
    value = request.args.get('date')
    if not value:
        return jsonify({'error': 'Date parameter is required'}), 400

    try:
        day = _parse_date(value)
    except ValueError:
        return jsonify({'error': 'Invalid date format, expected YYYY-MM-DD'}), 400

    allocations = Allocation.query.filter(
        Allocation.start_date <= day,
        Allocation.end_date >= day
    ).all()

    workloads = workload_by_user(
        allocations,
        day,
        full_day=current_app.config['WORKLOAD_FULL_DAY_HOURS'],
        busy=current_app.config['WORKLOAD_BUSY_HOURS']
    )
    users = {u.id: u for u in User.query.filter(User.id.in_(list(workloads))).all()} if workloads else {}

    entries = sorted(workloads.values(), key=lambda w: (-w.total_hours, w.user_id))

    return jsonify({
        'date': day.isoformat(),
        'users': [{**entry.to_dict(), 'user': user_summary(users.get(entry.user_id))} for entry in entries],
        'status_counts': status_counts(entries),
        'total_users': len(entries)
    }), 200
