from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from sqlalchemy import or_
from marshmallow import Schema, fields, validate
from models import (
    db, Task, Project, ProjectMember, Stage, Grade, Book, Unit, Lesson, Notification, ActivityLog, User
)
from auth import get_current_user, validate_request_data, user_summary
from progress import TASK_STATUSES, progress_for_status
from bulk_tasks import PATH_SEPARATOR, task_key, generation_key
from datetime import datetime
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

PRIORITIES = ['low', 'medium', 'high', 'urgent']

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task name is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES), load_default='not-started')
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='medium')
    stage_id = fields.Int(allow_none=True)
    grade_id = fields.Int(allow_none=True)
    book_id = fields.Int(allow_none=True)
    unit_id = fields.Int(allow_none=True)
    lesson_id = fields.Int(allow_none=True)
    assigned_to = fields.Int(allow_none=True)
    component_path = fields.Str(allow_none=True, validate=validate.Length(max=1000))
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(min=0))

class UpdateTaskSchema(Schema):
    """更新任務驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES))
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    stage_id = fields.Int(allow_none=True)
    assigned_to = fields.Int(allow_none=True)
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(min=0))
    actual_hours = fields.Float(allow_none=True, validate=validate.Range(min=0))
    progress = fields.Int(validate=validate.Range(min=0, max=100))

UPDATABLE_FIELDS = ['name', 'description', 'status', 'priority', 'stage_id', 'assigned_to',
                    'start_date', 'end_date', 'estimated_hours', 'actual_hours', 'progress']

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def task_to_dict(task):
    return {
        'id': task.id,
        'name': task.name,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'progress': task.progress,
        'project_id': task.project_id,
        'stage_id': task.stage_id,
        'stage_name': task.stage.name if task.stage else None,
        'grade_id': task.grade_id,
        'book_id': task.book_id,
        'unit_id': task.unit_id,
        'lesson_id': task.lesson_id,
        'component_path': task.component_path,
        'estimated_hours': task.estimated_hours,
        'actual_hours': task.actual_hours,
        'start_date': _iso(task.start_date),
        'end_date': _iso(task.end_date),
        'assigned_to': user_summary(task.assignee),
        'created_by': user_summary(task.creator),
        'created_at': _iso(task.created_at),
        'updated_at': _iso(task.updated_at),
        'completed_at': _iso(task.completed_at)
    }

def resolve_anchor(project_id, result):
    """
    從最深的一層往上補齊祖先 id,並組出 component_path

    Returns:
        tuple: (anchor dict | None, path | None, error message | None)
    """
    lesson = unit = book = grade = None

    if result.get('lesson_id'):
        lesson = db.session.get(Lesson, result['lesson_id'])
        if not lesson:
            return None, None, 'Lesson not found'
        unit = lesson.unit
    elif result.get('unit_id'):
        unit = db.session.get(Unit, result['unit_id'])
        if not unit:
            return None, None, 'Unit not found'

    if unit:
        book = unit.book
    elif result.get('book_id'):
        book = db.session.get(Book, result['book_id'])
        if not book:
            return None, None, 'Book not found'

    if book:
        grade = book.grade
    elif result.get('grade_id'):
        grade = db.session.get(Grade, result['grade_id'])
        if not grade:
            return None, None, 'Grade not found'

    if not grade:
        return {}, None, None

    if grade.project_id != project_id:
        return None, None, 'Hierarchy node does not belong to this project'

    chain = [node for node in (grade, book, unit, lesson) if node is not None]
    anchor = {
        'grade_id': grade.id,
        'book_id': book.id if book else None,
        'unit_id': unit.id if unit else None,
        'lesson_id': lesson.id if lesson else None
    }
    return anchor, PATH_SEPARATOR.join(node.name for node in chain), None

def check_assignee(project_id, user_id):
    """
    負責人必須是專案成員

    Returns:
        tuple: (error message | None, status code)
    """
    if not db.session.get(User, user_id):
        return 'Assignee not found', 404
    is_member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if not is_member:
        return 'Assigned user is not a member of this project', 400
    return None, 200

def create_task_notification(task, action_type, actor_user):
    """
    建立任務相關通知

    assigned: 通知負責人
    completed: 通知建立者和負責人
    自己對自己的動作不通知
    """
    notification_config = {
        'assigned': {
            'type': 'task_assigned',
            'title': f'{actor_user.username} assigned a task to you',
            'recipients': [task.assigned_to]
        },
        'completed': {
            'type': 'task_completed',
            'title': f'{actor_user.username} completed a task',
            'recipients': [task.created_by, task.assigned_to]
        }
    }

    config = notification_config.get(action_type)
    if not config:
        return []

    notify_users = {user_id for user_id in config['recipients'] if user_id and user_id != actor_user.id}

    notifications = []
    for user_id in sorted(notify_users):
        notification = Notification(
            user_id=user_id,
            type=config['type'],
            title=config['title'],
            content=f'Task: {task.name}',
            related_project_id=task.project_id,
            related_task_id=task.id
        )
        notifications.append(notification)
        db.session.add(notification)

    return notifications

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@jwt_required()
def create_task(project_id):
    """
    在專案中建立任務

    progress 一律由 status 推算;有掛階層節點但沒給 component_path 時自動組出路徑
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    if not db.session.get(Project, project_id):
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if result.get('stage_id') and not db.session.get(Stage, result['stage_id']):
        return jsonify({'error': 'Stage not found'}), 404

    anchor, path, error = resolve_anchor(project_id, result)
    if error:
        return jsonify({'error': error}), 400

    if result.get('assigned_to'):
        error, status_code = check_assignee(project_id, result['assigned_to'])
        if error:
            return jsonify({'error': error}), status_code

    task = Task(
        name=result['name'],
        description=result.get('description'),
        project_id=project_id,
        stage_id=result.get('stage_id'),
        created_by=current_user.id,
        assigned_to=result.get('assigned_to'),
        status=result['status'],
        priority=result['priority'],
        progress=progress_for_status(result['status']),
        component_path=result.get('component_path') or path,
        start_date=result.get('start_date'),
        end_date=result.get('end_date'),
        estimated_hours=result.get('estimated_hours'),
        completed_at=datetime.utcnow() if result['status'] == 'completed' else None,
        **anchor
    )

    try:
        db.session.add(task)
        db.session.flush()  # 取得 task.id

        if task.assigned_to:
            create_task_notification(task, 'assigned', current_user)

        db.session.add(ActivityLog(
            project_id=project_id,
            user_id=current_user.id,
            action='create_task',
            resource_type='task',
            resource_id=task.id,
            details={'name': task.name, 'stage_id': task.stage_id, 'status': task.status,
                     'assigned_to': task.assigned_to}
        ))

        db.session.commit()

        logger.info(f"Task created: {task.name} in project {project_id} by user {current_user.email}")

        return jsonify({
            'message': 'Task created successfully',
            'task': task_to_dict(task)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task creation failed due to server error'}), 500

# ============================================
# 查詢專案的所有任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
@jwt_required()
def get_project_tasks(project_id):
    """
    專案的任務列表 (分頁)

    篩選: status, priority, stage_id, grade_id, book_id, unit_id, lesson_id, assigned_to, search
    assigned_to=none 只列出未指派的任務
    排序: sort_by (created_at / end_date / priority / component_path), sort_order
    """
    if not db.session.get(Project, project_id):
        return jsonify({'error': 'Project not found'}), 404

    query = Task.query.filter_by(project_id=project_id).options(
        joinedload(Task.creator),
        joinedload(Task.assignee),
        joinedload(Task.stage)
    )

    for field in ['status', 'priority']:
        value = request.args.get(field)
        if value:
            query = query.filter(getattr(Task, field) == value)

    for field in ['stage_id', 'grade_id', 'book_id', 'unit_id', 'lesson_id']:
        value = request.args.get(field, type=int)
        if value:
            query = query.filter(getattr(Task, field) == value)

    assigned_to = request.args.get('assigned_to')
    if assigned_to == 'none':
        query = query.filter(Task.assigned_to.is_(None))
    elif assigned_to:
        if not assigned_to.isdigit():
            return jsonify({'error': 'assigned_to must be a user id or "none"'}), 400
        query = query.filter(Task.assigned_to == int(assigned_to))

    search = request.args.get('search')
    if search:
        query = query.filter(or_(
            Task.name.ilike(f'%{search}%'),
            Task.component_path.ilike(f'%{search}%')
        ))

    sort_by = request.args.get('sort_by', 'created_at')
    order_column = {
        'end_date': Task.end_date,
        'priority': Task.priority,
        'component_path': Task.component_path
    }.get(sort_by, Task.created_at)

    if request.args.get('sort_order', 'desc') == 'asc':
        query = query.order_by(order_column.asc(), Task.id.asc())
    else:
        query = query.order_by(order_column.desc(), Task.id.desc())

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    tasks_paginated = query.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'tasks': [task_to_dict(task) for task in tasks_paginated.items],
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
    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404
    return jsonify(task_to_dict(task)), 200

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['PATCH'])
@jwt_required()
def update_task(task_id):
    """
    更新任務

    status 改變時 progress 跟著重算,除非 body 同時給了 progress;
    狀態變成 completed 時記錄 completed_at 並通知建立者和負責人,
    換負責人時通知新的負責人 (assigned_to: null 取消指派)
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if result.get('stage_id') and not db.session.get(Stage, result['stage_id']):
        return jsonify({'error': 'Stage not found'}), 404

    if result.get('assigned_to'):
        error, status_code = check_assignee(task.project_id, result['assigned_to'])
        if error:
            return jsonify({'error': error}), status_code

    if 'status' in result and 'progress' not in result and result['status'] != task.status:
        result['progress'] = progress_for_status(result['status'])

    # 批量產生的任務換 stage 時,generation_key 也要跟著換
    if 'stage_id' in result and task.generation_key and result['stage_id'] != task.stage_id:
        new_key = generation_key(task_key(
            task.grade_id, task.book_id, task.unit_id, task.lesson_id, result['stage_id']
        ))
        duplicate = Task.query.filter(
            Task.project_id == task.project_id,
            Task.generation_key == new_key,
            Task.id != task.id
        ).first()
        if duplicate:
            return jsonify({'error': 'Task already exists for this stage'}), 409
        task.generation_key = new_key

    # 記錄變更
    changes = {}
    old_status = task.status

    for field in UPDATABLE_FIELDS:
        if field in result:
            old_value = getattr(task, field)
            new_value = result[field]
            if old_value != new_value:
                changes[field] = {'old': str(old_value), 'new': str(new_value)}
                setattr(task, field, new_value)

    # 狀態變更時自動更新 completed_at
    if 'status' in changes:
        if old_status != 'completed' and task.status == 'completed':
            task.completed_at = datetime.utcnow()
        elif old_status == 'completed' and task.status != 'completed':
            task.completed_at = None

    if not changes:
        return jsonify({'message': 'No changes to update', 'task': task_to_dict(task)}), 200

    try:
        if 'status' in changes and task.status == 'completed':
            create_task_notification(task, 'completed', current_user)
        if 'assigned_to' in changes and task.assigned_to:
            create_task_notification(task, 'assigned', current_user)

        db.session.add(ActivityLog(
            project_id=task.project_id,
            user_id=current_user.id,
            action='update_task',
            resource_type='task',
            resource_id=task_id,
            details={'changes': changes}
        ))

        db.session.commit()

        logger.info(f"Task {task_id} updated by user {current_user.email}: {sorted(changes)}")

        return jsonify({
            'message': 'Task updated successfully',
            'task': task_to_dict(task),
            'changes': changes
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task update failed due to server error'}), 500

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    task = db.session.get(Task, task_id)
    if not task:
        return jsonify({'error': 'Task not found'}), 404

    try:
        task_name = task.name
        project_id = task.project_id

        db.session.delete(task)
        db.session.add(ActivityLog(
            project_id=project_id,
            user_id=current_user.id,
            action='delete_task',
            resource_type='task',
            resource_id=task_id,
            details={'name': task_name}
        ))
        db.session.commit()

        logger.info(f"Task deleted: {task_name} by user {current_user.email}")

        return jsonify({'message': 'Task deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Task deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Task deletion failed due to server error'}), 500
