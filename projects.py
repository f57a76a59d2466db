from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy.orm import joinedload
from sqlalchemy import func, case
from marshmallow import Schema, fields, validate
from models import db, Project, ProjectMember, Category, ActivityLog, Notification, Task, User
from auth import get_current_user, validate_request_data, user_summary
from domain import ProjectSnapshot
from progress import (
    PROGRESS_SOURCES, project_progress, resolve_progress_source,
    stage_progress, grade_progress, stages_breakdown, hierarchy_breakdown, annotate_tree,
)
from weights import weight_report
from bulk_tasks import BulkTaskGenerator
from repository import SQLAlchemyTaskStore, load_project_snapshot, load_tasks
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

PROJECT_STATUSES = ['planning', 'active', 'on-hold', 'completed', 'cancelled']
PRIORITIES = ['low', 'medium', 'high', 'urgent']
MEMBER_ROLES = ['owner', 'admin', 'member', 'viewer']
MANAGER_ROLES = ('owner', 'admin')

# ============================================
# Input Validation Schemas
# ============================================

class CreateProjectSchema(Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    category_id = fields.Int(allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES), load_default='planning')
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='medium')
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    progress_source = fields.Str(validate=validate.OneOf(PROGRESS_SOURCES), load_default='auto')

class UpdateProjectSchema(Schema):
    """更新專案驗證"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    category_id = fields.Int(allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES))
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    progress_source = fields.Str(validate=validate.OneOf(PROGRESS_SOURCES))

UPDATABLE_FIELDS = ['name', 'description', 'category_id', 'status', 'priority',
                    'start_date', 'end_date', 'progress_source']

class AddMemberSchema(Schema):
    """新增成員驗證"""
    user_id = fields.Int(required=True, error_messages={'required': 'User ID is required'})
    role = fields.Str(validate=validate.OneOf(MEMBER_ROLES), load_default='member')

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def project_to_dict(project):
    return {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'category_id': project.category_id,
        'category_name': project.category.name if project.category else None,
        'status': project.status,
        'priority': project.priority,
        'start_date': _iso(project.start_date),
        'end_date': _iso(project.end_date),
        'progress_source': project.progress_source,
        'created_by': user_summary(project.creator),
        'created_at': _iso(project.created_at),
        'updated_at': _iso(project.updated_at)
    }

def category_exists(category_id):
    return category_id is None or db.session.get(Category, category_id) is not None

def check_project_admin(project_id, user_id):
    """使用者是否能管理專案成員 (owner / admin)"""
    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    return member is not None and member.role in MANAGER_ROLES

def member_to_dict(member):
    return {
        **user_summary(member.user),
        'role': member.role,
        'joined_at': _iso(member.joined_at)
    }

def log_activity(project_id, user_id, action, resource_type, resource_id, details=None):
    """加一筆 ActivityLog (不 commit)"""
    db.session.add(ActivityLog(
        project_id=project_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details
    ))

# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if not category_exists(result.get('category_id')):
        return jsonify({'error': 'Category not found'}), 404

    project = Project(created_by=current_user.id, **result)

    try:
        db.session.add(project)
        db.session.flush()  # 取得 project.id 但不 commit

        # 建立者自動成為 owner
        db.session.add(ProjectMember(project_id=project.id, user_id=current_user.id, role='owner'))

        log_activity(project.id, current_user.id, 'create_project', 'project', project.id,
                     {'name': project.name})

        db.session.commit()

        logger.info(f"Project created: {project.name} by user {current_user.email}")

        return jsonify({
            'message': 'Project created successfully',
            'project': project_to_dict(project)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project creation failed due to server error'}), 500

# ============================================
# 專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def list_projects():
    """
    專案列表 (分頁)

    Query 參數: status, category_id, search, page, per_page
    任務數量用 subquery 一次統計,避免 N+1
    """
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = min(per_page, current_app.config['MAX_PAGE_SIZE'])

    task_stats = db.session.query(
        Task.project_id,
        func.count(Task.id).label('total_tasks'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed_tasks')
    ).group_by(Task.project_id).subquery()

    query = db.session.query(
        Project,
        task_stats.c.total_tasks,
        task_stats.c.completed_tasks
    ).outerjoin(
        task_stats, Project.id == task_stats.c.project_id
    ).options(
        joinedload(Project.creator),
        joinedload(Project.category)
    )

    status = request.args.get('status')
    if status:
        query = query.filter(Project.status == status)

    category_id = request.args.get('category_id', type=int)
    if category_id:
        query = query.filter(Project.category_id == category_id)

    search = request.args.get('search')
    if search:
        query = query.filter(Project.name.ilike(f'%{search}%'))

    paginated = query.order_by(Project.created_at.desc(), Project.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    projects_list = []
    for project, total_tasks, completed_tasks in paginated.items:
        item = project_to_dict(project)
        item['task_count'] = total_tasks or 0
        item['completed_task_count'] = completed_tasks or 0
        projects_list.append(item)

    return jsonify({
        'projects': projects_list,
        'total': paginated.total,
        'page': page,
        'per_page': per_page,
        'total_pages': paginated.pages
    }), 200

# ============================================
# 查詢單一專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    snapshot = load_project_snapshot(project)
    tasks = load_tasks(project.id)

    data = project_to_dict(project)
    data['progress'] = project_progress(snapshot, tasks).progress
    data['task_count'] = len(tasks)
    return jsonify(data), 200

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['PATCH'])
@jwt_required()
def update_project(project_id):
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProjectSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'category_id' in result and not category_exists(result['category_id']):
        return jsonify({'error': 'Category not found'}), 404

    # 記錄變更
    changes = {}
    for field in UPDATABLE_FIELDS:
        if field in result:
            old_value = getattr(project, field)
            new_value = result[field]
            if old_value != new_value:
                changes[field] = {'old': _json_value(old_value), 'new': _json_value(new_value)}
                setattr(project, field, new_value)

    if not changes:
        return jsonify({'message': 'No changes to update', 'project': project_to_dict(project)}), 200

    try:
        log_activity(project_id, current_user.id, 'update_project', 'project', project_id,
                     {'changes': changes})
        db.session.commit()

        logger.info(f"Project {project_id} updated by user {current_user.email}")

        return jsonify({
            'message': 'Project updated successfully',
            'project': project_to_dict(project),
            'changes': changes
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project update failed due to server error'}), 500

def _json_value(value):
    # date 進 ActivityLog.details (JSON 欄位) 前要先轉字串
    return value.isoformat() if hasattr(value, 'isoformat') else value

# ============================================
# 刪除專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    """刪除專案,cascade 一併刪除階層、任務、成員、排程、通知、活動日誌"""
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    try:
        project_name = project.name
        db.session.delete(project)
        db.session.commit()

        logger.info(f"Project deleted: {project_name} by user {current_user.email}")

        return jsonify({'message': 'Project deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Project deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Project deletion failed due to server error'}), 500

# ============================================
# 專案進度
# ============================================

@projects_bp.route('/<int:project_id>/progress', methods=['GET'])
@jwt_required()
def get_project_progress(project_id):
    """
    專案整體進度,外加 stage 和 grade 兩組明細

    整體進度只取其中一組 (見 progress.resolve_progress_source),
    另一組仍然回傳給前端參考。
    """
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    snapshot = load_project_snapshot(project)
    tasks = load_tasks(project.id)
    tolerance = current_app.config['WEIGHT_TOLERANCE']

    overall = project_progress(snapshot, tasks)

    return jsonify({
        'project_id': project.id,
        'progress': overall.progress,
        'source': resolve_progress_source(snapshot),
        'overall': overall.to_dict(),
        'stages': {
            **stages_breakdown(snapshot, tasks).to_dict(),
            'weights': weight_report(snapshot.stages, 'Stage', tolerance),
            'items': [{
                'id': stage.id,
                'name': stage.name,
                'weight': stage.weight,
                'order_index': stage.order,
                'progress': stage_progress(stage.id, tasks).progress
            } for stage in snapshot.stages]
        },
        'hierarchy': {
            **hierarchy_breakdown(snapshot, tasks).to_dict(),
            'weights': weight_report(snapshot.grades, 'Grade', tolerance),
            'items': [{
                'id': grade.id,
                'name': grade.name,
                'weight': grade.weight,
                'order_index': grade.order,
                'progress': grade_progress(grade, tasks).progress
            } for grade in snapshot.grades]
        },
        'task_count': len(tasks)
    }), 200

# ============================================
# 階層樹 (每個節點附進度)
# ============================================

@projects_bp.route('/<int:project_id>/hierarchy', methods=['GET'])
@jwt_required()
def get_project_hierarchy(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    snapshot = load_project_snapshot(project)
    tasks = load_tasks(project.id)

    return jsonify({
        'project_id': project.id,
        'grades': annotate_tree(snapshot.grades, tasks)
    }), 200

# ============================================
# 批量產生任務
# ============================================

@projects_bp.route('/<int:project_id>/bulk-create-tasks', methods=['POST'])
@jwt_required()
def bulk_create_tasks(project_id):
    """
    對每個最底層單位 x 每個 stage 產生任務,已存在的組合跳過

    前置條件不成立 (沒有 category / stage / 階層) 時
    BulkTaskGenerator 會丟 errors.ValidationError,由 app 的 error handler 轉成 400。
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    snapshot = ProjectSnapshot(
        id=project.id,
        name=project.name,
        category_id=project.category_id,
        end_date=project.end_date
    )

    generator = BulkTaskGenerator(
        SQLAlchemyTaskStore(),
        estimated_hours=current_app.config['BULK_TASK_ESTIMATED_HOURS'],
        default_duration_days=current_app.config['BULK_TASK_DEFAULT_DAYS']
    )
    result = generator.generate(snapshot, created_by=current_user.id)

    logger.info(
        f"Bulk task generation for project {project_id}: "
        f"{result.created_count} created, {result.skipped_count} skipped "
        f"({result.total_units} units x {result.total_stages} stages)"
    )

    if result.created_count:
        # 任務已經逐筆 commit,這裡失敗只影響日誌和通知
        try:
            log_activity(project_id, current_user.id, 'bulk_create_tasks', 'project', project_id, {
                'created': result.created_count,
                'skipped': result.skipped_count
            })
            db.session.add(Notification(
                user_id=current_user.id,
                type='tasks_generated',
                title=f'{result.created_count} tasks generated',
                content=f'{result.created_count} tasks were generated for project "{snapshot.name}"',
                related_project_id=project_id
            ))
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to record bulk generation for project {project_id}: {str(e)}",
                         exc_info=True)

    status_code = 201 if result.created_count else 200
    return jsonify({
        'message': f'Created {result.created_count} tasks, skipped {result.skipped_count}',
        **result.to_dict()
    }), status_code

# ============================================
# 專案成員
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@jwt_required()
def get_project_members(project_id):
    """取得專案成員列表"""
    if not db.session.get(Project, project_id):
        return jsonify({'error': 'Project not found'}), 404

    members = ProjectMember.query.filter_by(project_id=project_id).options(
        joinedload(ProjectMember.user)
    ).order_by(ProjectMember.joined_at, ProjectMember.id).all()

    return jsonify({
        'members': [member_to_dict(m) for m in members],
        'total': len(members)
    }), 200

@projects_bp.route('/<int:project_id>/members', methods=['POST'])
@jwt_required()
def add_project_member(project_id):
    """
    新增專案成員 (只有 owner / admin 可以)

    owner 只在建立專案時指定,這裡加 owner 會被拒絕;被加入的人會收到通知
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    project = db.session.get(Project, project_id)
    if not project:
        return jsonify({'error': 'Project not found'}), 404

    if not check_project_admin(project_id, current_user.id):
        return jsonify({'error': 'Only project owners and admins can manage members'}), 403

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(AddMemberSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if result['role'] == 'owner':
        return jsonify({'error': 'A project has only one owner'}), 400

    user = db.session.get(User, result['user_id'])
    if not user:
        return jsonify({'error': 'Team member not found'}), 404

    existing = ProjectMember.query.filter_by(project_id=project_id, user_id=user.id).first()
    if existing:
        return jsonify({'error': 'User is already a member of this project'}), 409

    try:
        member = ProjectMember(project_id=project_id, user_id=user.id, role=result['role'])
        db.session.add(member)

        if user.id != current_user.id:
            db.session.add(Notification(
                user_id=user.id,
                type='member_added',
                title=f'{current_user.username} added you to a project',
                content=f'Project: {project.name} (role: {member.role})',
                related_project_id=project_id
            ))

        log_activity(project_id, current_user.id, 'add_member', 'member', user.id,
                     {'username': user.username, 'role': member.role})

        db.session.commit()

        logger.info(f"Member added to project {project_id}: user {user.email} as {member.role}")

        return jsonify({
            'message': 'Member added successfully',
            'member': member_to_dict(member)
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

    owner 不能被移除;被移除的人在這個專案裡負責的任務改回未指派
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'Authentication required'}), 401

    if not db.session.get(Project, project_id):
        return jsonify({'error': 'Project not found'}), 404

    if not check_project_admin(project_id, current_user.id):
        return jsonify({'error': 'Only project owners and admins can manage members'}), 403

    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    if member.role == 'owner':
        return jsonify({'error': 'Cannot remove the project owner'}), 400

    try:
        unassigned = Task.query.filter_by(project_id=project_id, assigned_to=user_id).update(
            {'assigned_to': None}, synchronize_session='fetch'
        )
        db.session.delete(member)
        log_activity(project_id, current_user.id, 'remove_member', 'member', user_id,
                     {'unassigned_tasks': unassigned})
        db.session.commit()

        logger.info(f"Member {user_id} removed from project {project_id}, {unassigned} tasks unassigned")

        return jsonify({
            'message': 'Member removed successfully',
            'unassigned_tasks': unassigned
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error removing member: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to remove member due to server error'}), 500
