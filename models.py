from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

# ============================================
# 1. User 模型 (管理者帳號)
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(225), nullable=False)
    username = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    owned_projects = db.relationship('Project', backref='creator', lazy=True)
    tasks_assigned = db.relationship('Task', foreign_keys='Task.assigned_to', backref='assignee', lazy=True)
    tasks_created = db.relationship('Task', foreign_keys='Task.created_by', backref='creator', lazy=True)
    memberships = db.relationship('ProjectMember', backref='user', lazy=True)
    performance_flags = db.relationship('PerformanceFlag', foreign_keys='PerformanceFlag.user_id',
                                        backref='user', lazy=True, cascade='all,delete-orphan')
    allocations = db.relationship('Allocation', backref='user', lazy=True, cascade='all,delete-orphan')
    notifications = db.relationship('Notification', backref='user', lazy=True, cascade='all,delete-orphan')
    activity_logs = db.relationship('ActivityLog', backref='user', lazy=True)

# ============================================
# 2. Category / Stage / StageTemplate
# ============================================
class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    projects = db.relationship('Project', backref='category', lazy=True)
    stage_templates = db.relationship('StageTemplate', backref='category', lazy=True,
                                      cascade='all,delete-orphan',
                                      order_by='StageTemplate.order_index')


class Stage(db.Model):
    """可重複使用的製作階段 (例如 Writing, Review, Design)"""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯
    templates = db.relationship('StageTemplate', backref='stage', lazy=True, cascade='all,delete-orphan')
    tasks = db.relationship('Task', backref='stage', lazy=True)


class StageTemplate(db.Model):
    """category 要走哪些 stage、順序與權重"""
    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False)
    stage_id = db.Column(db.Integer, db.ForeignKey('stage.id'), nullable=False)
    order_index = db.Column(db.Integer, default=0)
    weight = db.Column(db.Float, default=0)
    is_default = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 唯一性約束
    __table_args__ = (
        db.UniqueConstraint('category_id', 'stage_id', name='unique_category_stage'),
    )

# ============================================
# 3. Project 模型
# ============================================
class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    status = db.Column(db.String(20), default='planning')  # planning, active, on-hold, completed, cancelled
    priority = db.Column(db.String(20), default='medium')
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    progress_source = db.Column(db.String(20), default='auto')  # auto, stages, hierarchy, combined
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    # 關聯 (刪除專案時一併刪除)
    grades = db.relationship('Grade', backref='project', lazy=True, cascade='all,delete-orphan',
                             order_by='[Grade.order_index, Grade.name]')
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    members = db.relationship('ProjectMember', backref='project', lazy=True, cascade='all,delete-orphan')
    allocations = db.relationship('Allocation', backref='project', lazy=True, cascade='all,delete-orphan')
    notifications = db.relationship('Notification', backref='project', lazy=True, cascade='all,delete-orphan')
    activity_logs = db.relationship('ActivityLog', backref='project', lazy=True, cascade='all,delete-orphan')

    # 索引
    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_category', 'category_id'),
    )

# ============================================
# 3.1 ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')  # owner, admin, member, viewer
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 唯一性約束
    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 4. 教材階層: Grade -> Book -> Unit -> Lesson
# ============================================
class Grade(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    weight = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    books = db.relationship('Book', backref='grade', lazy=True, cascade='all,delete-orphan',
                            order_by='[Book.order_index, Book.name]')


class Book(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    grade_id = db.Column(db.Integer, db.ForeignKey('grade.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    weight = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    units = db.relationship('Unit', backref='book', lazy=True, cascade='all,delete-orphan',
                            order_by='[Unit.order_index, Unit.name]')


class Unit(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    weight = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    lessons = db.relationship('Lesson', backref='unit', lazy=True, cascade='all,delete-orphan',
                              order_by='[Lesson.order_index, Lesson.name]')


class Lesson(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    unit_id = db.Column(db.Integer, db.ForeignKey('unit.id'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    order_index = db.Column(db.Integer, default=0)
    weight = db.Column(db.Float, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

# ============================================
# 5. Task 模型
# ============================================
class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='not-started')
    priority = db.Column(db.String(20), nullable=False, default='medium')  # low, medium, high, urgent
    progress = db.Column(db.Integer, default=0)  # 進度百分比 0-100

    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float)
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)

    # 關聯欄位
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    stage_id = db.Column(db.Integer, db.ForeignKey('stage.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    # 階層錨點,只有最深的那一層對路徑顯示有意義
    grade_id = db.Column(db.Integer, db.ForeignKey('grade.id'), nullable=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=True)
    unit_id = db.Column(db.Integer, db.ForeignKey('unit.id'), nullable=True)
    lesson_id = db.Column(db.Integer, db.ForeignKey('lesson.id'), nullable=True)
    component_path = db.Column(db.String(1000))

    # 批量產生的任務才有值: "grade|book|unit|lesson|stage",空值為 "-"
    generation_key = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    # 關聯 (刪除任務時,旗標和排程只解除 task_id)
    performance_flags = db.relationship('PerformanceFlag', backref='task', lazy=True)
    allocations = db.relationship('Allocation', backref='task', lazy=True)

    # 索引
    __table_args__ = (
        db.UniqueConstraint('project_id', 'generation_key', name='unique_generated_task'),
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_project_stage', 'project_id', 'stage_id'),
        db.Index('idx_task_lesson', 'lesson_id'),
        db.Index('idx_task_assigned_status', 'assigned_to', 'status'),
    )

# ============================================
# 6. Notification 模型
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # tasks_generated, task_assigned, task_completed, member_added
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False)
    related_project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=True)
    related_task_id = db.Column(db.Integer, db.ForeignKey('task.id', ondelete='SET NULL'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    task = db.relationship('Task', foreign_keys=[related_task_id])

# ============================================
# 7. ActivityLog 模型
# ============================================
class ActivityLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.Integer)
    details = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)


# ============================================
# 8. PerformanceFlag 模型 (red / orange / yellow / green)
# ============================================
class PerformanceFlag(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id', ondelete='SET NULL'), nullable=True)
    flag_type = db.Column(db.String(10), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    added_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    author = db.relationship('User', foreign_keys=[added_by])

    __table_args__ = (
        db.Index('idx_flag_user_type', 'user_id', 'flag_type'),
    )

# ============================================
# 9. Allocation 模型 (每日排程工時)
# ============================================
class Allocation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id', ondelete='SET NULL'), nullable=True)
    hours_per_day = db.Column(db.Float, nullable=False, default=8)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_allocation_user_dates', 'user_id', 'start_date', 'end_date'),
    )

# 階層層級 -> (model, 父層外鍵欄位, 子節點關聯名稱)
HIERARCHY_MODELS = {
    'grade': (Grade, 'project_id', 'books'),
    'book': (Book, 'grade_id', 'units'),
    'unit': (Unit, 'book_id', 'lessons'),
    'lesson': (Lesson, 'unit_id', None),
}
