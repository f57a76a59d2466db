from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func
from marshmallow import Schema, fields, validate, EXCLUDE
from models import db, Project, Grade, Book, Unit, Task, HIERARCHY_MODELS
from auth import validate_request_data
from domain import LEVEL_TASK_FIELDS
from progress import node_progress
from weights import distribute_evenly, weight_report
from repository import build_node, load_tasks_for_node, update_weight
import logging

hierarchy_bp = Blueprint('hierarchy', __name__)
logger = logging.getLogger(__name__)

# URL 用複數,內部用單數層級名
LEVEL_BY_COLLECTION = {
    'grades': 'grade',
    'books': 'book',
    'units': 'unit',
    'lessons': 'lesson',
}

# 層級 -> (父層 model, 父層顯示名稱)
PARENT_MODELS = {
    'grade': (Project, 'Project'),
    'book': (Grade, 'Grade'),
    'unit': (Book, 'Book'),
    'lesson': (Unit, 'Unit'),
}

LEVEL_ROUTE = '/<any(grades, books, units, lessons):collection>'

# ============================================
# Input Validation Schemas
# ============================================

class CreateNodeSchema(Schema):
    """
    建立 grade / book / unit / lesson

    父層 id 依層級不同放在不同欄位 (project_id / grade_id / book_id / unit_id)
    """
    class Meta:
        unknown = EXCLUDE

    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Name is required'}
    )
    description = fields.Str(allow_none=True)
    order_index = fields.Int(allow_none=True)
    weight = fields.Float(validate=validate.Range(min=0, max=100), load_default=0)
    project_id = fields.Int()
    grade_id = fields.Int()
    book_id = fields.Int()
    unit_id = fields.Int()

class UpdateNodeSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(allow_none=True)
    order_index = fields.Int()
    weight = fields.Float(validate=validate.Range(min=0, max=100))

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def node_to_dict(level, node):
    model, parent_field, children_attr = HIERARCHY_MODELS[level]
    data = {
        'id': node.id,
        'level': level,
        parent_field: getattr(node, parent_field),
        'name': node.name,
        'description': node.description,
        'order_index': node.order_index,
        'weight': float(node.weight or 0),
        'created_at': _iso(node.created_at),
        'updated_at': _iso(node.updated_at)
    }
    if children_attr:
        data[f'{children_attr[:-1]}_count'] = len(getattr(node, children_attr))
    return data

def siblings_query(level, parent_id):
    model, parent_field, _ = HIERARCHY_MODELS[level]
    return model.query.filter(
        getattr(model, parent_field) == parent_id
    ).order_by(model.order_index, model.name, model.id)

def next_order_index(level, parent_id):
    model, parent_field, _ = HIERARCHY_MODELS[level]
    current_max = db.session.query(func.max(model.order_index)).filter(
        getattr(model, parent_field) == parent_id
    ).scalar()
    return (current_max or 0) + 1

# ============================================
# 列表 / 查詢
# ============================================

@hierarchy_bp.route(LEVEL_ROUTE, methods=['GET'])
@jwt_required()
def list_nodes(collection):
    """
    列出某一層的節點

    Query 參數: parent_id (可省略,省略時列出全部)
    有 parent_id 時順便回傳該組兄弟節點的權重檢查結果
    """
    level = LEVEL_BY_COLLECTION[collection]
    model, parent_field, _ = HIERARCHY_MODELS[level]

    parent_id = request.args.get('parent_id', type=int)
    if parent_id is not None:
        nodes = siblings_query(level, parent_id).all()
    else:
        nodes = model.query.order_by(getattr(model, parent_field), model.order_index, model.name).all()

    response = {
        collection: [node_to_dict(level, node) for node in nodes],
        'total': len(nodes)
    }
    if parent_id is not None:
        response['weights'] = weight_report(
            [{'weight': n.weight} for n in nodes],
            level.capitalize(),
            current_app.config['WEIGHT_TOLERANCE']
        )
    return jsonify(response), 200

@hierarchy_bp.route(f'{LEVEL_ROUTE}/<int:node_id>', methods=['GET'])
@jwt_required()
def get_node(collection, node_id):
    """單一節點,附上依底下任務算出的進度"""
    level = LEVEL_BY_COLLECTION[collection]
    model = HIERARCHY_MODELS[level][0]

    node = db.session.get(model, node_id)
    if not node:
        return jsonify({'error': f'{level.capitalize()} not found'}), 404

    data = node_to_dict(level, node)
    data['progress'] = node_progress(build_node(level, node), load_tasks_for_node(level, node_id)).progress
    return jsonify(data), 200

# ============================================
# 建立 / 更新 / 刪除
# ============================================

@hierarchy_bp.route(LEVEL_ROUTE, methods=['POST'])
@jwt_required()
def create_node(collection):
    level = LEVEL_BY_COLLECTION[collection]
    model, parent_field, _ = HIERARCHY_MODELS[level]
    parent_model, parent_label = PARENT_MODELS[level]

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CreateNodeSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    parent_id = result.get(parent_field)
    if not parent_id:
        return jsonify({'error': f'{parent_label} ID is required'}), 400

    if not db.session.get(parent_model, parent_id):
        return jsonify({'error': f'{parent_label} not found'}), 404

    order_index = result.get('order_index')
    if not order_index:
        order_index = next_order_index(level, parent_id)

    node = model(
        name=result['name'],
        description=result.get('description'),
        order_index=order_index,
        weight=result['weight'],
        **{parent_field: parent_id}
    )

    try:
        db.session.add(node)
        db.session.commit()

        logger.info(f"{level.capitalize()} created: {node.name} (id={node.id}) under {parent_field}={parent_id}")

        return jsonify({
            'message': f'{level.capitalize()} created successfully',
            level: node_to_dict(level, node)
        }), 201

    except Exception as e:
        db.session.rollback()
        logger.error(f"{level.capitalize()} creation error: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to create {level}'}), 500

@hierarchy_bp.route(f'{LEVEL_ROUTE}/<int:node_id>', methods=['PATCH'])
@jwt_required()
def update_node(collection, node_id):
    level = LEVEL_BY_COLLECTION[collection]
    model = HIERARCHY_MODELS[level][0]

    node = db.session.get(model, node_id)
    if not node:
        return jsonify({'error': f'{level.capitalize()} not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateNodeSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    for field in ['name', 'description', 'order_index', 'weight']:
        if field in result:
            setattr(node, field, result[field])

    try:
        db.session.commit()
        logger.info(f"{level.capitalize()} {node_id} updated: {sorted(result)}")

        return jsonify({
            'message': f'{level.capitalize()} updated successfully',
            level: node_to_dict(level, node)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"{level.capitalize()} update error: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to update {level}'}), 500

@hierarchy_bp.route(f'{LEVEL_ROUTE}/<int:node_id>', methods=['DELETE'])
@jwt_required()
def delete_node(collection, node_id):
    """有子節點或有任務掛在這個節點上時不允許刪除"""
    level = LEVEL_BY_COLLECTION[collection]
    model, _, children_attr = HIERARCHY_MODELS[level]

    node = db.session.get(model, node_id)
    if not node:
        return jsonify({'error': f'{level.capitalize()} not found'}), 404

    if children_attr and getattr(node, children_attr):
        return jsonify({
            'error': f'Cannot delete {level} with existing {children_attr}. Please delete {children_attr} first.'
        }), 400

    task_column = getattr(Task, LEVEL_TASK_FIELDS[level])
    if Task.query.filter(task_column == node_id).count():
        return jsonify({
            'error': f'Cannot delete {level} with existing tasks. Please delete tasks first.'
        }), 400

    try:
        db.session.delete(node)
        db.session.commit()

        logger.info(f"{level.capitalize()} deleted: {node_id}")
        return jsonify({'message': f'{level.capitalize()} deleted successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"{level.capitalize()} deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': f'Failed to delete {level}'}), 500

# ============================================
# 權重
# ============================================

@hierarchy_bp.route(f'{LEVEL_ROUTE}/distribute-weights', methods=['POST'])
@jwt_required()
def distribute_weights(collection):
    """
    把同一個父節點底下的兄弟節點權重平均分配成總和 100

    Body: 父層 id (project_id / grade_id / book_id / unit_id)
    餘數給排序第一個的節點
    """
    level = LEVEL_BY_COLLECTION[collection]
    _, parent_field, _ = HIERARCHY_MODELS[level]
    parent_label = PARENT_MODELS[level][1]

    data = request.get_json(silent=True) or {}
    parent_id = data.get(parent_field)
    if not parent_id:
        return jsonify({'error': f'{parent_label} ID is required'}), 400

    siblings = siblings_query(level, parent_id).all()
    if not siblings:
        return jsonify({'error': f'No {collection} found for this {parent_label.lower()}'}), 404

    distributed = distribute_evenly([
        {'id': node.id, 'name': node.name, 'weight': node.weight}
        for node in siblings
    ])

    try:
        for item in distributed:
            update_weight(level, item['id'], item['weight'])
        db.session.commit()

        logger.info(f"Weights distributed among {len(distributed)} {collection} of {parent_field}={parent_id}")

        return jsonify({
            'message': f'Weights distributed among {len(distributed)} {collection}',
            collection: distributed
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Weight distribution error for {collection}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to distribute weights'}), 500

@hierarchy_bp.route(f'{LEVEL_ROUTE}/weights-check', methods=['GET'])
@jwt_required()
def check_weights(collection):
    """兄弟節點權重總和是否為 100 (± WEIGHT_TOLERANCE)"""
    level = LEVEL_BY_COLLECTION[collection]

    parent_id = request.args.get('parent_id', type=int)
    if parent_id is None:
        return jsonify({'error': 'parent_id is required'}), 400

    siblings = siblings_query(level, parent_id).all()
    report = weight_report(
        [{'weight': node.weight} for node in siblings],
        level.capitalize(),
        current_app.config['WEIGHT_TOLERANCE']
    )
    return jsonify({'parent_id': parent_id, **report}), 200
