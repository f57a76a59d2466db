from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from models import db, Category, Stage, StageTemplate, Project, Task
from auth import validate_request_data
from weights import distribute_evenly, weight_report
import logging

stages_bp = Blueprint('stages', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CategorySchema(Schema):
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Category name is required'}
    )
    description = fields.Str(allow_none=True)

class StageSchema(Schema):
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Stage name is required'}
    )
    description = fields.Str(allow_none=True)
    order_index = fields.Int(load_default=0)
    is_active = fields.Bool(load_default=True)

class TemplateItemSchema(Schema):
    stage_id = fields.Int(required=True)
    order_index = fields.Int()
    weight = fields.Float(validate=validate.Range(min=0, max=100), load_default=0)
    is_default = fields.Bool(load_default=False)

class ReplaceTemplatesSchema(Schema):
    """整組替換 category 的 stage 樣板"""
    templates = fields.List(fields.Nested(TemplateItemSchema), required=True)

# ============================================
# 輔助函數
# ============================================

def _iso(value):
    return value.isoformat() if value else None

def category_to_dict(category):
    return {
        'id': category.id,
        'name': category.name,
        'description': category.description,
        'stage_count': len(category.stage_templates),
        'created_at': _iso(category.created_at)
    }

def stage_to_dict(stage):
    return {
        'id': stage.id,
        'name': stage.name,
        'description': stage.description,
        'order_index': stage.order_index,
        'is_active': stage.is_active,
        'created_at': _iso(stage.created_at)
    }

def template_to_dict(template):
    return {
        'id': template.id,
        'category_id': template.category_id,
        'stage_id': template.stage_id,
        'stage_name': template.stage.name,
        'order_index': template.order_index,
        'weight': float(template.weight or 0),
        'is_default': template.is_default
    }

def ordered_templates(category_id):
    return StageTemplate.query.join(Stage).filter(
        StageTemplate.category_id == category_id
    ).order_by(
        StageTemplate.order_index, Stage.created_at, Stage.id
    ).all()

def _name_taken(model, name, exclude_id=None):
    query = model.query.filter(model.name == name)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    return query.first() is not None

# ============================================
# Categories
# ============================================

@stages_bp.route('/categories', methods=['GET'])
@jwt_required()
def list_categories():
    categories = Category.query.order_by(Category.name).all()
    return jsonify({
        'categories': [category_to_dict(c) for c in categories],
        'total': len(categories)
    }), 200

@stages_bp.route('/categories/<int:category_id>', methods=['GET'])
@jwt_required()
def get_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify({'error': 'Category not found'}), 404

    data = category_to_dict(category)
    data['stages'] = [template_to_dict(t) for t in ordered_templates(category_id)]
    return jsonify(data), 200

@stages_bp.route('/categories', methods=['POST'])
@jwt_required()
def create_category():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CategorySchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if _name_taken(Category, result['name']):
        return jsonify({'error': 'Category name already exists'}), 409

    category = Category(**result)
    try:
        db.session.add(category)
        db.session.commit()
        logger.info(f"Category created: {category.name}")
        return jsonify({
            'message': 'Category created successfully',
            'category': category_to_dict(category)
        }), 201
    except Exception as e:
        db.session.rollback()
        logger.error(f"Category creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to create category'}), 500

@stages_bp.route('/categories/<int:category_id>', methods=['PATCH'])
@jwt_required()
def update_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify({'error': 'Category not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(CategorySchema, data, partial=True)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'name' in result and _name_taken(Category, result['name'], exclude_id=category_id):
        return jsonify({'error': 'Category name already exists'}), 409

    for field, value in result.items():
        setattr(category, field, value)

    try:
        db.session.commit()
        logger.info(f"Category {category_id} updated")
        return jsonify({
            'message': 'Category updated successfully',
            'category': category_to_dict(category)
        }), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Category update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update category'}), 500

@stages_bp.route('/categories/<int:category_id>', methods=['DELETE'])
@jwt_required()
def delete_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        return jsonify({'error': 'Category not found'}), 404

    if Project.query.filter_by(category_id=category_id).count():
        return jsonify({'error': 'Cannot delete category that is being used by projects'}), 409

    try:
        db.session.delete(category)
        db.session.commit()
        logger.info(f"Category deleted: {category_id}")
        return jsonify({'message': 'Category deleted successfully'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Category deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to delete category'}), 500

# ============================================
# Stages
# ============================================

@stages_bp.route('/stages', methods=['GET'])
@jwt_required()
def list_stages():
    query = Stage.query
    if request.args.get('active_only', 'false').lower() == 'true':
        query = query.filter(Stage.is_active.is_(True))
    stages = query.order_by(Stage.order_index, Stage.name).all()
    return jsonify({
        'stages': [stage_to_dict(s) for s in stages],
        'total': len(stages)
    }), 200

@stages_bp.route('/stages', methods=['POST'])
@jwt_required()
def create_stage():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(StageSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    stage = Stage(**result)
    try:
        db.session.add(stage)
        db.session.commit()
        logger.info(f"Stage created: {stage.name}")
        return jsonify({
            'message': 'Stage created successfully',
            'stage': stage_to_dict(stage)
        }), 201
    except Exception as e:
        db.session.rollback()
        logger.error(f"Stage creation error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to create stage'}), 500

@stages_bp.route('/stages/<int:stage_id>', methods=['PATCH'])
@jwt_required()
def update_stage(stage_id):
    stage = db.session.get(Stage, stage_id)
    if not stage:
        return jsonify({'error': 'Stage not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No fields to update'}), 400

    is_valid, result = validate_request_data(StageSchema, data, partial=True)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    for field, value in result.items():
        setattr(stage, field, value)

    try:
        db.session.commit()
        logger.info(f"Stage {stage_id} updated")
        return jsonify({
            'message': 'Stage updated successfully',
            'stage': stage_to_dict(stage)
        }), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Stage update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update stage'}), 500

@stages_bp.route('/stages/<int:stage_id>', methods=['DELETE'])
@jwt_required()
def delete_stage(stage_id):
    stage = db.session.get(Stage, stage_id)
    if not stage:
        return jsonify({'error': 'Stage not found'}), 404

    if stage.templates:
        return jsonify({'error': 'Cannot delete stage as it is used in category templates'}), 400

    if Task.query.filter_by(stage_id=stage_id).count():
        return jsonify({'error': 'Cannot delete stage with existing tasks. Please delete tasks first.'}), 400

    try:
        db.session.delete(stage)
        db.session.commit()
        logger.info(f"Stage deleted: {stage_id}")
        return jsonify({'message': 'Stage deleted successfully'}), 200
    except Exception as e:
        db.session.rollback()
        logger.error(f"Stage deletion error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to delete stage'}), 500

# ============================================
# Stage Templates (category 要走哪些 stage)
# ============================================

@stages_bp.route('/stage-templates/category/<int:category_id>', methods=['GET'])
@jwt_required()
def get_category_templates(category_id):
    if not db.session.get(Category, category_id):
        return jsonify({'error': 'Category not found'}), 404

    templates = ordered_templates(category_id)
    return jsonify({
        'category_id': category_id,
        'templates': [template_to_dict(t) for t in templates],
        'weights': weight_report(templates, 'Stage', current_app.config['WEIGHT_TOLERANCE'])
    }), 200

@stages_bp.route('/stage-templates/category/<int:category_id>', methods=['PUT'])
@jwt_required()
def replace_category_templates(category_id):
    """
    整組替換 category 的 stage 樣板

    不存在的 stage_id 和重複的 stage_id 會被跳過並回報在 skipped_stage_ids,
    沒給 order_index 時依接受的項目順序編號 (從 1 開始,跳過的不佔號)
    """
    if not db.session.get(Category, category_id):
        return jsonify({'error': 'Category not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ReplaceTemplatesSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    requested_ids = {item['stage_id'] for item in result['templates']}
    known_ids = {
        stage_id for (stage_id,) in
        db.session.query(Stage.id).filter(Stage.id.in_(requested_ids)).all()
    } if requested_ids else set()

    try:
        StageTemplate.query.filter_by(category_id=category_id).delete()

        seen, skipped = set(), []
        for item in result['templates']:
            stage_id = item['stage_id']
            if stage_id not in known_ids or stage_id in seen:
                skipped.append(stage_id)
                continue
            seen.add(stage_id)
            db.session.add(StageTemplate(
                category_id=category_id,
                stage_id=stage_id,
                order_index=item.get('order_index', len(seen)),
                weight=item['weight'],
                is_default=item['is_default']
            ))

        db.session.commit()

        if skipped:
            logger.warning(f"Skipped stage ids {skipped} while replacing templates of category {category_id}")
        logger.info(f"Stage templates replaced for category {category_id}: {len(seen)} stages")

        templates = ordered_templates(category_id)
        return jsonify({
            'message': 'Stage templates updated successfully',
            'templates': [template_to_dict(t) for t in templates],
            'skipped_stage_ids': skipped,
            'weights': weight_report(templates, 'Stage', current_app.config['WEIGHT_TOLERANCE'])
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Stage template update error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to update stage templates'}), 500

@stages_bp.route('/stage-templates/category/<int:category_id>/distribute-weights', methods=['POST'])
@jwt_required()
def distribute_stage_weights(category_id):
    """category 的 stage 權重平均分配,餘數給順序第一的 stage"""
    if not db.session.get(Category, category_id):
        return jsonify({'error': 'Category not found'}), 404

    templates = ordered_templates(category_id)
    if not templates:
        return jsonify({'error': 'No stages configured for this category'}), 404

    try:
        # ORM 物件直接改 weight 屬性
        distribute_evenly(templates)
        db.session.commit()

        logger.info(f"Stage weights distributed among {len(templates)} stages of category {category_id}")

        return jsonify({
            'message': f'Weights distributed among {len(templates)} stages',
            'templates': [template_to_dict(t) for t in templates]
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Stage weight distribution error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to distribute weights'}), 500
