from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity
from models import db, User
from marshmallow import Schema, fields, validate, ValidationError
from datetime import datetime
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128, error='Password must be 8-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    username = fields.Str(
        required=True,
        validate=validate.Length(min=2, max=50, error='Username must be 2-50 characters'),
        error_messages={'required': 'Username is required'}
    )

class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True)

# ============================================
# Helper Functions (供其他 blueprint 使用)
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例"""
    return current_app.extensions.get('bcrypt')

def validate_request_data(schema_class, data, **schema_kwargs):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class(**schema_kwargs)
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages

def get_current_user():
    """取得當前登入的使用者,token 對不到使用者時回傳 None"""
    user_id = get_jwt_identity()
    if not user_id:
        return None
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        logger.warning(f"Malformed token identity: {user_id}")
        return None

def user_summary(user):
    if not user:
        return None
    return {
        'id': user.id,
        'email': user.email,
        'username': user.username
    }

# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if User.query.filter_by(email=result['email']).first():
        return jsonify({'error': 'Email already exists'}), 409

    bcrypt = get_bcrypt()
    if not bcrypt:
        logger.error("Bcrypt extension not loaded correctly.")
        return jsonify({'error': 'Server configuration error (Bcrypt missing)'}), 500

    user = User(
        email=result['email'],
        username=result['username'],
        password_hash=bcrypt.generate_password_hash(result['password']).decode('utf-8')
    )

    try:
        db.session.add(user)
        db.session.commit()

        logger.info(f"New user registered: {user.email}")

        return jsonify({
            'message': 'User registered successfully',
            'user': user_summary(user)
        }), 201

    except Exception as e:
        db.session.rollback()
        # 不要把 exception 細節洩漏給前端
        logger.error(f"Registration error for {result['email']}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Registration failed due to server error'}), 500

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
def login():
    """
    使用者登入

    回傳 access token 和 refresh token;
    不區分 email 錯還是 password 錯,避免帳號枚舉
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = User.query.filter_by(email=result['email']).first()

    bcrypt = get_bcrypt()
    if not user or not bcrypt.check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        return jsonify({'error': 'Account is disabled'}), 403

    access_token = create_access_token(identity=str(user.id))
    refresh_token = create_refresh_token(identity=str(user.id))

    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 不影響登入,只記錄
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'access_token': access_token,
        'refresh_token': refresh_token,
        'user': user_summary(user)
    }), 200

# ============================================
# Token 刷新 API
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """用 refresh token 換新的 access token"""
    user = get_current_user()

    if not user or not user.is_active:
        return jsonify({'error': 'Invalid or inactive user'}), 401

    return jsonify({
        'access_token': create_access_token(identity=str(user.id))
    }), 200

# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    user = get_current_user()

    if not user:
        logger.warning(f"Token valid but user not found: {get_jwt_identity()}")
        return jsonify({'error': 'User not found'}), 404

    return jsonify({
        'id': user.id,
        'email': user.email,
        'username': user.username,
        'is_active': user.is_active,
        'last_login': user.last_login.isoformat() if user.last_login else None,
        'created_at': user.created_at.isoformat()
    }), 200
