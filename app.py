from flask import Flask, request, jsonify, current_app
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from config import get_config
from models import db
from sqlalchemy import text
from datetime import datetime
import errors
import logging
from logging.handlers import RotatingFileHandler
import os

# ============================================
# 擴展 (在 create_app 裡綁定 app)
# ============================================

jwt = JWTManager()
bcrypt = Bcrypt()

# storage_uri 從 config 的 RATELIMIT_STORAGE_URI 讀取
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"],
    strategy="fixed-window"
)

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 統一的 log format
    """
    if app.debug or app.testing:
        return

    log_file = app.config.get('LOG_FILE', 'logs/app.log')
    log_dir = os.path.dirname(log_file) or '.'
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        log_file,
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    # 各模組用 logging.getLogger(__name__),所以 handler 掛在 root logger
    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(level)

    app.logger.addHandler(info_handler)
    app.logger.addHandler(error_handler)
    app.logger.setLevel(level)

    app.logger.info('Application startup')

# ============================================
# JWT 錯誤處理
# ============================================

@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    """處理 token 過期"""
    current_app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
    return jsonify({
        'error': 'token_expired',
        'message': 'The token has expired. Please refresh your token or login again.'
    }), 401

@jwt.invalid_token_loader
def invalid_token_callback(error):
    """處理無效的 token"""
    current_app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
    return jsonify({
        'error': 'invalid_token',
        'message': 'Token validation failed. Please provide a valid token.'
    }), 401

@jwt.unauthorized_loader
def unauthorized_callback(error):
    """處理缺少 token"""
    current_app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
    return jsonify({
        'error': 'authorization_required',
        'message': 'Access token is required. Please provide an authorization token.'
    }), 401

# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(errors.ValidationError)
    def domain_validation_error(error):
        """核心計算的前置條件不成立 (例如專案沒有 category)"""
        app.logger.info(f"Validation error on {request.method} {request.path}: {error}")
        return jsonify({
            'error': 'validation_error',
            'message': str(error)
        }), 400

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid',
            'status': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        """
        處理 500 錯誤

        不洩漏錯誤細節給前端,完整 stack trace 只寫進 log
        """
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'internal_server_error',
            'message': 'An internal error occurred. Our team has been notified.',
            'status': 500
        }), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """最後的防線,捕捉所有沒被處理的 exception"""
        # 其他 HTTP 錯誤 (415 等) 保留原本的狀態碼
        if isinstance(error, HTTPException):
            return jsonify({
                'error': error.name.lower().replace(' ', '_'),
                'message': error.description,
                'status': error.code
            }), error.code

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return jsonify({
            'error': 'unexpected_error',
            'message': 'An unexpected error occurred. Please try again later.',
            'status': 500
        }), 500

# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

# ============================================
# Health Check / API 首頁
# ============================================

def register_core_routes(app):

    @app.route('/health', methods=['GET'])
    def health_check():
        """健康檢查端點,給 load balancer 或監控系統用"""
        try:
            db.session.execute(text('SELECT 1'))

            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    @limiter.limit("10 per minute")
    def home():
        return jsonify({
            'message': 'Content Production Tracker API',
            'version': app.config.get('API_VERSION'),
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'refresh': {'path': '/auth/refresh', 'methods': ['POST']},
                    'me': {'path': '/auth/me', 'methods': ['GET']}
                },
                'categories': {
                    'list': {'path': '/categories', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/categories/:id', 'methods': ['GET', 'PATCH', 'DELETE']}
                },
                'stages': {
                    'list': {'path': '/stages', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/stages/:id', 'methods': ['PATCH', 'DELETE']},
                    'templates': {'path': '/stage-templates/category/:id', 'methods': ['GET', 'PUT']},
                    'distribute_weights': {'path': '/stage-templates/category/:id/distribute-weights',
                                           'methods': ['POST']}
                },
                'projects': {
                    'list': {'path': '/projects', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/projects/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'progress': {'path': '/projects/:id/progress', 'methods': ['GET']},
                    'hierarchy': {'path': '/projects/:id/hierarchy', 'methods': ['GET']},
                    'bulk_create_tasks': {'path': '/projects/:id/bulk-create-tasks', 'methods': ['POST']}
                },
                'hierarchy': {
                    'list': {'path': '/{grades|books|units|lessons}?parent_id=', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/{grades|books|units|lessons}/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'distribute_weights': {'path': '/{grades|books|units|lessons}/distribute-weights',
                                           'methods': ['POST']},
                    'weights_check': {'path': '/{grades|books|units|lessons}/weights-check?parent_id=',
                                      'methods': ['GET']}
                },
                'tasks': {
                    'list': {'path': '/projects/:id/tasks', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/tasks/:id', 'methods': ['GET', 'PATCH', 'DELETE']}
                },
                'notifications': {
                    'list': {'path': '/api/notifications', 'methods': ['GET']},
                    'mark_read': {'path': '/api/notifications/:id/read', 'methods': ['PATCH']},
                    'mark_all_read': {'path': '/api/notifications/read-all', 'methods': ['PATCH']}
                }
            }
        })

    if app.debug:
        @app.route('/debug/routes')
        def debug_routes():
            """列出所有註冊的路由 (僅開發環境)"""
            routes = []
            for rule in app.url_map.iter_rules():
                routes.append({
                    'endpoint': rule.endpoint,
                    'methods': sorted(rule.methods),
                    'path': str(rule)
                })
            return jsonify({'routes': routes})

# ============================================
# App factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    Args:
        config_class: 設定類別,沒給就依 FLASK_ENV 選 (見 config.get_config)
    """
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # 不要用 '*',只允許設定的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    app.extensions['bcrypt'] = bcrypt
    limiter.init_app(app)

    setup_logging(app)

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    from auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix='/auth')

    from stages import stages_bp
    app.register_blueprint(stages_bp)

    from projects import projects_bp
    app.register_blueprint(projects_bp, url_prefix='/projects')

    from hierarchy import hierarchy_bp
    app.register_blueprint(hierarchy_bp)

    from tasks import tasks_bp
    app.register_blueprint(tasks_bp)

    from notifications import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix='/api')

    from team import team_bp
    app.register_blueprint(team_bp, url_prefix='/api')

    from allocations import allocations_bp
    app.register_blueprint(allocations_bp, url_prefix='/api')

    register_error_handlers(app)
    register_request_hooks(app)
    register_core_routes(app)

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 環境應該用 gunicorn: gunicorn "app:create_app()"
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 8888))

    create_app().run(
        debug=debug_mode,
        port=port,
        host='0.0.0.0'
    )
