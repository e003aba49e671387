from flask import Flask, request, jsonify, g, has_request_context
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from config import get_config
from models import db, User, TokenBlocklist
from guards import PreconditionFailed
from permissions import Role
from sqlalchemy import text
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os
import uuid

# 在 create_app 裡用 init_app 綁定
limiter = Limiter(key_func=get_remote_address)

CORRELATION_HEADER = 'X-Correlation-ID'
LOG_FORMAT = '[%(asctime)s] %(levelname)s [%(correlation_id)s] in %(module)s: %(message)s'

# ============================================
# Logging 設定
# ============================================

class CorrelationIdFilter(logging.Filter):
    """把目前請求的 correlation id 加到 log record (請求外是 '-')"""

    def filter(self, record):
        if has_request_context():
            record.correlation_id = g.get('correlation_id', '-')
        else:
            record.correlation_id = '-'
        return True

def add_correlation_filter(handler):
    if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
        handler.addFilter(CorrelationIdFilter())

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 每行都帶 correlation id
    """
    level = getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO)

    if app.debug or app.testing:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        for handler in logging.getLogger().handlers:
            add_correlation_filter(handler)
        return

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(level)
    info_handler.setFormatter(formatter)
    add_correlation_filter(info_handler)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    add_correlation_filter(error_handler)

    # 各模組用 logging.getLogger(__name__), 所以掛在 root logger
    root = logging.getLogger()
    root.addHandler(info_handler)
    root.addHandler(error_handler)
    root.setLevel(level)

    app.logger.info('Application startup')

# ============================================
# JWT 錯誤處理 (一律 401)
# ============================================

def token_error(code, message):
    return jsonify({'error': code, 'message': message}), 401

def register_jwt_handlers(app, jwt):

    @jwt.expired_token_loader
    def on_expired(jwt_header, jwt_payload):
        app.logger.warning(f"Expired token for user {jwt_payload.get('sub')} from {request.remote_addr}")
        return token_error('token_expired', 'Access token expired. Refresh it or log in again.')

    @jwt.invalid_token_loader
    def on_invalid(reason):
        app.logger.warning(f"Rejected malformed token from {request.remote_addr}: {reason}")
        return token_error('invalid_token', 'The supplied token could not be verified.')

    @jwt.unauthorized_loader
    def on_missing(reason):
        app.logger.warning(f"Missing token on {request.method} {request.path} from {request.remote_addr}: {reason}")
        return token_error('authorization_required', 'A bearer access token is required for this endpoint.')

    @jwt.token_in_blocklist_loader
    def is_revoked(jwt_header, jwt_payload):
        jti = jwt_payload['jti']
        return db.session.query(TokenBlocklist.id).filter_by(jti=jti).scalar() is not None

    @jwt.revoked_token_loader
    def on_revoked(jwt_header, jwt_payload):
        """已登出的 token"""
        return token_error('token_revoked', 'This token was revoked by a logout. Log in again.')

    @jwt.user_lookup_loader
    def load_user(jwt_header, jwt_payload):
        """每個請求都確認帳號還在且啟用中"""
        return User.query.filter_by(id=int(jwt_payload['sub']), is_active=True).one_or_none()

    @jwt.user_lookup_error_loader
    def on_user_missing(jwt_header, jwt_payload):
        app.logger.warning(f"Token for deleted or inactive user {jwt_payload.get('sub')}")
        return token_error('user_inactive', 'The account for this token was deleted or disabled.')

# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(PreconditionFailed)
    def precondition_failed(error):
        """業務規則不允許 (例如刪除進行中的任務)"""
        db.session.rollback()
        return jsonify({
            'error': 'precondition_failed',
            'message': error.message,
            'status': error.status_code
        }), error.status_code

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        """處理 rate limit 超過"""
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(HTTPException)
    def http_error(error):
        """其他 HTTP 錯誤 (400, 404, 405 ...) 統一回 JSON"""
        return jsonify({
            'error': error.name.lower().replace(' ', '_'),
            'message': error.description,
            'status': error.code
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        處理所有未預期的錯誤

        不洩漏錯誤細節給前端, 完整 stack trace 寫進 log
        """
        db.session.rollback()

        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({
            'error': 'internal_server_error',
            'message': 'An unexpected error occurred. Please try again later.',
            'status': 500
        }), 500

# ============================================
# Blueprints
# ============================================

def register_blueprints(app):
    from auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix='/auth')

    from projects import projects_bp
    app.register_blueprint(projects_bp, url_prefix='/projects')

    from tasks import tasks_bp
    app.register_blueprint(tasks_bp)

    from comments import comments_bp
    app.register_blueprint(comments_bp)

    from admin import admin_bp
    app.register_blueprint(admin_bp, url_prefix='/admin')

    from audit import audit_bp
    app.register_blueprint(audit_bp, url_prefix='/audit')

    from notifications import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix='/api')

# ============================================
# App factory
# ============================================

def create_app(config_object=None):
    """
    建立 Flask app

    Args:
        config_object: 設定 class, 預設依 FLASK_ENV 選擇
    """
    config_object = config_object or get_config()
    config_object.validate()

    app = Flask(__name__)
    app.config.from_object(config_object)

    setup_logging(app)

    # 不要用 '*', 只允許設定中的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization', CORRELATION_HEADER],
         expose_headers=[CORRELATION_HEADER])

    db.init_app(app)
    jwt = JWTManager(app)
    app.extensions['bcrypt'] = Bcrypt(app)
    limiter.init_app(app)

    register_jwt_handlers(app, jwt)
    register_error_handlers(app)
    register_blueprints(app)

    from seed import register_commands, seed_roles_and_admin
    register_commands(app)

    with app.app_context():
        db.create_all()
        seed_roles_and_admin()
        app.logger.info('Database tables created')

    # ============================================
    # Request/Response Logging
    # ============================================

    @app.before_request
    def log_request():
        """記錄每個請求, 沒帶 correlation id 就產生一個"""
        g.correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        """記錄每個回應, 順便加上 security headers"""
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        response.headers[CORRELATION_HEADER] = g.get('correlation_id') or str(uuid.uuid4())
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

    # ============================================
    # Health Check
    # ============================================

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """健康檢查端點 (給 load balancer / 監控使用)"""
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

    # ============================================
    # API 首頁
    # ============================================

    @app.route('/')
    @limiter.limit('10 per minute')
    def home():
        """API 首頁: 依 blueprint 分組列出所有路由"""
        endpoints = {}
        for rule in app.url_map.iter_rules():
            if rule.endpoint == 'static':
                continue
            group = rule.endpoint.split('.', 1)[0] if '.' in rule.endpoint else 'app'
            methods = sorted(rule.methods - {'HEAD', 'OPTIONS'})
            endpoints.setdefault(group, []).append({'path': str(rule), 'methods': methods})

        for routes in endpoints.values():
            routes.sort(key=lambda r: r['path'])

        return jsonify({
            'message': 'Team Project Manager API',
            'version': app.config['API_VERSION'],
            'roles': [role.value for role in Role],
            'endpoints': endpoints
        })

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 環境請用 gunicorn 或 uwsgi
    app = create_app(get_config())

    port = int(os.getenv('FLASK_PORT', 8888))

    app.run(
        debug=app.config['DEBUG'],
        port=port,
        host='0.0.0.0'
    )
