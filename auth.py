from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity, get_jwt
from marshmallow import Schema, fields, validate, ValidationError
from functools import wraps
from datetime import datetime, timezone
from models import db, User, RoleRecord, TokenBlocklist
from permissions import Principal, Role
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class UTCDateTime(fields.AwareDateTime):
    """
    接受有或沒有時區的 ISO 時間

    沒時區的當作 UTC, 一律轉成 UTC 後去掉 tzinfo (資料庫存 naive UTC)
    """

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('default_timezone', timezone.utc)
        super().__init__(*args, **kwargs)

    def _deserialize(self, value, attr, data, **kwargs):
        value = super()._deserialize(value, attr, data, **kwargs)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

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

class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    username = fields.Str(validate=validate.Length(min=2, max=50))

class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.Str(required=True)
    new_password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128)
    )

# ============================================
# Helper Functions
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例 (不用 global variable)"""
    bcrypt = current_app.extensions.get('bcrypt')
    if bcrypt is None:
        from flask_bcrypt import Bcrypt
        bcrypt = Bcrypt(current_app)
        current_app.extensions['bcrypt'] = bcrypt
    return bcrypt

def hash_password(password):
    return get_bcrypt().generate_password_hash(password).decode('utf-8')

def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages

def get_or_create_role(role):
    """取得角色資料列, 不存在就建立 (不 commit)"""
    name = Role(role).value
    record = RoleRecord.query.filter_by(name=name).first()
    if record is None:
        record = RoleRecord(name=name)
        db.session.add(record)
    return record

def set_user_role(user, role):
    """把使用者的角色換成單一角色"""
    user.roles = [get_or_create_role(role)]

def issue_access_token(user):
    """建立 access token, 角色放在 claim 裡 (principal 不需要再查資料庫)"""
    claim = current_app.config['JWT_ROLES_CLAIM']
    return create_access_token(
        identity=str(user.id),
        additional_claims={claim: user.role_names}
    )

def get_current_principal():
    """從 JWT 建立目前呼叫者的 Principal"""
    claim = current_app.config['JWT_ROLES_CLAIM']
    return Principal.from_claims(get_jwt_identity(), get_jwt().get(claim, []))

def get_current_user():
    """取得當前登入的使用者"""
    user_id = get_jwt_identity()
    if not user_id:
        return None
    return db.session.get(User, int(user_id))

def permission_denied(reason):
    """
    統一的 403 回應

    reason 可以是字串或 permissions.Decision
    """
    message = getattr(reason, 'reason', reason)
    return jsonify({'error': 'forbidden', 'message': message}), 403

def roles_required(*roles):
    """
    粗略的角色檢查 (放在 @jwt_required() 之後)

    資源層級的判斷還是要呼叫 permissions.authorize
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            principal = get_current_principal()
            if not principal.has_any_role(*roles):
                logger.warning(
                    f"User {principal.user_id} without roles {[r.value for r in roles]} "
                    f"tried {request.method} {request.path}"
                )
                return permission_denied(
                    f"This action requires one of the roles: {', '.join(r.value for r in roles)}."
                )
            return fn(*args, **kwargs)
        return wrapper
    return decorator

def serialize_user(user):
    return {
        'id': user.id,
        'email': user.email,
        'username': user.username,
        'roles': user.role_names,
        'is_active': user.is_active
    }

# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
def register():
    """
    使用者註冊

    新使用者預設為 Member, 其他角色只能由 Admin 指派
    """
    data = request.get_json(silent=True)

    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if User.query.filter_by(email=result['email']).first():
        return jsonify({'error': 'Email already exists'}), 409

    user = User(
        email=result['email'],
        username=result['username'],
        password_hash=hash_password(result['password'])
    )
    set_user_role(user, Role.MEMBER)

    try:
        db.session.add(user)
        db.session.commit()

        logger.info(f"New user registered: {user.email}")

        return jsonify({
            'message': 'User registered successfully',
            'user': serialize_user(user)
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

    錯誤訊息不區分 email/password 錯誤, 避免帳號枚舉攻擊
    """
    data = request.get_json(silent=True)

    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    user = User.query.filter_by(email=result['email']).first()

    if not user or not get_bcrypt().check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        return jsonify({'error': 'Account is disabled'}), 403

    access_token = issue_access_token(user)
    refresh_token = create_refresh_token(identity=str(user.id))

    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 這個錯誤不影響登入, 只記錄就好
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'access_token': access_token,
        'refresh_token': refresh_token,
        'user': serialize_user(user)
    }), 200

# ============================================
# Token 刷新 API
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """
    用 refresh token 換新的 access token

    角色從資料庫重新讀取, 角色變更會在這裡生效
    """
    user = get_current_user()

    if not user or not user.is_active:
        return jsonify({'error': 'Invalid or inactive user'}), 401

    return jsonify({
        'access_token': issue_access_token(user)
    }), 200

# ============================================
# 登出 API
# ============================================

@auth_bp.route('/logout', methods=['POST'])
@jwt_required(verify_type=False)
def logout():
    """登出 (將 token 加入黑名單)"""
    token = get_jwt()

    try:
        db.session.add(TokenBlocklist(jti=token['jti'], token_type=token['type']))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to revoke token: {str(e)}", exc_info=True)
        return jsonify({'error': 'Logout failed due to server error'}), 500

    logger.info(f"User logged out: {get_jwt_identity()}")

    return jsonify({'message': 'Logout successful'}), 200

# ============================================
# 取得 / 更新當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    """取得當前登入使用者的資訊"""
    user = get_current_user()

    if not user:
        logger.warning(f"Token valid but user not found: {get_jwt_identity()}")
        return jsonify({'error': 'User not found'}), 404

    data = serialize_user(user)
    data.update({
        'last_login': user.last_login.isoformat() if user.last_login else None,
        'created_at': user.created_at.isoformat()
    })
    return jsonify(data), 200

@auth_bp.route('/me', methods=['PATCH'])
@jwt_required()
def update_me():
    """更新當前使用者資料"""
    user = get_current_user()

    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(UpdateProfileSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if 'username' in result:
        user.username = result['username']

    try:
        db.session.commit()
        logger.info(f"User profile updated: {user.email}")

        return jsonify({
            'message': 'Profile updated successfully',
            'user': serialize_user(user)
        }), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Profile update error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Update failed due to server error'}), 500

# ============================================
# 修改密碼
# ============================================

@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    """修改密碼"""
    user = get_current_user()

    if not user:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'Request body must be JSON'}), 400

    is_valid, result = validate_request_data(ChangePasswordSchema, data)
    if not is_valid:
        return jsonify({'error': 'Validation failed', 'details': result}), 400

    if not get_bcrypt().check_password_hash(user.password_hash, result['current_password']):
        return jsonify({'error': 'Current password is incorrect'}), 401

    user.password_hash = hash_password(result['new_password'])

    try:
        db.session.commit()
        logger.info(f"Password changed for user: {user.email}")

        return jsonify({'message': 'Password changed successfully'}), 200

    except Exception as e:
        db.session.rollback()
        logger.error(f"Password change error for {user.email}: {str(e)}", exc_info=True)
        return jsonify({'error': 'Password change failed due to server error'}), 500
