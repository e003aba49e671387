"""
初始資料: 角色與預設管理員

可以重複執行, 已存在的資料不會重建
"""
from flask import current_app
from models import db, User
from auth import get_or_create_role, set_user_role, hash_password
from permissions import Role
import logging

logger = logging.getLogger(__name__)

# 要建立的角色 (權限規則本身在 permissions.py)
SEED_ROLES = (Role.ADMIN, Role.MANAGER, Role.MEMBER)


def seed_roles_and_admin():
    """
    建立所有角色與預設管理員帳號

    Returns:
        dict: 這次新建了哪些東西
    """
    created = {'roles': [], 'admin': None}

    for role in SEED_ROLES:
        record = get_or_create_role(role)
        if record.id is None:
            created['roles'].append(role.value)

    email = current_app.config['SEED_ADMIN_EMAIL']
    admin = User.query.filter_by(email=email).first()
    if admin is None:
        admin = User(
            email=email,
            username=current_app.config['SEED_ADMIN_USERNAME'],
            password_hash=hash_password(current_app.config['SEED_ADMIN_PASSWORD'])
        )
        set_user_role(admin, Role.ADMIN)
        db.session.add(admin)
        created['admin'] = email

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Seeding failed: {str(e)}", exc_info=True)
        raise

    if created['roles'] or created['admin']:
        logger.info(f"Seeded roles={created['roles']} admin={created['admin']}")

    return created


def register_commands(app):
    """註冊 flask CLI 指令"""

    @app.cli.command('seed')
    def seed_command():
        """建立角色與預設管理員"""
        created = seed_roles_and_admin()
        print(f"Roles created: {', '.join(created['roles']) or 'none'}")
        print(f"Admin created: {created['admin'] or 'already exists'}")
