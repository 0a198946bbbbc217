import logging

from flask import Blueprint, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from passlib.hash import pbkdf2_sha256

from models import db, User
from extensions import limiter
from .decorators import get_role_permissions
from .errors import ValidationError
from .utils import log_action, get_json_payload

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = get_json_payload()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        raise ValidationError('Username and password are required')
    if len(username) > 100 or len(password) > 100:
        raise ValidationError('Username or password is too long')

    user = User.query.filter_by(username=username).first()

    if user and user.is_active and pbkdf2_sha256.verify(password, user.password_hash):
        login_user(user)
        log_action('User logged in successfully.', user=user)
        db.session.commit()
        return jsonify({'user': user.to_dict(), 'permissions': get_role_permissions(user.role)})

    log_action(f'Failed login attempt for username: {username}.')
    db.session.commit()
    logger.warning("Failed login attempt for %s", username)
    return jsonify({'error': 'Invalid username or password'}), 401


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    log_action('User logged out.')
    db.session.commit()
    logout_user()
    return jsonify({'message': 'Logged out'})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict(), 'permissions': get_role_permissions(current_user.role)})
