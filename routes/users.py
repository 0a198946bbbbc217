from flask import Blueprint, jsonify
from models import db, User, Role
from passlib.hash import pbkdf2_sha256
from flask_login import login_required, current_user
from .decorators import role_required
from .errors import NotFoundError, StateError, ValidationError
from .utils import log_action, get_json_payload
from sqlalchemy import func

user_bp = Blueprint('users', __name__, url_prefix='/users')

VALID_ROLES = {r.value for r in Role}


def _get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    return user


def _validate_role(role):
    if role not in VALID_ROLES:
        raise ValidationError(f'Invalid role {role!r}. Expected one of: {", ".join(sorted(VALID_ROLES))}')
    return role


@user_bp.route('', methods=['GET'])
@login_required
@role_required('Admin')
def list_users():
    users = User.query.order_by(User.username).all()
    return jsonify([u.to_dict() for u in users])


@user_bp.route('', methods=['POST'])
@login_required
@role_required('Admin')
def create_user():
    data = get_json_payload()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    role = (data.get('role') or '').strip()

    if not username or not password or not role:
        raise ValidationError('username, password and role are required')
    if len(username) > 100 or len(password) > 200:
        raise ValidationError('Username or password is too long')
    if len(password) < 6:
        raise ValidationError('Password must be at least 6 characters')
    _validate_role(role)

    # Case-insensitive duplicate check
    existing = User.query.filter(func.lower(User.username) == username.lower()).first()
    if existing:
        raise ValidationError(f'Username "{username}" already exists')

    new_user = User(
        username=username,
        name=(data.get('name') or '').strip() or None,
        password_hash=pbkdf2_sha256.hash(password),
        role=role
    )
    db.session.add(new_user)
    log_action(f'Created new user: {username} with role: {role}.')
    db.session.commit()
    return jsonify(new_user.to_dict()), 201


@user_bp.route('/<int:user_id>', methods=['PUT'])
@login_required
@role_required('Admin')
def update_user(user_id):
    user = _get_user_or_404(user_id)
    data = get_json_payload()
    changes = []

    role = (data.get('role') or '').strip()
    if role and role != user.role:
        if user.role == Role.ADMIN.value and _admin_count() <= 1:
            raise StateError('Cannot change the role of the last admin account')
        user.role = _validate_role(role)
        changes.append(f'role to {role}')

    if 'name' in data:
        user.name = (data.get('name') or '').strip() or None
        changes.append('name')

    status = data.get('status')
    if status:
        if status not in ('Active', 'Inactive'):
            raise ValidationError("status must be 'Active' or 'Inactive'")
        user.status = status
        changes.append(f'status to {status}')

    new_password = data.get('password')
    if new_password:
        if len(new_password) < 6:
            raise ValidationError('Password must be at least 6 characters')
        user.password_hash = pbkdf2_sha256.hash(new_password)
        changes.append('password')

    log_action(f'Updated user: {user.username}. Changed {", ".join(changes) or "nothing"}.')
    db.session.commit()
    return jsonify(user.to_dict())


def _admin_count():
    return User.query.filter(User.role == Role.ADMIN.value).count()


@user_bp.route('/<int:user_id>', methods=['DELETE'])
@login_required
@role_required('Admin')
def delete_user(user_id):
    user = _get_user_or_404(user_id)

    if user.id == current_user.id:
        raise StateError('You cannot delete your own account')
    if user.role == Role.ADMIN.value and _admin_count() <= 1:
        raise StateError('Cannot delete the last admin account')

    username = user.username
    db.session.delete(user)
    log_action(f'Deleted user: {username}.')
    db.session.commit()
    return jsonify({'message': f'User "{username}" has been deleted.'})
