from functools import wraps
from flask import jsonify, current_app
from flask_login import current_user

from models import Role
from .utils import cache

KNOWN_MODULES = {
    'all', 'dashboard', 'inventory', 'sales', 'customers', 'purchase', 'hrm',
    'reports', 'replacement', 'expenses', 'ledger', 'ecommerce', 'finance',
}
CAPABILITY_KEYS = {'modules'}


def validate_role_permissions(table):
    """
    Check the ROLE_PERMISSIONS table against the closed role and module sets.
    Raises ValueError describing the first problem found.
    """
    if not isinstance(table, dict):
        raise ValueError('ROLE_PERMISSIONS must be a mapping of role -> capabilities')
    known_roles = {r.value for r in Role}
    for role, caps in table.items():
        if role not in known_roles:
            raise ValueError(f'ROLE_PERMISSIONS: unknown role {role!r}')
        if not isinstance(caps, dict):
            raise ValueError(f'ROLE_PERMISSIONS[{role!r}] must be a mapping')
        extra = set(caps) - CAPABILITY_KEYS
        if extra:
            raise ValueError(f'ROLE_PERMISSIONS[{role!r}] has unknown keys: {sorted(extra)}')
        modules = caps.get('modules')
        if not isinstance(modules, (list, tuple, set)):
            raise ValueError(f'ROLE_PERMISSIONS[{role!r}][\'modules\'] must be a list')
        unknown = set(modules) - KNOWN_MODULES
        if unknown:
            raise ValueError(f'ROLE_PERMISSIONS[{role!r}] has unknown modules: {sorted(unknown)}')
    missing = known_roles - set(table)
    if missing:
        raise ValueError(f'ROLE_PERMISSIONS: missing roles {sorted(missing)}')


@cache.memoize(3600)
def get_role_permissions(role):
    return current_app.config['ROLE_PERMISSIONS'].get(role)


def _not_authenticated():
    return jsonify({'error': 'Not authorized'}), 401


def role_required(*roles):
    """
    Restrict a view to users with one of the given roles.
    Example: @role_required('Admin', 'Manager')
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return _not_authenticated()
            user_role = getattr(current_user, 'role', None)
            if user_role not in roles:
                return jsonify({'error': f"User role '{user_role}' is not authorized to access this route"}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def module_required(module):
    """Restrict a view to roles whose permission table lists the module."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return _not_authenticated()
            permissions = get_role_permissions(current_user.role)
            if not permissions:
                return jsonify({'error': 'Role not found'}), 403
            modules = permissions.get('modules', [])
            if 'all' not in modules and module not in modules:
                return jsonify({'error': f"You don't have permission to access {module}"}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
