from flask import request
from models import db, AuditLog
from flask_caching import Cache
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
import logging

from .errors import ValidationError

getcontext().prec = 28

cache = Cache()

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')


def to_decimal(value):
    """Coerce value (None, float, int, str, Decimal) -> Decimal quantized to 2dp.

    - Accepts strings with commas "1,234.56", parentheses for negatives "(1,234.56)".
    - Returns Decimal('0.00') for invalid inputs instead of raising.
    """
    if value is None or value == '':
        return Decimal('0.00')
    if isinstance(value, Decimal):
        return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    if isinstance(value, int):
        return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    try:
        if isinstance(value, str):
            s = value.strip().replace(',', '')
            if s.startswith('(') and s.endswith(')'):
                s = '-' + s[1:-1]
            return Decimal(s).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        # floats go through str() to avoid binary artifacts
        return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return Decimal('0.00')


def parse_amount(value, field, allow_zero=True):
    """Strict money parsing for request payloads; raises ValidationError."""
    if value is None or value == '':
        if allow_zero:
            return Decimal('0.00')
        raise ValidationError(f'{field} is required')
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a number')
    try:
        amount = Decimal(str(value).strip().replace(',', ''))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number (got {value!r})')
    if not amount.is_finite():
        raise ValidationError(f'{field} must be a number (got {value!r})')
    amount = amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative')
    if amount == 0 and not allow_zero:
        raise ValidationError(f'{field} must be greater than zero')
    return amount


def safe_int(value, default=0):
    try:
        if value is None or (isinstance(value, str) and value.strip() == ''):
            return default
        return int(value)
    except (ValueError, TypeError):
        return default


def parse_qty(value, field, minimum=0):
    """Parse a unit quantity. Missing means zero; floats with a fraction are rejected."""
    if value is None or value == '':
        qty = 0
    elif isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    elif isinstance(value, int):
        qty = value
    else:
        try:
            as_float = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f'{field} must be an integer (got {value!r})')
        if not as_float.is_integer():
            raise ValidationError(f'{field} must be a whole number (got {value!r})')
        qty = int(as_float)
    if qty < minimum:
        raise ValidationError(f'{field} must be at least {minimum}')
    return qty


def parse_id(value, field='id'):
    """Parse a record id from a payload; 1.9 or '1.9' is rejected, not truncated."""
    if value is None or value == '':
        raise ValidationError(f'{field} is required')
    return parse_qty(value, field, minimum=1)


def parse_date(date_str):
    """Helper to safely parse YYYY-MM-DD format strings."""
    try:
        return datetime.strptime(date_str, "%Y-%m-%d")
    except (ValueError, TypeError):
        return None


def get_json_payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def paginate_query(query, default_per_page=50, max_per_page=200):
    """Paginate a Flask-SQLAlchemy query from ?page= and ?limit= parameters.

    Returns (items, pagination_dict).
    """
    page = max(safe_int(request.args.get('page'), 1), 1)
    per_page = safe_int(request.args.get('limit'), default_per_page)
    per_page = min(max(per_page, 1), max_per_page)

    result = query.paginate(page=page, per_page=per_page, error_out=False)
    return result.items, {
        'page': page,
        'limit': per_page,
        'total': result.total,
        'pages': result.pages,
    }


def log_action(action_description, user=None):
    """
    Add an AuditLog row for the action_description.

    Does not commit; the row lands with the caller's transaction.
    """
    user_to_log = user
    if user_to_log is None:
        try:
            from flask_login import current_user
            if getattr(current_user, 'is_authenticated', False):
                user_to_log = current_user
        except RuntimeError:
            # outside a request context
            user_to_log = None

    try:
        ip_addr = request.remote_addr
    except RuntimeError:
        ip_addr = None

    log_entry = AuditLog(
        user_id=(user_to_log.id if user_to_log else None),
        action=str(action_description)[:255] if action_description is not None else '',
        ip_address=ip_addr
    )
    db.session.add(log_entry)
    return log_entry
