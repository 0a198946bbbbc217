from decimal import Decimal

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from sqlalchemy import func, or_

from models import db, Customer, CustomerType
from .concurrency import serialized, ledger_key, atomic
from .decorators import module_required
from .errors import NotFoundError, ValidationError
from .ledger_utils import record_opening_balance
from .sequence_utils import brand_prefix
from .utils import log_action, get_json_payload, paginate_query, parse_amount, to_decimal

customers_bp = Blueprint('customers', __name__, url_prefix='/customers')

VALID_TYPES = {t.value for t in CustomerType}
PROFILE_FIELDS = ('company_name', 'phone', 'email', 'address', 'district')
LEDGER_FIELDS = {'total_sales_qty', 'total_sales_amount', 'total_payment', 'total_adjust', 'total_dues'}


def _customer_type(ctype):
    if ctype not in VALID_TYPES:
        raise ValidationError(f'Invalid customer type {ctype!r}')
    return ctype


def _customer_brand(brand):
    if brand != 'Both' and brand not in current_app.config['BRANDS']:
        raise ValidationError(f'Unknown brand {brand!r}')
    return brand


def _opening_brand(customer, data):
    brands = current_app.config['BRANDS']
    if customer.brand in brands:
        return customer.brand
    return data.get('opening_brand') or current_app.config['DEFAULT_BRAND']


@customers_bp.route('', methods=['GET'])
@login_required
@module_required('customers')
def list_customers():
    query = Customer.query
    search = (request.args.get('search') or '').strip()
    if search:
        like = f'%{search}%'
        query = query.filter(or_(Customer.name.ilike(like), Customer.phone.ilike(like),
                                 Customer.company_name.ilike(like)))
    for arg in ('type', 'brand', 'district'):
        value = request.args.get(arg)
        if value:
            query = query.filter(getattr(Customer, arg) == value)

    items, pagination = paginate_query(query.order_by(Customer.name))
    return jsonify({'customers': [c.to_dict() for c in items], 'pagination': pagination})


def _brand_filter(query):
    brand = request.args.get('brand')
    if brand:
        brand_prefix(brand)
        query = query.filter(Customer.brand.in_([brand, 'Both']))
    district = request.args.get('district')
    if district:
        query = query.filter(Customer.district == district)
    return query


@customers_bp.route('/summary', methods=['GET'])
@login_required
@module_required('customers')
def customer_summary():
    """Totals of the cached customer aggregates over active customers."""
    query = _brand_filter(db.session.query(
        func.count(Customer.id),
        func.coalesce(func.sum(Customer.total_sales_qty), 0),
        func.coalesce(func.sum(Customer.total_sales_amount), 0),
        func.coalesce(func.sum(Customer.total_payment), 0),
        func.coalesce(func.sum(Customer.total_adjust), 0),
        func.coalesce(func.sum(Customer.total_dues), 0),
    ).filter(Customer.is_active.is_(True)))
    ctype = request.args.get('type')
    if ctype:
        query = query.filter(Customer.type == ctype)

    count, qty, sales_amount, payment, adjust, dues = query.one()
    return jsonify({
        'total_customers': count,
        'total_sales_qty': int(qty or 0),
        'total_sales_amount': format(to_decimal(sales_amount), '0.2f'),
        'total_payment': format(to_decimal(payment), '0.2f'),
        'total_adjust': format(to_decimal(adjust), '0.2f'),
        'total_dues': format(to_decimal(dues), '0.2f'),
    })


@customers_bp.route('/dues', methods=['GET'])
@login_required
@module_required('customers')
def dues_report():
    """Active customers who owe money, highest dues first."""
    query = _brand_filter(Customer.query.filter(Customer.is_active.is_(True),
                                                Customer.total_dues > 0))
    customers = query.order_by(Customer.total_dues.desc(), Customer.id).all()

    total = sum((to_decimal(c.total_dues) for c in customers), Decimal('0.00'))
    rows = [{
        'id': c.id,
        'name': c.name,
        'phone': c.phone,
        'district': c.district,
        'type': c.type,
        'total_dues': format(to_decimal(c.total_dues), '0.2f'),
        'last_invoice_no': c.last_invoice_no,
        'last_invoice_amount': format(to_decimal(c.last_invoice_amount), '0.2f'),
        'last_invoice_date': c.last_invoice_date.isoformat() if c.last_invoice_date else None,
    } for c in customers]
    return jsonify({
        'customers': rows,
        'summary': {'total_customers': len(rows), 'total_dues': format(total, '0.2f')},
    })


@customers_bp.route('/<int:customer_id>', methods=['GET'])
@login_required
@module_required('customers')
def get_customer(customer_id):
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError('Customer not found')
    return jsonify(customer.to_dict())


@customers_bp.route('', methods=['POST'])
@login_required
@module_required('customers')
def create_customer():
    data = get_json_payload()
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('Customer name is required')

    ctype = _customer_type(data.get('type') or CustomerType.RETAIL.value)
    brand = _customer_brand(data.get('brand') or 'Both')
    opening_dues = parse_amount(data.get('opening_dues'), 'opening_dues')

    customer = Customer(
        name=name,
        company_name=data.get('company_name'),
        phone=data.get('phone'),
        email=data.get('email'),
        address=data.get('address'),
        district=data.get('district'),
        brand=brand,
        type=ctype,
    )

    if opening_dues > 0:
        opening_brand = _opening_brand(customer, data)
        with atomic():
            db.session.add(customer)
            db.session.flush()
            with serialized(ledger_key(customer.id, opening_brand)):
                record_opening_balance(customer, opening_brand, opening_dues, current_user)
            log_action(f'Created customer {name} with opening dues {opening_dues:,.2f}.')
    else:
        with atomic():
            db.session.add(customer)
            log_action(f'Created customer {name}.')

    return jsonify(customer.to_dict()), 201


@customers_bp.route('/<int:customer_id>', methods=['PUT'])
@login_required
@module_required('customers')
def update_customer(customer_id):
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError('Customer not found')
    data = get_json_payload()

    ledger_fields = LEDGER_FIELDS & set(data)
    if ledger_fields:
        raise ValidationError(f'{", ".join(sorted(ledger_fields))} can only change through the ledger')

    changes = {field: data[field] for field in PROFILE_FIELDS if field in data}
    if 'name' in data:
        changes['name'] = (data.get('name') or '').strip()
        if not changes['name']:
            raise ValidationError('Customer name is required')
    if 'type' in data:
        changes['type'] = _customer_type(data['type'])
    if 'brand' in data:
        changes['brand'] = _customer_brand(data['brand'])
    if 'is_active' in data:
        if not isinstance(data['is_active'], bool):
            raise ValidationError('is_active must be true or false')
        changes['is_active'] = data['is_active']

    with atomic():
        for field, value in changes.items():
            setattr(customer, field, value)
        log_action(f'Updated customer {customer.name}: {", ".join(sorted(changes)) or "no changes"}.')
    return jsonify(customer.to_dict())
