from decimal import Decimal

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required
from sqlalchemy import func

from models import db, Product, ProductType
from .decorators import module_required, role_required
from .errors import ValidationError
from .stock_utils import get_product_or_404
from .utils import log_action, get_json_payload, paginate_query, parse_amount, parse_qty

inventory_bp = Blueprint('inventory', __name__, url_prefix='/inventory')

VALID_TYPES = {t.value for t in ProductType}


@inventory_bp.route('', methods=['GET'])
@login_required
@module_required('inventory')
def list_products():
    query = Product.query
    for arg in ('brand', 'type'):
        value = request.args.get(arg)
        if value:
            query = query.filter(getattr(Product, arg) == value)
    search = (request.args.get('search') or '').strip()
    if search:
        query = query.filter(Product.model_name.ilike(f'%{search}%'))

    items, pagination = paginate_query(query.order_by(Product.model_name))
    return jsonify({'products': [p.to_dict() for p in items], 'pagination': pagination})


@inventory_bp.route('', methods=['POST'])
@login_required
@role_required('Admin', 'Manager')
def create_product():
    data = get_json_payload()
    model_name = (data.get('model_name') or '').strip()
    brand = data.get('brand')
    ptype = data.get('type') or ProductType.PRODUCT.value

    if not model_name:
        raise ValidationError('Model name is required')
    if brand not in current_app.config['BRANDS']:
        raise ValidationError(f'Unknown brand {brand!r}')
    if ptype not in VALID_TYPES:
        raise ValidationError(f'Invalid product type {ptype!r}')

    stock = data.get('stock') or {}
    product = Product(
        model_name=model_name,
        brand=brand,
        type=ptype,
        purchase_price=parse_amount(data.get('purchase_price'), 'purchase_price'),
        sales_price=parse_amount(data.get('sales_price'), 'sales_price'),
        dealer_price=parse_amount(data.get('dealer_price'), 'dealer_price'),
        good_qty=parse_qty(stock.get('good_qty'), 'good_qty'),
        bad_qty=parse_qty(stock.get('bad_qty'), 'bad_qty'),
        damage_qty=parse_qty(stock.get('damage_qty'), 'damage_qty'),
        repair_qty=parse_qty(stock.get('repair_qty'), 'repair_qty'),
        description=data.get('description'),
    )
    db.session.add(product)
    log_action(f'Added product {model_name} ({brand}).')
    db.session.commit()
    return jsonify(product.to_dict()), 201


@inventory_bp.route('/summary', methods=['GET'])
@login_required
@module_required('inventory')
def stock_summary():
    """Per-brand totals of each stock bucket and value of good stock at purchase price."""
    rows = (db.session.query(
                Product.brand,
                func.count(Product.id),
                func.sum(Product.good_qty),
                func.sum(Product.bad_qty),
                func.sum(Product.damage_qty),
                func.sum(Product.repair_qty),
                func.sum(Product.good_qty * Product.purchase_price))
            .filter(Product.is_active.is_(True))
            .group_by(Product.brand)
            .all())

    summary = {}
    for brand, count, good, bad, damage, repair, value in rows:
        summary[brand] = {
            'products': count,
            'good_qty': int(good or 0),
            'bad_qty': int(bad or 0),
            'damage_qty': int(damage or 0),
            'repair_qty': int(repair or 0),
            'stock_value': format(Decimal(str(value or 0)).quantize(Decimal('0.01')), '0.2f'),
        }
    return jsonify(summary)


@inventory_bp.route('/<int:product_id>', methods=['GET'])
@login_required
@module_required('inventory')
def get_product(product_id):
    return jsonify(get_product_or_404(product_id).to_dict())
