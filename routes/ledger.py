from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from sqlalchemy import func

from models import db, Customer, LedgerEntry
from .decorators import module_required, role_required
from .errors import NotFoundError, ValidationError
from .ledger_utils import (record_payment, record_adjustment, with_running_balance,
                           reconcile_customer, brand_summary)
from .sequence_utils import brand_prefix
from .utils import get_json_payload, paginate_query, parse_amount, parse_date, safe_int, to_decimal

ledger_bp = Blueprint('ledger', __name__, url_prefix='/ledger')


def _date_range():
    """start/end from ?start_date=&end_date= or ?month=&year=; end is exclusive."""
    start = parse_date(request.args.get('start_date'))
    end = parse_date(request.args.get('end_date'))
    if end is not None:
        end = end + timedelta(days=1)

    month = safe_int(request.args.get('month'), 0)
    year = safe_int(request.args.get('year'), 0)
    if year and 1 <= month <= 12:
        start = datetime(year, month, 1)
        end = datetime(year + (month == 12), month % 12 + 1, 1)
    elif year:
        start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
    return start, end


def _get_customer_or_404(customer_id):
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError('Customer not found')
    return customer


@ledger_bp.route('', methods=['GET'])
@login_required
@module_required('ledger')
def list_entries():
    filters = []
    customer_id = request.args.get('customer_id')
    if customer_id:
        filters.append(LedgerEntry.customer_id == safe_int(customer_id))
    brand = request.args.get('brand')
    if brand:
        filters.append(LedgerEntry.brand == brand)
    entry_type = request.args.get('type')
    if entry_type:
        filters.append(LedgerEntry.type == entry_type)
    start, end = _date_range()
    if start is not None:
        filters.append(LedgerEntry.date >= start)
    if end is not None:
        filters.append(LedgerEntry.date < end)

    query = (LedgerEntry.query.filter(*filters)
             .order_by(LedgerEntry.date.desc(), LedgerEntry.id.desc()))
    items, pagination = paginate_query(query)

    total_debit, total_credit = (db.session.query(func.sum(LedgerEntry.debit), func.sum(LedgerEntry.credit))
                                 .filter(*filters).one())
    latest = query.first()
    return jsonify({
        'entries': [e.to_dict() for e in items],
        'pagination': pagination,
        'summary': {
            'total_debit': format(to_decimal(total_debit), '0.2f'),
            'total_credit': format(to_decimal(total_credit), '0.2f'),
            'balance': format(to_decimal(latest.balance if latest else None), '0.2f'),
        },
    })


@ledger_bp.route('/customer/<int:customer_id>', methods=['GET'])
@login_required
@module_required('ledger')
def customer_ledger(customer_id):
    customer = _get_customer_or_404(customer_id)
    query = LedgerEntry.query.filter_by(customer_id=customer_id)
    brand = request.args.get('brand')
    if brand:
        query = query.filter_by(brand=brand)
    entries = query.order_by(LedgerEntry.date.asc(), LedgerEntry.id.asc()).all()

    rows, closing = with_running_balance(entries)
    return jsonify({
        'customer': customer.to_dict(),
        'entries': rows,
        'closing_balance': format(closing, '0.2f'),
    })


@ledger_bp.route('/customer/<int:customer_id>/reconcile', methods=['GET'])
@login_required
@role_required('Admin', 'Manager')
def reconcile(customer_id):
    return jsonify(reconcile_customer(_get_customer_or_404(customer_id)))


@ledger_bp.route('/brand/<brand>', methods=['GET'])
@login_required
@module_required('ledger')
def brand_ledger(brand):
    brand_prefix(brand)
    start, end = _date_range()
    rows = brand_summary(brand, start, end - timedelta(microseconds=1) if end else None)
    return jsonify({'brand': brand, 'customers': rows})


@ledger_bp.route('/payment', methods=['POST'])
@login_required
@module_required('sales')
def add_payment():
    data = get_json_payload()
    customer_id = data.get('customer_id')
    if not customer_id:
        raise ValidationError('customer_id is required')
    amount = parse_amount(data.get('amount'), 'amount', allow_zero=False)
    entry = record_payment(customer_id, data.get('brand'), amount, current_user,
                           description=data.get('description'))
    return jsonify(entry.to_dict()), 201


@ledger_bp.route('/adjustment', methods=['POST'])
@login_required
@role_required('Admin', 'Manager')
def add_adjustment():
    data = get_json_payload()
    customer_id = data.get('customer_id')
    if not customer_id:
        raise ValidationError('customer_id is required')
    amount = parse_amount(data.get('amount'), 'amount', allow_zero=False)
    entry = record_adjustment(customer_id, data.get('brand'), amount, data.get('type'), current_user,
                              description=data.get('description'))
    return jsonify(entry.to_dict()), 201
