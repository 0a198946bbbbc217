from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from models import Invoice
from .decorators import module_required, role_required
from .errors import ValidationError
from .invoice_utils import create_invoice, void_invoice, get_invoice_or_404
from .utils import get_json_payload, paginate_query

sales_bp = Blueprint('sales', __name__, url_prefix='/sales')


@sales_bp.route('/invoices', methods=['GET'])
@login_required
@module_required('sales')
def list_invoices():
    query = Invoice.query
    for arg in ('customer_id', 'brand', 'status'):
        value = request.args.get(arg)
        if value:
            query = query.filter(getattr(Invoice, arg) == value)
    items, pagination = paginate_query(query.order_by(Invoice.date.desc(), Invoice.id.desc()))
    return jsonify({'invoices': [i.to_dict() for i in items], 'pagination': pagination})


@sales_bp.route('/invoices', methods=['POST'])
@login_required
@module_required('sales')
def api_create_invoice():
    data = get_json_payload()
    if not data.get('customer_id'):
        raise ValidationError('customer_id is required')
    invoice = create_invoice(
        data.get('customer_id'),
        data.get('brand'),
        data.get('items'),
        current_user,
        price_type=data.get('price_type') or 'Retail',
        discount=data.get('discount'),
        rebate=data.get('rebate'),
        paid=data.get('paid_amount'),
        note=data.get('note'),
    )
    return jsonify(invoice.to_dict()), 201


@sales_bp.route('/invoices/<int:invoice_id>', methods=['GET'])
@login_required
@module_required('sales')
def get_invoice(invoice_id):
    return jsonify(get_invoice_or_404(invoice_id).to_dict())


@sales_bp.route('/invoices/<int:invoice_id>', methods=['DELETE'])
@login_required
@role_required('Admin')
def api_void_invoice(invoice_id):
    data = get_json_payload()
    invoice = void_invoice(invoice_id, current_user, reason=data.get('reason'))
    return jsonify(invoice.to_dict())
