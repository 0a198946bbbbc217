from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from models import Replacement
from .decorators import module_required, role_required
from .replacement_utils import (create_replacement, triage_replacement, send_to_factory,
                                receive_from_factory, delete_replacement, get_replacement_or_404,
                                replacement_stats, dealer_summary)
from .utils import get_json_payload, paginate_query, parse_date, safe_int

replacement_bp = Blueprint('replacement', __name__, url_prefix='/replacement')

WORKFLOW_ROLES = ('Admin', 'Manager')


@replacement_bp.route('', methods=['GET'])
@login_required
@module_required('replacement')
def list_replacements():
    query = Replacement.query
    dealer_id = request.args.get('dealer_id')
    if dealer_id:
        query = query.filter(Replacement.dealer_id == safe_int(dealer_id))
    for arg in ('brand', 'status'):
        value = request.args.get(arg)
        if value:
            query = query.filter(getattr(Replacement, arg) == value)

    items, pagination = paginate_query(query.order_by(Replacement.date.desc(), Replacement.id.desc()))
    return jsonify({'replacements': [r.to_dict() for r in items], 'pagination': pagination})


@replacement_bp.route('/stats', methods=['GET'])
@login_required
@module_required('replacement')
def stats():
    return jsonify(replacement_stats(request.args.get('brand')))


@replacement_bp.route('/dealer/<int:dealer_id>', methods=['GET'])
@login_required
@module_required('replacement')
def dealer_replacements(dealer_id):
    dealer, cases, summary = dealer_summary(dealer_id)
    return jsonify({
        'dealer': {'id': dealer.id, 'name': dealer.name, 'phone': dealer.phone},
        'replacements': [c.to_dict() for c in cases],
        'summary': summary,
    })


@replacement_bp.route('/<int:replacement_id>', methods=['GET'])
@login_required
@module_required('replacement')
def get_replacement(replacement_id):
    return jsonify(get_replacement_or_404(replacement_id).to_dict())


@replacement_bp.route('', methods=['POST'])
@login_required
@role_required(*WORKFLOW_ROLES)
def api_create_replacement():
    data = get_json_payload()
    case = create_replacement(data.get('dealer_id'), data.get('brand'), data.get('items'),
                              current_user, date=parse_date(data.get('date')))
    return jsonify(case.to_dict()), 201


@replacement_bp.route('/<int:replacement_id>/triage', methods=['POST'])
@login_required
@role_required(*WORKFLOW_ROLES)
def api_triage(replacement_id):
    data = get_json_payload()
    case, warnings = triage_replacement(replacement_id, data.get('items'), current_user)
    body = case.to_dict()
    body['warnings'] = warnings
    return jsonify(body)


@replacement_bp.route('/<int:replacement_id>/factory-send', methods=['POST'])
@login_required
@role_required(*WORKFLOW_ROLES)
def api_factory_send(replacement_id):
    return jsonify(send_to_factory(replacement_id, current_user).to_dict())


@replacement_bp.route('/<int:replacement_id>/factory-receive', methods=['POST'])
@login_required
@role_required(*WORKFLOW_ROLES)
def api_factory_receive(replacement_id):
    data = get_json_payload()
    case = receive_from_factory(replacement_id, data.get('high_cost_qty'), data.get('low_cost_qty'),
                                current_user, repair_note=data.get('repair_note'))
    return jsonify(case.to_dict())


@replacement_bp.route('/<int:replacement_id>', methods=['DELETE'])
@login_required
@role_required('Admin')
def api_delete_replacement(replacement_id):
    replacement_no = delete_replacement(replacement_id, current_user)
    return jsonify({'message': f'Replacement {replacement_no} deleted'})
