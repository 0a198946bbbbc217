"""
Replacement workflow: create -> triage -> factory-send -> factory-receive.

Each transition is planned first (validation and the full list of side
effects, no writes), then applied inside one ``atomic()`` unit after the status
compare-and-swap has been won. A stale or duplicate submission loses the swap
and gets a StateError with nothing applied, so stock and ledger effects happen
at most once per case.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import delete, func, select, update

from models import (db, Customer, Product, Replacement, ReplacementItem, LedgerType,
                    ReplacementStatus)
from .concurrency import serialized, atomic, ledger_key, replacement_key, sequence_key
from .errors import NotFoundError, StateError, ValidationError
from .ledger_utils import lock_customer, post_entry
from .sequence_utils import brand_prefix, next_replacement_no, replacement_sequence_name
from .stock_utils import apply_stock_delta, unit_price_for_credit
from .utils import log_action, parse_id, parse_qty, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')

TRIAGE_FIELDS = ('good_qty', 'repairable_qty', 'bad_qty', 'damage_qty')

# action -> (required status, resulting status)
ALLOWED_TRANSITIONS = {
    'triage': (ReplacementStatus.PENDING, ReplacementStatus.CHECKED),
    'factory_send': (ReplacementStatus.CHECKED, ReplacementStatus.SENT_TO_FACTORY),
    'factory_receive': (ReplacementStatus.SENT_TO_FACTORY, ReplacementStatus.REPAIRED),
}

WRONG_STATE_MESSAGES = {
    'triage': 'Replacement has already been checked',
    'factory_send': 'Replacement must be Checked before sending to factory',
    'factory_receive': 'Replacement is not at Factory stage',
}


@dataclass
class TransitionPlan:
    action: str
    from_status: str
    to_status: str
    line_updates: list = field(default_factory=list)    # (ReplacementItem, {column: value})
    stock_deltas: list = field(default_factory=list)    # (product_id, {'good': n, ...})
    case_updates: dict = field(default_factory=dict)
    ledger_credit: Decimal = ZERO
    warnings: list = field(default_factory=list)


def get_replacement_or_404(replacement_id, fresh=False):
    stmt = select(Replacement).where(Replacement.id == replacement_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    replacement = db.session.execute(stmt).scalar_one_or_none()
    if replacement is None:
        raise NotFoundError('Replacement not found')
    return replacement


def require_status(replacement, action):
    required, _ = ALLOWED_TRANSITIONS[action]
    if replacement.status != required.value:
        raise StateError(f'{WRONG_STATE_MESSAGES[action]} (current status: {replacement.status})')


def _claim_transition(replacement, plan):
    """Conditional status UPDATE; only one caller per transition sees rowcount 1."""
    result = db.session.execute(
        update(Replacement)
        .where(Replacement.id == replacement.id, Replacement.status == plan.from_status)
        .values(status=plan.to_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateError(f'{WRONG_STATE_MESSAGES[plan.action]} (status changed concurrently)')
    db.session.expire(replacement, ['status'])


def _new_plan(replacement, action):
    require_status(replacement, action)
    required, target = ALLOWED_TRANSITIONS[action]
    return TransitionPlan(action=action, from_status=required.value, to_status=target.value)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def _validate_dealer(dealer_id):
    if dealer_id in (None, ''):
        raise ValidationError('Dealer is required')
    dealer = db.session.get(Customer, dealer_id)
    if dealer is None or not dealer.is_dealer:
        raise ValidationError('Invalid dealer')
    return dealer


def _validate_claim_lines(items):
    if not isinstance(items, list) or not items:
        raise ValidationError('At least one item is required')
    lines = []
    seen = set()
    for index, raw in enumerate(items, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f'Item {index} must be an object')
        product_id = raw.get('product_id')
        product = None
        if product_id not in (None, ''):
            product = db.session.get(Product, parse_id(product_id, 'product_id'))
        if product is None:
            raise ValidationError(f'Product not found: {product_id}')
        if product.id in seen:
            raise ValidationError(f'Duplicate product in replacement: {product.model_name}')
        seen.add(product.id)
        claimed = parse_qty(raw.get('claimed_qty'), f'claimed_qty for {product.model_name}', minimum=1)
        lines.append((product, claimed))
    return lines


def create_replacement(dealer_id, brand, items, actor, date=None):
    """Record a dealer's claim in Pending status. No stock or ledger effect."""
    brand_prefix(brand)
    dealer = _validate_dealer(dealer_id)
    lines = _validate_claim_lines(items)

    with serialized(sequence_key(replacement_sequence_name(brand))), atomic():
        replacement = Replacement(
            replacement_no=next_replacement_no(brand),
            dealer_id=dealer.id,
            brand=brand,
            status=ReplacementStatus.PENDING.value,
            total_claimed=sum(qty for _, qty in lines),
            date=date or datetime.utcnow(),
            created_by_id=getattr(actor, 'id', None),
        )
        for product, claimed in lines:
            replacement.items.append(ReplacementItem(
                product_id=product.id,
                product_name=product.model_name,
                claimed_qty=claimed,
            ))
        db.session.add(replacement)
        db.session.flush()
        log_action(f'Created replacement {replacement.replacement_no} for dealer {dealer.name} '
                   f'({replacement.total_claimed} units).', user=actor)

    logger.info("Replacement %s created for dealer %s (%s lines)",
                replacement.replacement_no, dealer.id, len(lines))
    return replacement


# ---------------------------------------------------------------------------
# Triage
# ---------------------------------------------------------------------------

def plan_triage(replacement, rows):
    """
    Validate triage rows against the case lines and work out every effect.

    ``rows`` must hold exactly one entry per case line, keyed by product_id.
    A bucket sum that differs from the claimed quantity is a warning only.
    """
    plan = _new_plan(replacement, 'triage')
    if not isinstance(rows, list) or not rows:
        raise ValidationError('Triage items are required')

    lines = {item.product_id: item for item in replacement.items}
    submitted = {}
    for raw in rows:
        if not isinstance(raw, dict):
            raise ValidationError('Each triage item must be an object')
        product_id = parse_id(raw.get('product_id'), 'product_id')
        if product_id not in lines:
            raise ValidationError(f'Product {product_id} is not part of replacement {replacement.replacement_no}')
        if product_id in submitted:
            raise ValidationError(f'Duplicate triage row for product {product_id}')
        submitted[product_id] = raw

    missing = [item.product_name for pid, item in lines.items() if pid not in submitted]
    if missing:
        raise ValidationError(f'Triage is missing items: {", ".join(missing)}')

    totals = dict.fromkeys(TRIAGE_FIELDS, 0)
    credit = ZERO
    for product_id, item in lines.items():
        raw = submitted[product_id]
        qty = {f: parse_qty(raw.get(f), f'{f} for {item.product_name}') for f in TRIAGE_FIELDS}
        classified = sum(qty.values())
        if classified != item.claimed_qty:
            plan.warnings.append(
                f'{item.product_name}: classified {classified} of {item.claimed_qty} claimed units')

        product = db.session.get(Product, product_id)
        if product is None:
            raise ValidationError(f'Product not found: {product_id}')
        price = to_decimal(unit_price_for_credit(product))
        credit += price * (qty['good_qty'] + qty['repairable_qty'])

        plan.line_updates.append((item, dict(qty, unit_price=price,
                                             rejected_qty=qty['bad_qty'] + qty['damage_qty'])))
        plan.stock_deltas.append((product_id, {
            'good': qty['good_qty'],
            'repair': qty['repairable_qty'],
            'bad': qty['bad_qty'],
            'damage': qty['damage_qty'],
        }))
        for f in TRIAGE_FIELDS:
            totals[f] += qty[f]

    plan.case_updates = {
        'total_good': totals['good_qty'],
        'total_repairable': totals['repairable_qty'],
        'total_bad': totals['bad_qty'],
        'total_damage': totals['damage_qty'],
        'total_rejected': totals['bad_qty'] + totals['damage_qty'],
        'is_stock_added': True,
    }
    if not replacement.is_ledger_adjusted:
        plan.ledger_credit = to_decimal(credit)
    return plan


def triage_replacement(replacement_id, rows, actor):
    """
    Pending -> Checked. Stock, the single Replacement credit, flags and totals
    are applied together; returns (replacement, warnings).
    """
    case = get_replacement_or_404(replacement_id)
    dealer_id, brand = case.dealer_id, case.brand

    with serialized(replacement_key(replacement_id), ledger_key(dealer_id, brand)), atomic():
        case = get_replacement_or_404(replacement_id, fresh=True)
        plan = plan_triage(case, rows)
        _claim_transition(case, plan)

        for item, values in plan.line_updates:
            for column, value in values.items():
                setattr(item, column, value)
        for product_id, deltas in plan.stock_deltas:
            apply_stock_delta(product_id, **deltas)

        if plan.ledger_credit > 0:
            dealer = lock_customer(dealer_id)
            post_entry(dealer, brand, LedgerType.REPLACEMENT, credit=plan.ledger_credit,
                       description=f'Replacement credit {case.replacement_no}', author=actor,
                       reference_id=case.id, reference_no=case.replacement_no,
                       adjust=plan.ledger_credit)
            plan.case_updates['is_ledger_adjusted'] = True

        for column, value in plan.case_updates.items():
            setattr(case, column, value)
        log_action(f'Checked replacement {case.replacement_no}: good {case.total_good}, '
                   f'repairable {case.total_repairable}, credit {plan.ledger_credit:,.2f}.', user=actor)

    logger.info("Replacement %s: %s -> %s (credit %s, %s warnings)", case.replacement_no,
                plan.from_status, plan.to_status, plan.ledger_credit, len(plan.warnings))
    return case, plan.warnings


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def plan_factory_send(replacement):
    plan = _new_plan(replacement, 'factory_send')
    if (replacement.total_repairable or 0) <= 0:
        raise ValidationError('Replacement has no repairable units to send to factory')
    plan.case_updates = {'sent_date': datetime.utcnow()}
    return plan


def send_to_factory(replacement_id, actor):
    with serialized(replacement_key(replacement_id)), atomic():
        case = get_replacement_or_404(replacement_id, fresh=True)
        plan = plan_factory_send(case)
        _claim_transition(case, plan)
        for column, value in plan.case_updates.items():
            setattr(case, column, value)
        log_action(f'Sent replacement {case.replacement_no} to factory '
                   f'({case.total_repairable} units).', user=actor)

    logger.info("Replacement %s: %s -> %s", case.replacement_no, plan.from_status, plan.to_status)
    return case


def repair_cost(high_qty, low_qty):
    config = current_app.config
    high_rate = to_decimal(config.get('REPAIR_COST_HIGH', '0'))
    low_rate = to_decimal(config.get('REPAIR_COST_LOW', '0'))
    return to_decimal(high_rate * high_qty + low_rate * low_qty)


def plan_factory_receive(replacement, high_cost_qty, low_cost_qty, repair_note=None):
    plan = _new_plan(replacement, 'factory_receive')
    high = parse_qty(high_cost_qty, 'high_cost_qty')
    low = parse_qty(low_cost_qty, 'low_cost_qty')

    repairable = replacement.total_repairable or 0
    if high + low > repairable:
        raise ValidationError(
            f'Total repaired ({high + low}) exceeds repairable quantity ({repairable}) '
            f'by {high + low - repairable}')

    # Case-level high/low counts; each line's full repairable quantity goes back to good stock
    plan.stock_deltas = [(item.product_id, {'good': item.repairable_qty})
                         for item in replacement.items if (item.repairable_qty or 0) > 0]
    plan.case_updates = {
        'high_cost_qty': high,
        'low_cost_qty': low,
        'received_date': datetime.utcnow(),
        'total_repair_cost': repair_cost(high, low),
    }
    if repair_note:
        plan.case_updates['repair_note'] = str(repair_note)[:500]
    return plan


def receive_from_factory(replacement_id, high_cost_qty, low_cost_qty, actor, repair_note=None):
    with serialized(replacement_key(replacement_id)), atomic():
        case = get_replacement_or_404(replacement_id, fresh=True)
        plan = plan_factory_receive(case, high_cost_qty, low_cost_qty, repair_note)
        _claim_transition(case, plan)
        for product_id, deltas in plan.stock_deltas:
            apply_stock_delta(product_id, **deltas)
        for column, value in plan.case_updates.items():
            setattr(case, column, value)
        log_action(f'Received replacement {case.replacement_no} from factory: '
                   f'high {case.high_cost_qty}, low {case.low_cost_qty}.', user=actor)

    logger.info("Replacement %s: %s -> %s (repair cost %s)", case.replacement_no,
                plan.from_status, plan.to_status, plan.case_updates['total_repair_cost'])
    return case


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

def delete_replacement(replacement_id, actor):
    """Hard delete, allowed only while Pending (nothing to undo yet)."""
    with serialized(replacement_key(replacement_id)), atomic():
        case = get_replacement_or_404(replacement_id, fresh=True)
        if case.status != ReplacementStatus.PENDING.value:
            raise StateError('Cannot delete processed replacement')
        replacement_no = case.replacement_no
        db.session.expunge(case)

        db.session.execute(delete(ReplacementItem).where(ReplacementItem.replacement_id == replacement_id))
        result = db.session.execute(
            delete(Replacement).where(Replacement.id == replacement_id,
                                      Replacement.status == ReplacementStatus.PENDING.value)
        )
        if result.rowcount != 1:
            raise StateError('Cannot delete processed replacement (status changed concurrently)')
        log_action(f'Deleted replacement {replacement_no}.', user=actor)

    logger.info("Replacement %s deleted", replacement_no)
    return replacement_no


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _repairable_by_product(status, brand=None):
    query = (db.session.query(Product.id, Product.model_name, Product.purchase_price,
                              func.sum(ReplacementItem.repairable_qty))
             .join(ReplacementItem, ReplacementItem.product_id == Product.id)
             .join(Replacement, Replacement.id == ReplacementItem.replacement_id)
             .filter(Replacement.status == status, ReplacementItem.repairable_qty > 0))
    if brand:
        query = query.filter(Replacement.brand == brand)
    rows = query.group_by(Product.id, Product.model_name, Product.purchase_price).all()

    items = []
    total_qty = 0
    total_value = ZERO
    for product_id, name, purchase_price, qty in rows:
        qty = int(qty or 0)
        value = to_decimal(purchase_price) * qty
        items.append({
            'product_id': product_id,
            'product_name': name,
            'qty': qty,
            'unit_price': format(to_decimal(purchase_price), '0.2f'),
            'total_value': format(value, '0.2f'),
        })
        total_qty += qty
        total_value += value
    return {'items': items, 'total_qty': total_qty, 'total_value': format(total_value, '0.2f')}


def replacement_stats(brand=None):
    """Units at the factory and units checked but not yet shipped, valued at purchase price."""
    return {
        'in_factory': _repairable_by_product(ReplacementStatus.SENT_TO_FACTORY.value, brand),
        'pending': _repairable_by_product(ReplacementStatus.CHECKED.value, brand),
    }


def dealer_summary(dealer_id):
    dealer = db.session.get(Customer, dealer_id)
    if dealer is None:
        raise NotFoundError('Dealer not found')
    cases = (Replacement.query
             .filter_by(dealer_id=dealer_id)
             .order_by(Replacement.date.desc(), Replacement.id.desc())
             .all())

    credited = ZERO
    for case in cases:
        if case.is_ledger_adjusted:
            credited += sum((to_decimal(i.unit_price) * i.accepted_qty for i in case.items), ZERO)

    summary = {
        'total_claimed': sum(c.total_claimed or 0 for c in cases),
        'total_good': sum(c.total_good or 0 for c in cases),
        'total_repairable': sum(c.total_repairable or 0 for c in cases),
        'total_bad': sum(c.total_bad or 0 for c in cases),
        'total_damage': sum(c.total_damage or 0 for c in cases),
        'total_repair_cost': format(sum((to_decimal(c.total_repair_cost) for c in cases), ZERO), '0.2f'),
        'total_credit': format(to_decimal(credited), '0.2f'),
    }
    return dealer, cases, summary
