"""
Customer ledger: append-only entries carrying a running-balance snapshot.

Every append runs under ``serialized(ledger_key(customer, brand))`` and inside
the caller's transaction. The customer row is locked first so the previous
balance read and the new row cannot interleave with another writer, and the
customer's cached totals are moved with a SQL increment in the same unit.

Invariants:
    * within one (customer, brand) chain ordered by creation,
      ``balance == previous balance + debit - credit``
    * ``customer.total_dues`` moves by exactly ``debit - credit`` per entry
"""
import logging
from collections import OrderedDict
from decimal import Decimal

from sqlalchemy import func, select, update

from models import db, Customer, LedgerEntry, LedgerType
from .concurrency import serialized, ledger_key, atomic
from .errors import NotFoundError, ValidationError
from .sequence_utils import brand_prefix
from .utils import log_action, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def lock_customer(customer_id):
    """Load the customer row with ``SELECT ... FOR UPDATE`` (no-op lock on SQLite)."""
    customer = db.session.execute(
        select(Customer)
        .where(Customer.id == customer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if customer is None:
        raise NotFoundError('Customer not found')
    return customer


def latest_entry_query(customer_id, brand=None):
    """Newest entry for the customer, optionally within one brand's chain."""
    stmt = select(LedgerEntry).where(LedgerEntry.customer_id == customer_id)
    if brand is not None:
        stmt = stmt.where(LedgerEntry.brand == brand)
    # Locking read: sees rows committed after the transaction's first snapshot
    return (stmt
            .order_by(LedgerEntry.date.desc(), LedgerEntry.id.desc())
            .limit(1)
            .with_for_update())


def latest_entry(customer_id, brand=None):
    return db.session.execute(latest_entry_query(customer_id, brand)).scalar_one_or_none()


def previous_balance(customer, brand):
    """
    Balance the next entry in ``brand`` builds on.

    The newest snapshot in the brand's chain; a brand the customer has never
    been booked in starts at zero. Only a customer with no ledger history at
    all carries its cached ``total_dues`` (imported dues) into the first entry.
    """
    last = latest_entry(customer.id, brand)
    if last is not None:
        return to_decimal(last.balance)
    if latest_entry(customer.id) is not None:
        return ZERO
    return to_decimal(customer.total_dues)


def append_entry(customer, brand, entry_type, debit=ZERO, credit=ZERO, description=None,
                 author=None, reference_id=None, reference_no=None):
    debit = to_decimal(debit)
    credit = to_decimal(credit)
    if debit < 0 or credit < 0:
        raise ValidationError('Ledger debit and credit cannot be negative')
    if isinstance(entry_type, LedgerType):
        entry_type = entry_type.value

    prev = previous_balance(customer, brand)
    entry = LedgerEntry(
        customer_id=customer.id,
        brand=brand,
        type=entry_type,
        reference_id=reference_id,
        reference_no=reference_no,
        debit=debit,
        credit=credit,
        balance=prev + debit - credit,
        description=description,
        added_by_id=getattr(author, 'id', None),
    )
    db.session.add(entry)
    db.session.flush()
    logger.info("Ledger %s #%s customer=%s brand=%s debit=%s credit=%s balance %s -> %s",
                entry_type, entry.id, customer.id, brand, debit, credit, prev, entry.balance)
    return entry


def apply_to_customer(customer, debit=ZERO, credit=ZERO, sales_qty=0, sales_amount=ZERO,
                      payment=ZERO, adjust=ZERO):
    """Move the customer's cached totals; dues always move by debit - credit."""
    values = {
        'total_dues': Customer.total_dues + (to_decimal(debit) - to_decimal(credit)),
    }
    if sales_qty:
        values['total_sales_qty'] = Customer.total_sales_qty + int(sales_qty)
    if sales_amount:
        values['total_sales_amount'] = Customer.total_sales_amount + to_decimal(sales_amount)
    if payment:
        values['total_payment'] = Customer.total_payment + to_decimal(payment)
    if adjust:
        values['total_adjust'] = Customer.total_adjust + to_decimal(adjust)

    db.session.execute(
        update(Customer)
        .where(Customer.id == customer.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(customer, list(values))


def post_entry(customer, brand, entry_type, debit=ZERO, credit=ZERO, description=None, author=None,
               reference_id=None, reference_no=None, **aggregates):
    """Append an entry and move the customer's totals in lock-step."""
    entry = append_entry(customer, brand, entry_type, debit=debit, credit=credit,
                         description=description, author=author,
                         reference_id=reference_id, reference_no=reference_no)
    apply_to_customer(customer, debit=debit, credit=credit, **aggregates)
    return entry


def with_running_balance(entries):
    """Recompute a running balance over ascending entries (read-side view)."""
    running = ZERO
    rows = []
    for entry in entries:
        running = running + to_decimal(entry.debit) - to_decimal(entry.credit)
        row = entry.to_dict()
        row['running_balance'] = format(running, '0.2f')
        rows.append(row)
    return rows, running


def reconcile_customer(customer):
    """
    Compare the cached customer totals with the ledger history.

    Each brand chain must start at zero, except the customer's very first
    entry, which may carry dues recorded before the ledger existed
    (``carried_dues``). Returns per-brand chain checks (entries whose snapshot
    does not follow from the previous one) and the drift between
    ``total_dues`` and the carried dues plus the ledger's net movement.
    """
    entries = (LedgerEntry.query
               .filter_by(customer_id=customer.id)
               .order_by(LedgerEntry.date.asc(), LedgerEntry.id.asc())
               .all())

    cached = to_decimal(customer.total_dues)
    carried = None
    chains = OrderedDict()
    net = ZERO
    for entry in entries:
        debit = to_decimal(entry.debit)
        credit = to_decimal(entry.credit)
        net += debit - credit
        chain = chains.get(entry.brand)
        if chain is None:
            if carried is None:
                carried = to_decimal(entry.balance) - debit + credit
                opening = carried
            else:
                opening = ZERO
            chain = chains[entry.brand] = {'entries': 0, 'opening_balance': opening,
                                           'latest_balance': opening, 'broken_links': []}
        expected = chain['latest_balance'] + debit - credit
        if to_decimal(entry.balance) != expected:
            chain['broken_links'].append({
                'entry_id': entry.id,
                'expected_balance': format(expected, '0.2f'),
                'recorded_balance': format(to_decimal(entry.balance), '0.2f'),
            })
        chain['entries'] += 1
        chain['latest_balance'] = to_decimal(entry.balance)

    if carried is None:
        # No history yet: the cached dues become the first entry's opening
        carried = cached
    brands = {
        brand: {
            'entries': chain['entries'],
            'opening_balance': format(chain['opening_balance'], '0.2f'),
            'latest_balance': format(chain['latest_balance'], '0.2f'),
            'broken_links': chain['broken_links'],
        }
        for brand, chain in chains.items()
    }
    drift = cached - carried - net
    return {
        'customer_id': customer.id,
        'total_dues': format(cached, '0.2f'),
        'carried_dues': format(carried, '0.2f'),
        'ledger_net': format(net, '0.2f'),
        'drift': format(drift, '0.2f'),
        'consistent': drift == 0 and not any(c['broken_links'] for c in chains.values()),
        'brands': brands,
    }


def brand_summary(brand, start=None, end=None):
    """Per-customer debit/credit totals and latest balance within one brand."""
    filters = [LedgerEntry.brand == brand]
    if start is not None:
        filters.append(LedgerEntry.date >= start)
    if end is not None:
        filters.append(LedgerEntry.date <= end)

    totals = (db.session.query(
                LedgerEntry.customer_id,
                func.sum(LedgerEntry.debit),
                func.sum(LedgerEntry.credit),
                func.max(LedgerEntry.id),
                func.max(LedgerEntry.date))
              .filter(*filters)
              .group_by(LedgerEntry.customer_id)
              .all())
    if not totals:
        return []

    last_ids = [row[3] for row in totals]
    latest = {e.id: e for e in LedgerEntry.query.filter(LedgerEntry.id.in_(last_ids)).all()}
    customers = {c.id: c for c in Customer.query.filter(Customer.id.in_([row[0] for row in totals])).all()}

    summary = []
    for customer_id, debit, credit, last_id, last_date in totals:
        customer = customers.get(customer_id)
        summary.append({
            'customer_id': customer_id,
            'name': customer.name if customer else None,
            'phone': customer.phone if customer else None,
            'district': customer.district if customer else None,
            'total_debit': format(to_decimal(debit), '0.2f'),
            'total_credit': format(to_decimal(credit), '0.2f'),
            'balance': format(to_decimal(latest[last_id].balance), '0.2f'),
            'last_transaction': last_date.isoformat() if last_date else None,
        })
    summary.sort(key=lambda row: Decimal(row['balance']), reverse=True)
    return summary


def record_payment(customer_id, brand, amount, author, description=None):
    brand_prefix(brand)
    if to_decimal(amount) <= 0:
        raise ValidationError('Payment amount must be greater than zero')
    with serialized(ledger_key(customer_id, brand)), atomic():
        customer = lock_customer(customer_id)
        entry = post_entry(customer, brand, LedgerType.PAYMENT, credit=amount,
                           description=description or 'Payment received', author=author,
                           payment=amount)
        log_action(f'Recorded payment of {to_decimal(amount):,.2f} from {customer.name} ({brand}).', user=author)
    return entry


def record_adjustment(customer_id, brand, amount, direction, author, description=None):
    brand_prefix(brand)
    if direction not in ('debit', 'credit'):
        raise ValidationError("Adjustment type must be 'debit' or 'credit'")
    amount = to_decimal(amount)
    if amount <= 0:
        raise ValidationError('Adjustment amount must be greater than zero')
    debit = amount if direction == 'debit' else ZERO
    credit = amount if direction == 'credit' else ZERO

    with serialized(ledger_key(customer_id, brand)), atomic():
        customer = lock_customer(customer_id)
        entry = post_entry(customer, brand, LedgerType.ADJUSTMENT, debit=debit, credit=credit,
                           description=description or 'Adjustment', author=author,
                           adjust=credit - debit)
        log_action(f'Recorded {direction} adjustment of {amount:,.2f} for {customer.name} ({brand}).', user=author)
    return entry


def record_opening_balance(customer, brand, amount, author):
    """Opening dues for a freshly created customer; runs in the caller's transaction."""
    brand_prefix(brand)
    customer = lock_customer(customer.id)
    return post_entry(customer, brand, LedgerType.OPENING, debit=amount,
                      description='Opening Balance', author=author,
                      reference_id=customer.id, adjust=amount)
