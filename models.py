from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime
import enum
from sqlalchemy.orm import validates
from decimal import Decimal, ROUND_HALF_UP, getcontext
from sqlalchemy.types import TypeDecorator, Numeric as SA_Numeric
import logging


db = SQLAlchemy()

getcontext().prec = 28


class Money(TypeDecorator):
    """
    SQLAlchemy TypeDecorator to store Decimal values in a NUMERIC/DECIMAL column.
    - Python value: decimal.Decimal (quantized to 2 decimal places, ROUND_HALF_UP)
    - DB value: Decimal stored in NUMERIC(18,2)
    """
    impl = SA_Numeric(precision=18, scale=2)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            try:
                # Use str() to avoid binary-float surprises
                value = Decimal(str(value))
            except Exception:
                raise ValueError(f"Cannot convert {value!r} to Decimal")
        return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            if isinstance(value, Decimal):
                return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
            return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        except Exception:
            logging.exception("Money.process_result_value: failed to parse DB value %r (type=%s)", value, type(value))
            raise

    @property
    def python_type(self):
        return Decimal


def _money(value):
    return format(value, '0.2f') if value is not None else "0.00"


def _iso(value):
    return value.isoformat() if value is not None else None


class Role(str, enum.Enum):
    ADMIN = 'Admin'
    MANAGER = 'Manager'
    STAFF = 'Staff'
    SALES = 'Sales'
    DEALER = 'Dealer'
    CUSTOMER = 'Customer'


class CustomerType(str, enum.Enum):
    RETAIL = 'Retail'
    DEALER = 'Dealer'
    ECOMMERCE = 'Ecommerce'


class ProductType(str, enum.Enum):
    PRODUCT = 'Product'
    PACKET = 'Packet'
    OTHERS = 'Others'


class LedgerType(str, enum.Enum):
    OPENING = 'Opening'
    INVOICE = 'Invoice'
    PAYMENT = 'Payment'
    REPLACEMENT = 'Replacement'
    ADJUSTMENT = 'Adjustment'
    RETURN = 'Return'
    REVERSAL = 'Reversal'


class ReplacementStatus(str, enum.Enum):
    PENDING = 'Pending'
    CHECKED = 'Checked'
    SENT_TO_FACTORY = 'Sent to Factory'
    REPAIRED = 'Repaired'
    # Reserved terminal state; no transition produces it yet
    CLOSED = 'Closed'


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200))
    password_hash = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(50), nullable=False, default=Role.STAFF.value)
    status = db.Column(db.String(20), nullable=False, default='Active')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_active(self):
        return self.status == 'Active'

    @validates('role')
    def validate_role(self, key, value):
        allowed = {r.value for r in Role}
        if value not in allowed:
            raise ValueError(f"Unknown role {value!r}")
        return value

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'name': self.name,
            'role': self.role,
            'status': self.status,
        }


class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    company_name = db.Column(db.String(200))
    phone = db.Column(db.String(50))
    email = db.Column(db.String(100))
    address = db.Column(db.String(300))
    district = db.Column(db.String(100))
    brand = db.Column(db.String(30), nullable=False, default='Both')  # 'Green Tel', 'Green Star' or 'Both'
    type = db.Column(db.String(20), nullable=False, default=CustomerType.RETAIL.value)

    # Financial summary, moved in the same transaction as every ledger append
    total_sales_qty = db.Column(db.Integer, nullable=False, default=0)
    total_sales_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    total_payment = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    total_adjust = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    total_dues = db.Column(Money(), nullable=False, default=Decimal('0.00'))

    last_invoice_no = db.Column(db.String(50))
    last_invoice_qty = db.Column(db.Integer)
    last_invoice_amount = db.Column(Money())
    last_invoice_date = db.Column(db.DateTime)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_dealer(self):
        return self.type == CustomerType.DEALER.value

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'company_name': self.company_name,
            'phone': self.phone,
            'email': self.email,
            'address': self.address,
            'district': self.district,
            'brand': self.brand,
            'type': self.type,
            'total_sales_qty': self.total_sales_qty or 0,
            'total_sales_amount': _money(self.total_sales_amount),
            'total_payment': _money(self.total_payment),
            'total_adjust': _money(self.total_adjust),
            'total_dues': _money(self.total_dues),
            'last_invoice_no': self.last_invoice_no,
            'last_invoice_date': _iso(self.last_invoice_date),
            'is_active': self.is_active,
        }

    __table_args__ = (
        db.Index('idx_customer_name', 'name'),
        db.Index('idx_customer_district', 'district'),
        db.Index('idx_customer_brand', 'brand'),
        db.Index('idx_customer_type', 'type'),
    )


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    model_name = db.Column(db.String(200), nullable=False)
    brand = db.Column(db.String(30), nullable=False)
    type = db.Column(db.String(20), nullable=False, default=ProductType.PRODUCT.value)
    purchase_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    sales_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    dealer_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))

    # Stock buckets
    good_qty = db.Column(db.Integer, nullable=False, default=0)
    bad_qty = db.Column(db.Integer, nullable=False, default=0)
    damage_qty = db.Column(db.Integer, nullable=False, default=0)
    repair_qty = db.Column(db.Integer, nullable=False, default=0)

    description = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    STOCK_FIELDS = ('good_qty', 'bad_qty', 'damage_qty', 'repair_qty')

    @property
    def total_stock(self):
        return sum(getattr(self, f) or 0 for f in self.STOCK_FIELDS)

    @property
    def stock_value(self):
        return (Decimal(self.good_qty or 0) * (self.purchase_price or Decimal('0.00'))).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    def to_dict(self):
        return {
            'id': self.id,
            'model_name': self.model_name,
            'brand': self.brand,
            'type': self.type,
            'purchase_price': _money(self.purchase_price),
            'sales_price': _money(self.sales_price),
            'dealer_price': _money(self.dealer_price),
            'stock': {f: getattr(self, f) or 0 for f in self.STOCK_FIELDS},
            'total_stock': self.total_stock,
            'stock_value': _money(self.stock_value),
            'description': self.description,
            'is_active': self.is_active,
        }

    @validates('purchase_price', 'sales_price', 'dealer_price')
    def validate_prices(self, key, value):
        """Coerce and validate price fields. Accepts strings like '1,234.56'."""
        if value is None or (isinstance(value, str) and value.strip() == ''):
            return Decimal('0.00')
        try:
            if isinstance(value, Decimal):
                d = value
            elif isinstance(value, str):
                d = Decimal(value.strip().replace(',', ''))
            else:
                d = Decimal(str(value))
        except Exception:
            raise ValueError(f'{key} must be a numeric value (got {value!r})')
        if d < 0:
            raise ValueError(f'{key} cannot be negative')
        return d.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    @validates('good_qty', 'bad_qty', 'damage_qty', 'repair_qty')
    def validate_quantity(self, key, value):
        """Stock counters are integers >= 0."""
        if value is None:
            raise ValueError(f'{key} cannot be None')
        try:
            v = int(value)
        except (TypeError, ValueError):
            raise ValueError(f'{key} must be an integer')
        if v < 0:
            raise ValueError(f'{key} cannot be negative')
        return v

    __table_args__ = (
        db.CheckConstraint('good_qty >= 0', name='ck_product_good_qty'),
        db.CheckConstraint('bad_qty >= 0', name='ck_product_bad_qty'),
        db.CheckConstraint('damage_qty >= 0', name='ck_product_damage_qty'),
        db.CheckConstraint('repair_qty >= 0', name='ck_product_repair_qty'),
        db.Index('idx_product_brand_type', 'brand', 'type'),
        db.Index('idx_product_model_name', 'model_name'),
    )


class LedgerEntry(db.Model):
    """Append-only dealer/customer ledger row with a write-time balance snapshot."""
    __tablename__ = 'ledger_entry'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    customer = db.relationship('Customer')
    brand = db.Column(db.String(30), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)
    reference_no = db.Column(db.String(50), nullable=True)
    debit = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    credit = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    balance = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    description = db.Column(db.String(400))
    date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    added_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"), nullable=True)
    added_by = db.relationship('User')
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'brand': self.brand,
            'type': self.type,
            'reference_id': self.reference_id,
            'reference_no': self.reference_no,
            'debit': _money(self.debit),
            'credit': _money(self.credit),
            'balance': _money(self.balance),
            'description': self.description,
            'date': _iso(self.date),
            'added_by': self.added_by.username if self.added_by else None,
        }

    __table_args__ = (
        db.Index('idx_ledger_customer_brand_date', 'customer_id', 'brand', 'date'),
        db.Index('idx_ledger_brand', 'brand'),
        db.Index('idx_ledger_reference', 'type', 'reference_id'),
    )


class SequenceCounter(db.Model):
    """Named monotonically increasing counter (one row per brand/document kind)."""
    __tablename__ = 'sequence_counter'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    current_value = db.Column(db.Integer, nullable=False, default=0)


class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_no = db.Column(db.String(50), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    customer = db.relationship('Customer')
    brand = db.Column(db.String(30), nullable=False)
    price_type = db.Column(db.String(20), nullable=False, default='Retail')
    items = db.relationship('InvoiceItem', backref='invoice', cascade='all, delete-orphan', order_by='InvoiceItem.id')

    total_qty = db.Column(db.Integer, nullable=False, default=0)
    sub_total = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    discount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    rebate = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    previous_dues = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    grand_total = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    paid_amount = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    dues = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    note = db.Column(db.String(500))
    status = db.Column(db.String(20), nullable=False, default='Confirmed')  # Confirmed, Cancelled
    date = db.Column(db.DateTime, default=datetime.utcnow)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    created_by = db.relationship('User', foreign_keys=[created_by_id])
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    voided_at = db.Column(db.DateTime, nullable=True)
    voided_by = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"), nullable=True)
    void_reason = db.Column(db.String(500), nullable=True)
    voided_by_user = db.relationship('User', foreign_keys=[voided_by])

    def to_dict(self):
        return {
            'id': self.id,
            'invoice_no': self.invoice_no,
            'customer_id': self.customer_id,
            'brand': self.brand,
            'price_type': self.price_type,
            'items': [i.to_dict() for i in self.items],
            'total_qty': self.total_qty,
            'sub_total': _money(self.sub_total),
            'discount': _money(self.discount),
            'rebate': _money(self.rebate),
            'previous_dues': _money(self.previous_dues),
            'grand_total': _money(self.grand_total),
            'paid_amount': _money(self.paid_amount),
            'dues': _money(self.dues),
            'note': self.note,
            'status': self.status,
            'date': _iso(self.date),
            'voided_at': _iso(self.voided_at),
            'void_reason': self.void_reason,
        }

    __table_args__ = (
        db.Index('idx_invoice_customer', 'customer_id'),
        db.Index('idx_invoice_brand', 'brand'),
        db.Index('idx_invoice_date', 'date'),
    )


class InvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    product_name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(20))
    qty = db.Column(db.Integer, nullable=False)
    price = db.Column(Money(), nullable=False)
    total = db.Column(Money(), nullable=False)

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'product_name': self.product_name,
            'type': self.type,
            'qty': self.qty,
            'price': _money(self.price),
            'total': _money(self.total),
        }


class Replacement(db.Model):
    """A dealer's returned-goods claim moving through the repair workflow."""
    id = db.Column(db.Integer, primary_key=True)
    replacement_no = db.Column(db.String(30), unique=True, nullable=False)
    dealer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False)
    dealer = db.relationship('Customer')
    brand = db.Column(db.String(30), nullable=False)
    items = db.relationship('ReplacementItem', back_populates='replacement',
                            cascade='all, delete-orphan', order_by='ReplacementItem.id')

    total_claimed = db.Column(db.Integer, nullable=False, default=0)
    total_good = db.Column(db.Integer, nullable=False, default=0)
    total_repairable = db.Column(db.Integer, nullable=False, default=0)
    total_bad = db.Column(db.Integer, nullable=False, default=0)
    total_damage = db.Column(db.Integer, nullable=False, default=0)
    total_rejected = db.Column(db.Integer, nullable=False, default=0)

    # Factory / repair details
    sent_date = db.Column(db.DateTime, nullable=True)
    received_date = db.Column(db.DateTime, nullable=True)
    high_cost_qty = db.Column(db.Integer, nullable=False, default=0)
    low_cost_qty = db.Column(db.Integer, nullable=False, default=0)
    total_repair_cost = db.Column(Money(), nullable=False, default=Decimal('0.00'))
    repair_note = db.Column(db.String(500))

    status = db.Column(db.String(30), nullable=False, default=ReplacementStatus.PENDING.value)
    is_ledger_adjusted = db.Column(db.Boolean, nullable=False, default=False)
    is_stock_added = db.Column(db.Boolean, nullable=False, default=False)

    date = db.Column(db.DateTime, default=datetime.utcnow)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    created_by = db.relationship('User')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'replacement_no': self.replacement_no,
            'dealer': {
                'id': self.dealer_id,
                'name': self.dealer.name if self.dealer else None,
                'phone': self.dealer.phone if self.dealer else None,
            },
            'brand': self.brand,
            'status': self.status,
            'items': [i.to_dict() for i in self.items],
            'total_claimed': self.total_claimed,
            'total_good': self.total_good,
            'total_repairable': self.total_repairable,
            'total_bad': self.total_bad,
            'total_damage': self.total_damage,
            'total_rejected': self.total_rejected,
            'repair_details': {
                'sent_date': _iso(self.sent_date),
                'received_date': _iso(self.received_date),
                'high_cost_qty': self.high_cost_qty,
                'low_cost_qty': self.low_cost_qty,
                'total_repair_cost': _money(self.total_repair_cost),
                'repair_note': self.repair_note,
            },
            'is_ledger_adjusted': self.is_ledger_adjusted,
            'is_stock_added': self.is_stock_added,
            'date': _iso(self.date),
            'created_by': self.created_by.username if self.created_by else None,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    __table_args__ = (
        db.Index('idx_replacement_dealer', 'dealer_id'),
        db.Index('idx_replacement_brand', 'brand'),
        db.Index('idx_replacement_status', 'status'),
    )


class ReplacementItem(db.Model):
    """One product line of a replacement case; name and price are snapshots."""
    __tablename__ = 'replacement_item'

    id = db.Column(db.Integer, primary_key=True)
    replacement_id = db.Column(db.Integer, db.ForeignKey('replacement.id'), nullable=False)
    replacement = db.relationship('Replacement', back_populates='items')
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False)
    product = db.relationship('Product')
    product_name = db.Column(db.String(200), nullable=False)

    claimed_qty = db.Column(db.Integer, nullable=False)
    good_qty = db.Column(db.Integer, nullable=False, default=0)
    repairable_qty = db.Column(db.Integer, nullable=False, default=0)
    bad_qty = db.Column(db.Integer, nullable=False, default=0)
    damage_qty = db.Column(db.Integer, nullable=False, default=0)
    rejected_qty = db.Column(db.Integer, nullable=False, default=0)
    unit_price = db.Column(Money(), nullable=False, default=Decimal('0.00'))

    @property
    def accepted_qty(self):
        return (self.good_qty or 0) + (self.repairable_qty or 0)

    def to_dict(self):
        return {
            'product_id': self.product_id,
            'product_name': self.product_name,
            'claimed_qty': self.claimed_qty,
            'good_qty': self.good_qty,
            'repairable_qty': self.repairable_qty,
            'bad_qty': self.bad_qty,
            'damage_qty': self.damage_qty,
            'rejected_qty': self.rejected_qty,
            'unit_price': _money(self.unit_price),
        }

    __table_args__ = (
        db.Index('idx_replacement_item_product', 'product_id'),
    )


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete="SET NULL"))
    user = db.relationship('User')
    action = db.Column(db.String(255), nullable=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    ip_address = db.Column(db.String(45))

    def __repr__(self):
        username = self.user.username if self.user else 'System'
        return f'<AuditLog {self.timestamp} - {username}: {self.action}>'

    __table_args__ = (
        db.Index('idx_auditlog_user_id', 'user_id'),
        db.Index('idx_auditlog_timestamp', 'timestamp'),
    )
