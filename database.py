"""
Modelos de dados e utilitário de transação.

Cada unidade de trabalho que lê vários registros, decide e escreve vários
registros roda dentro de run_transaction(): tudo ou nada. Conflitos de chave
única e falhas de serialização/lock refazem a unidade de trabalho inteira.
"""
import logging
import time

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)

db = SQLAlchemy()

MAX_TRANSACTION_ATTEMPTS = 5


def run_transaction(work, max_attempts=MAX_TRANSACTION_ATTEMPTS):
    """
    Executa work(session) e faz commit. Em IntegrityError/OperationalError
    (outra transação venceu a corrida) faz rollback e tenta de novo; qualquer
    outro erro faz rollback e é propagado.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            result = work(db.session)
            db.session.commit()
            return result
        except (IntegrityError, OperationalError) as e:
            db.session.rollback()
            if attempt >= max_attempts:
                logger.error(f"Transação abortada após {attempt} tentativas: {e.__class__.__name__}")
                raise
            logger.warning(f"Conflito de transação (tentativa {attempt}/{max_attempts}): {e.__class__.__name__}")
            time.sleep(0.02 * attempt)
        except Exception:
            db.session.rollback()
            raise


def lock_rows(query):
    # SELECT ... FOR UPDATE; no SQLite o BEGIN IMMEDIATE já tomou o lock de escrita
    return query.with_for_update()


def use_immediate_transactions(engine):
    """
    O pysqlite só abre a transação no primeiro INSERT/UPDATE, deixando as
    leituras de uma unidade de trabalho fora dela. Aqui o driver deixa de
    emitir BEGIN e cada transação começa com BEGIN IMMEDIATE, que reserva o
    banco para escrita antes da primeira leitura. Quem chega depois espera
    (busy timeout) ou recebe OperationalError, que run_transaction refaz.
    """
    @event.listens_for(engine, 'connect')
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')


class User(db.Model, UserMixin):
    __tablename__ = 'users'

    id = db.Column(db.String(128), primary_key=True)  # uid do provedor de identidade
    name = db.Column(db.String(160), nullable=True)
    role = db.Column(db.String(20), nullable=True)  # admin | None
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def __repr__(self):
        return f'<User {self.id}>'


class Campaign(db.Model):
    __tablename__ = 'campaigns'

    id = db.Column(db.String(120), primary_key=True)
    title = db.Column(db.String(120), nullable=True)
    main_prize = db.Column(db.String(160), nullable=True)
    second_prize = db.Column(db.String(160), nullable=True)
    bonus_prize = db.Column(db.String(160), nullable=True)
    price_per_cota = db.Column(db.Numeric(12, 2), nullable=True)
    min_purchase_quantity = db.Column(db.Integer, nullable=True)
    number_start = db.Column(db.Integer, nullable=True)
    number_end = db.Column(db.Integer, nullable=True)
    total_numbers = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=True)
    starts_at = db.Column(db.String(10), nullable=True)  # YYYY-MM-DD
    ends_at = db.Column(db.String(10), nullable=True)
    updated_by = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=db.func.now())

    coupons = db.relationship(
        'CampaignCoupon', back_populates='campaign', lazy=True,
        cascade='all, delete-orphan', order_by='CampaignCoupon.position',
    )

    def __repr__(self):
        return f'<Campaign {self.id}>'


class CampaignCoupon(db.Model):
    __tablename__ = 'campaign_coupons'

    campaign_id = db.Column(db.String(120), db.ForeignKey('campaigns.id'), primary_key=True)
    code = db.Column(db.String(24), primary_key=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    discount_type = db.Column(db.String(10), nullable=False)  # percent | fixed
    discount_value = db.Column(db.Numeric(12, 2), nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.String(40), nullable=True)  # ISO-8601 informado pelo admin

    campaign = db.relationship('Campaign', back_populates='coupons')


class NumberState(db.Model):
    """Estado persistido de um número. Ausência de linha = disponível."""
    __tablename__ = 'number_states'

    campaign_id = db.Column(db.String(120), primary_key=True)
    number = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)
    reserved_by = db.Column(db.String(128), nullable=True)
    reserved_at_ms = db.Column(db.BigInteger, nullable=True)
    reservation_expires_at_ms = db.Column(db.BigInteger, nullable=True)
    owner_uid = db.Column(db.String(128), nullable=True)
    order_id = db.Column(db.String(128), nullable=True)
    paid_at_ms = db.Column(db.BigInteger, nullable=True)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)

    def __repr__(self):
        return f'<NumberState {self.campaign_id}#{self.number} {self.status}>'


class NumberReservation(db.Model):
    __tablename__ = 'number_reservations'

    user_id = db.Column(db.String(128), primary_key=True)
    campaign_id = db.Column(db.String(120), nullable=False)
    numbers = db.Column(db.JSON, nullable=False, default=list)
    status = db.Column(db.String(20), nullable=False, default='active')
    expires_at_ms = db.Column(db.BigInteger, nullable=True)
    created_at_ms = db.Column(db.BigInteger, nullable=True)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)


class Order(db.Model):
    __tablename__ = 'orders'

    external_id = db.Column(db.String(128), primary_key=True)
    user_id = db.Column(db.String(128), nullable=True, index=True)
    campaign_id = db.Column(db.String(120), nullable=True)
    type = db.Column(db.String(20), nullable=False, default='deposit')  # deposit | withdraw
    status = db.Column(db.String(20), nullable=True)  # pending | paid | failed
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    subtotal_amount = db.Column(db.Numeric(12, 2), nullable=True)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=True)
    expected_amount = db.Column(db.Numeric(12, 2), nullable=True)
    requested_amount = db.Column(db.Numeric(12, 2), nullable=True)
    unit_price_at_checkout = db.Column(db.Numeric(12, 2), nullable=True)
    min_purchase_quantity = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=True)
    reserved_numbers = db.Column(db.JSON, nullable=True)
    applied_coupon_code = db.Column(db.String(24), nullable=True)
    applied_coupon_discount_type = db.Column(db.String(10), nullable=True)
    applied_coupon_discount_value = db.Column(db.Numeric(12, 2), nullable=True)
    reservation_expires_at_ms = db.Column(db.BigInteger, nullable=True)
    failure_reason = db.Column(db.String(80), nullable=True)
    pix_copy_paste = db.Column(db.Text, nullable=True)
    pix_qr_code = db.Column(db.Text, nullable=True)  # base64 PNG
    pix_key_masked = db.Column(db.String(40), nullable=True)
    client_reference_id = db.Column(db.String(200), nullable=True)
    attempt = db.Column(db.Integer, nullable=True)

    webhook_payload = db.Column(db.JSON, nullable=True)
    webhook_payload_hash = db.Column(db.String(32), nullable=True)
    latest_webhook_event_id = db.Column(db.String(32), nullable=True)
    webhook_received_at_ms = db.Column(db.BigInteger, nullable=True)

    # marcadores de idempotência dos efeitos do pagamento confirmado
    paid_business_processing_by = db.Column(db.String(32), nullable=True)
    paid_business_processing_at_ms = db.Column(db.BigInteger, nullable=True)
    paid_business_processing_error = db.Column(db.String(800), nullable=True)
    paid_business_applied_at_ms = db.Column(db.BigInteger, nullable=True)

    created_at_ms = db.Column(db.BigInteger, nullable=True)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)

    events = db.relationship('WebhookEvent', back_populates='order', lazy=True)

    def __repr__(self):
        return f'<Order {self.external_id} {self.status}>'


class WebhookEvent(db.Model):
    """Registro append-only de cada payload distinto recebido no webhook."""
    __tablename__ = 'order_events'

    order_id = db.Column(db.String(128), db.ForeignKey('orders.external_id'), primary_key=True)
    event_id = db.Column(db.String(32), primary_key=True)
    order_type = db.Column(db.String(20), nullable=True)
    status = db.Column(db.String(20), nullable=True)
    source = db.Column(db.String(40), nullable=False, default='horsepay_webhook')
    has_infraction_status = db.Column(db.Boolean, nullable=False, default=False)
    payload = db.Column(db.JSON, nullable=True)
    created_at_ms = db.Column(db.BigInteger, nullable=True)

    order = db.relationship('Order', back_populates='events')


class Payment(db.Model):
    __tablename__ = 'payments'

    external_id = db.Column(db.String(128), primary_key=True)
    user_id = db.Column(db.String(128), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    status = db.Column(db.String(20), nullable=False)
    source = db.Column(db.String(40), nullable=True)
    released_at_ms = db.Column(db.BigInteger, nullable=True)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)


class SalesLedgerEntry(db.Model):
    __tablename__ = 'sales_ledger'

    external_id = db.Column(db.String(128), primary_key=True)
    user_id = db.Column(db.String(128), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    sold_numbers = db.Column(db.Integer, nullable=False, default=0)
    date_key = db.Column(db.String(10), nullable=False)
    source = db.Column(db.String(40), nullable=True)
    created_at_ms = db.Column(db.BigInteger, nullable=True)


class SalesMetrics(db.Model):
    """Agregado global (id='sales_summary')."""
    __tablename__ = 'metrics'

    id = db.Column(db.String(40), primary_key=True)
    total_revenue = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    paid_orders = db.Column(db.Integer, nullable=False, default=0)
    sold_numbers = db.Column(db.Integer, nullable=False, default=0)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)


class DailySalesMetrics(db.Model):
    __tablename__ = 'sales_metrics_daily'

    date = db.Column(db.String(10), primary_key=True)  # YYYY-MM-DD (America/Sao_Paulo)
    revenue = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    paid_orders = db.Column(db.Integer, nullable=False, default=0)
    sold_numbers = db.Column(db.Integer, nullable=False, default=0)
    updated_at_ms = db.Column(db.BigInteger, nullable=True)


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.String(200), primary_key=True)
    type = db.Column(db.String(40), nullable=False)
    external_id = db.Column(db.String(128), nullable=True)
    user_id = db.Column(db.String(128), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    sold_numbers = db.Column(db.Integer, nullable=True)
    source = db.Column(db.String(40), nullable=True)
    created_at_ms = db.Column(db.BigInteger, nullable=True)


class Infraction(db.Model):
    __tablename__ = 'infractions'

    id = db.Column(db.Integer, primary_key=True)
    infraction_status = db.Column(db.JSON, nullable=True)
    external_id = db.Column(db.String(128), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    created_at_ms = db.Column(db.BigInteger, nullable=True)


class TopBuyersDraw(db.Model):
    __tablename__ = 'top_buyers_draws'

    id = db.Column(db.String(36), primary_key=True)
    campaign_id = db.Column(db.String(120), nullable=False, index=True)
    week_id = db.Column(db.String(10), nullable=False)
    week_start_at_ms = db.Column(db.BigInteger, nullable=False)
    week_end_at_ms = db.Column(db.BigInteger, nullable=False)
    lottery_number = db.Column(db.BigInteger, nullable=False)
    requested_ranking_limit = db.Column(db.Integer, nullable=False)
    participant_count = db.Column(db.Integer, nullable=False)
    winning_position = db.Column(db.Integer, nullable=False)
    winner = db.Column(db.JSON, nullable=False)
    ranking_snapshot = db.Column(db.JSON, nullable=False)
    published_by_uid = db.Column(db.String(128), nullable=True)
    published_at_ms = db.Column(db.BigInteger, nullable=False)
