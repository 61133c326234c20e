"""
Conciliação dos webhooks PIX.

Cada entrega é registrada uma única vez como evento (id derivado do conteúdo),
o status do pedido só avança (pago é terminal) e os efeitos do pagamento
confirmado (números pagos, razão de vendas, métricas) rodam uma única vez,
protegidos por uma reivindicação de processamento gravada no pedido.
"""
import logging
from collections import namedtuple
from decimal import Decimal

from database import (
    AuditLog, DailySalesMetrics, Infraction, NumberReservation, Order, Payment, SalesLedgerEntry, SalesMetrics,
    WebhookEvent, db, lock_rows, run_transaction,
)
from number_state import PAGO, derive_state, is_held_by_other, load_states, paid_fields, write_state
from pagamentos_gateway import (
    ensure_qr_code_base64, extract_external_id, extract_pix_payload, infer_order_status, infer_order_type,
)
from reservations import read_stored_numbers
from shared import (
    as_record, brazil_date_key, build_webhook_event_id, has_valid_webhook_token, mask_ip, mask_uid, now_ms,
    read_string, same_number_set, sanitize_for_log, sanitize_optional_amount, sanitize_string, top_level_keys,
)

logger = logging.getLogger(__name__)

ORDER_STATUSES = ('pending', 'paid', 'failed')
WEBHOOK_SOURCE = 'horsepay_webhook'
SUMMARY_ID = 'sales_summary'
MAX_ERROR_LENGTH = 800

WebhookOrderResult = namedtuple(
    'WebhookOrderResult',
    'external_id campaign_id event_id order_type status user_id amount reserved_numbers should_apply_paid_deposit',
)


def resolve_transition(current, incoming):
    """pago é terminal; um 'pending' atrasado não ressuscita um pedido falho."""
    if not current:
        return incoming
    if current == 'paid':
        return 'paid'
    if current == 'failed' and incoming == 'pending':
        return 'failed'
    return incoming


def _current_status(order):
    raw = sanitize_string(getattr(order, 'status', None)).lower()
    return raw if raw in ORDER_STATUSES else None


def _has_live_claim(order, current_ms, claim_ttl_ms):
    if not sanitize_string(order.paid_business_processing_by):
        return False
    claimed_at = order.paid_business_processing_at_ms
    if claimed_at is None:
        return True
    return claimed_at + claim_ttl_ms > current_ms


def process_webhook_order(external_id, payload, copy_paste, qr_code, default_campaign_id, claim_ttl_seconds=300):
    event_id = build_webhook_event_id(external_id, payload)
    incoming_status = infer_order_status(payload)
    payload_amount = sanitize_optional_amount(payload.get('amount'))
    claim_ttl_ms = claim_ttl_seconds * 1000

    logger.info(
        f"processWebhookOrder iniciado externalId={external_id} copiaECola={bool(copy_paste)} "
        f"qr={bool(qr_code)} keys={top_level_keys(payload)}"
    )

    def work(session):
        current_ms = now_ms()
        order = lock_rows(session.query(Order).filter_by(external_id=external_id)).first()
        event = session.get(WebhookEvent, (external_id, event_id))

        if order is None:
            order = Order(external_id=external_id, type='deposit', created_at_ms=current_ms)
            session.add(order)

        campaign_id = read_string(order.campaign_id) or default_campaign_id
        order_type = infer_order_type(payload, order.type or 'deposit')
        status = resolve_transition(_current_status(order), incoming_status)
        user_id = read_string(order.user_id)
        reserved_numbers = read_stored_numbers(order.reserved_numbers)
        amount = sanitize_optional_amount(order.amount)
        if amount is None:
            amount = payload_amount

        should_apply = (
            status == 'paid'
            and order_type == 'deposit'
            and order.paid_business_applied_at_ms is None
            and not _has_live_claim(order, current_ms, claim_ttl_ms)
        )

        if event is None:
            session.add(WebhookEvent(
                order_id=external_id,
                event_id=event_id,
                order_type=order_type,
                status=status,
                source=WEBHOOK_SOURCE,
                has_infraction_status='infraction_status' in payload,
                payload=payload,
                created_at_ms=current_ms,
            ))

        order.campaign_id = campaign_id
        order.type = order_type
        order.status = status
        order.webhook_payload = payload
        order.webhook_payload_hash = event_id
        order.latest_webhook_event_id = event_id
        order.webhook_received_at_ms = current_ms
        order.updated_at_ms = current_ms
        if amount is not None:
            order.amount = amount
        if copy_paste:
            order.pix_copy_paste = copy_paste
        if qr_code:
            order.pix_qr_code = qr_code
        if should_apply:
            order.paid_business_processing_by = event_id
            order.paid_business_processing_at_ms = current_ms
            order.paid_business_processing_error = None

        return WebhookOrderResult(
            external_id, campaign_id, event_id, order_type, status, user_id, amount, reserved_numbers, should_apply,
        )

    result = run_transaction(work)
    logger.info(
        f"processWebhookOrder concluído externalId={external_id} evento={event_id} status={result.status} "
        f"tipo={result.order_type} aplicarPago={result.should_apply_paid_deposit} "
        f"numeros={len(result.reserved_numbers)}"
    )
    return result


def _increment_metrics(session, model, key_column, key, revenue_column, amount, sold_numbers, current_ms):
    # soma feita no UPDATE, nunca sobre um valor lido antes
    if session.get(model, key) is None:
        session.add(model(**{
            key_column.key: key,
            revenue_column.key: Decimal('0'),
            'paid_orders': 0,
            'sold_numbers': 0,
        }))
        session.flush()

    session.query(model).filter(key_column == key).update({
        revenue_column: revenue_column + amount,
        model.paid_orders: model.paid_orders + 1,
        model.sold_numbers: model.sold_numbers + sold_numbers,
        model.updated_at_ms: current_ms,
    }, synchronize_session=False)


def apply_paid_deposit(order: WebhookOrderResult):
    """Efeitos únicos do pagamento confirmado, numa só transação."""
    amount = sanitize_optional_amount(order.amount)
    sold_numbers = len(order.reserved_numbers)
    date_key = brazil_date_key()

    logger.info(
        f"applyPaidDeposit iniciado externalId={order.external_id} campaign={order.campaign_id} "
        f"uid={mask_uid(order.user_id) if order.user_id else None} numeros={sold_numbers} valor={amount}"
    )

    def work(session):
        current_ms = now_ms()

        payment = session.get(Payment, order.external_id)
        if payment is None:
            payment = Payment(external_id=order.external_id)
            session.add(payment)
        payment.user_id = order.user_id
        payment.amount = amount
        payment.status = 'paid'
        payment.source = WEBHOOK_SOURCE
        payment.released_at_ms = current_ms
        payment.updated_at_ms = current_ms

        # a criação da linha do razão é o portão de idempotência das métricas
        if session.get(SalesLedgerEntry, order.external_id) is None:
            session.add(SalesLedgerEntry(
                external_id=order.external_id,
                user_id=order.user_id,
                amount=amount,
                sold_numbers=sold_numbers,
                date_key=date_key,
                source=WEBHOOK_SOURCE,
                created_at_ms=current_ms,
            ))

            if amount is not None:
                _increment_metrics(
                    session, SalesMetrics, SalesMetrics.id, SUMMARY_ID, SalesMetrics.total_revenue,
                    amount, sold_numbers, current_ms,
                )
                _increment_metrics(
                    session, DailySalesMetrics, DailySalesMetrics.date, date_key, DailySalesMetrics.revenue,
                    amount, sold_numbers, current_ms,
                )

            audit_id = f'payment_paid_{order.external_id}'
            if session.get(AuditLog, audit_id) is None:
                session.add(AuditLog(
                    id=audit_id,
                    type='payment_paid',
                    external_id=order.external_id,
                    user_id=order.user_id,
                    amount=amount,
                    sold_numbers=sold_numbers,
                    source=WEBHOOK_SOURCE,
                    created_at_ms=current_ms,
                ))

        if not order.user_id or not order.reserved_numbers:
            return 0

        marked = 0
        rows = load_states(session, order.campaign_id, order.reserved_numbers, lock=True)
        fields = paid_fields(order.user_id, order.external_id, current_ms)
        for number in order.reserved_numbers:
            record = rows.get(number)
            view = derive_state(number, record, current_ms)
            if view.status == PAGO:
                continue
            if is_held_by_other(view, order.user_id):
                continue
            write_state(session, order.campaign_id, number, record, fields)
            marked += 1

        reservation = lock_rows(session.query(NumberReservation).filter_by(user_id=order.user_id)).first()
        if reservation is not None and same_number_set(
            read_stored_numbers(reservation.numbers), order.reserved_numbers,
        ):
            session.delete(reservation)

        return marked

    marked = run_transaction(work)
    logger.info(f"applyPaidDeposit concluído externalId={order.external_id} pagos={marked} valor={amount}")
    return marked


def _finish_claim(external_id, event_id, error=None):
    """
    Encerra a reivindicação de event_id. Se outra entrega já assumiu o pedido
    (reivindicação vencida), a reivindicação dela fica intacta.
    """
    def work(session):
        order = lock_rows(session.query(Order).filter_by(external_id=external_id)).first()
        if order is None:
            return False
        current_ms = now_ms()
        owns_claim = sanitize_string(order.paid_business_processing_by) == event_id
        if error is None:
            order.paid_business_applied_at_ms = current_ms
        if not owns_claim:
            return False

        order.paid_business_processing_by = None
        order.paid_business_processing_at_ms = None
        order.updated_at_ms = current_ms
        if error is None:
            order.paid_business_processing_error = None
        else:
            order.paid_business_processing_error = str(error)[:MAX_ERROR_LENGTH]
        return True

    released = run_transaction(work)
    if not released:
        logger.warning(f"pixWebhook reivindicação de {event_id} já assumida por outra entrega externalId={external_id}")
    return released


def record_infraction(payload, external_id):
    def work(session):
        infraction = Infraction(
            infraction_status=payload.get('infraction_status'),
            external_id=external_id,
            payload=payload,
            created_at_ms=now_ms(),
        )
        session.add(infraction)
        session.flush()
        return infraction.id

    infraction_id = run_transaction(work)
    logger.info(f"pixWebhook infração registrada id={infraction_id} externalId={external_id}")
    return infraction_id


def handle_pix_webhook(method, body, query, headers, config, remote_addr=None):
    """Sempre responde {ok: True}: o gateway reenvia qualquer coisa diferente de 200."""
    ok = {'ok': True}

    if method != 'POST':
        logger.info(f"pixWebhook ignorado método={method}")
        return ok

    external_id = None
    try:
        expected_token = sanitize_string(config.get('HORSEPAY_WEBHOOK_TOKEN'))
        if not has_valid_webhook_token(query, headers, expected_token):
            # (A09) tentativa com token inválido
            logger.warning(f"pixWebhook rejeitado: token inválido ip={mask_ip(remote_addr or '')}")
            return ok

        payload = as_record(body)
        external_id = extract_external_id(payload)
        logger.info(
            f"pixWebhook recebido externalId={external_id} infracao={'infraction_status' in payload} "
            f"keys={top_level_keys(payload)}"
        )

        if 'infraction_status' in payload:
            record_infraction(payload, external_id)

        if external_id:
            pix = extract_pix_payload(payload)
            qr_code = ensure_qr_code_base64(pix.qr_code, pix.copy_paste)
            result = process_webhook_order(
                external_id,
                payload,
                pix.copy_paste,
                qr_code,
                config.get('DEFAULT_CAMPAIGN_ID'),
                config.get('PAID_PROCESSING_CLAIM_TTL_SECONDS', 300),
            )

            if result.should_apply_paid_deposit:
                try:
                    apply_paid_deposit(result)
                except Exception as e:
                    db.session.rollback()
                    _finish_claim(external_id, result.event_id, error=f'{e.__class__.__name__}: {e}')
                    raise
                _finish_claim(external_id, result.event_id)
                logger.info(f"pixWebhook efeitos do pagamento aplicados externalId={external_id} evento={result.event_id}")
    except Exception as e:
        db.session.rollback()
        logger.exception(
            f"pixWebhook erro de processamento externalId={external_id} erro={sanitize_for_log(e, 300)}"
        )

    logger.info(f"pixWebhook respondido ok externalId={external_id}")
    return ok
