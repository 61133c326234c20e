import threading
from decimal import Decimal

from flask import current_app

import webhook
from database import (
    AuditLog, DailySalesMetrics, Infraction, NumberReservation, NumberState, Order, Payment, SalesLedgerEntry,
    SalesMetrics, WebhookEvent, db,
)
from reservations import reserve_numbers
from shared import CallRequest, now_ms
from webhook import handle_pix_webhook, resolve_transition

TOKEN = {'token': 'webhook-test-token'}


def send(payload, query=TOKEN, method='POST', headers=None):
    return handle_pix_webhook(method, payload, query, headers or {}, current_app.config, remote_addr='10.0.0.1')


def pending_order(external_id='ext-1', uid='buyer-1', numbers=(1, 2, 3), amount='2.97', reserve=True):
    if reserve:
        reserve_numbers(CallRequest(uid, None, {'numbers': list(numbers)}))
    db.session.add(Order(
        external_id=external_id,
        user_id=uid,
        campaign_id='campanha-teste',
        type='deposit',
        status='pending',
        amount=Decimal(amount),
        quantity=len(numbers),
        reserved_numbers=list(numbers),
        created_at_ms=now_ms(),
    ))
    db.session.commit()


def summary():
    return db.session.get(SalesMetrics, 'sales_summary')


def state_of(number):
    return db.session.get(NumberState, ('campanha-teste', number))


def test_resolve_transition():
    assert resolve_transition(None, 'pending') == 'pending'
    assert resolve_transition('pending', 'paid') == 'paid'
    assert resolve_transition('paid', 'failed') == 'paid'
    assert resolve_transition('paid', 'pending') == 'paid'
    assert resolve_transition('failed', 'pending') == 'failed'
    assert resolve_transition('failed', 'paid') == 'paid'


def test_paid_webhook_applies_side_effects(campaign):
    pending_order()

    assert send({'external_id': 'ext-1', 'status': 'paid'}) == {'ok': True}

    order = db.session.get(Order, 'ext-1')
    assert order.status == 'paid'
    assert order.paid_business_applied_at_ms is not None
    assert order.paid_business_processing_by is None

    for number in (1, 2, 3):
        row = state_of(number)
        assert row.status == 'pago'
        assert row.owner_uid == 'buyer-1'
        assert row.order_id == 'ext-1'
        assert row.reserved_by is None

    assert db.session.get(NumberReservation, 'buyer-1') is None
    assert db.session.get(Payment, 'ext-1').status == 'paid'
    assert db.session.get(SalesLedgerEntry, 'ext-1').sold_numbers == 3
    assert db.session.get(AuditLog, 'payment_paid_ext-1') is not None

    metrics = summary()
    assert metrics.total_revenue == Decimal('2.97')
    assert metrics.paid_orders == 1
    assert metrics.sold_numbers == 3

    daily = DailySalesMetrics.query.all()
    assert len(daily) == 1
    assert daily[0].revenue == Decimal('2.97')


def test_duplicate_delivery_is_idempotent(campaign):
    pending_order()
    payload = {'external_id': 'ext-1', 'status': 'paid'}

    send(payload)
    send(payload)
    # payload diferente para o mesmo pedido vira outro evento, sem efeito novo
    send({'external_id': 'ext-1', 'status': 'PAID', 'amount': 2.97})

    assert WebhookEvent.query.filter_by(order_id='ext-1').count() == 2
    metrics = summary()
    assert metrics.paid_orders == 1
    assert metrics.sold_numbers == 3
    assert metrics.total_revenue == Decimal('2.97')
    assert SalesLedgerEntry.query.count() == 1


def test_paid_is_terminal(campaign):
    pending_order()
    send({'external_id': 'ext-1', 'status': 'paid'})
    send({'external_id': 'ext-1', 'status': 'failed'})
    send({'external_id': 'ext-1', 'status': 'pending'})

    assert db.session.get(Order, 'ext-1').status == 'paid'
    assert state_of(1).status == 'pago'


def test_late_pending_does_not_revive_failed(campaign):
    pending_order()
    send({'external_id': 'ext-1', 'status': 'canceled'})
    send({'external_id': 'ext-1', 'status': 'waiting'})

    assert db.session.get(Order, 'ext-1').status == 'failed'
    assert summary() is None


def test_invalid_token_is_ignored(campaign):
    pending_order()

    assert send({'external_id': 'ext-1', 'status': 'paid'}, query={'token': 'wrong'}) == {'ok': True}

    assert db.session.get(Order, 'ext-1').status == 'pending'
    assert WebhookEvent.query.count() == 0


def test_header_token_is_accepted(campaign):
    pending_order()
    send({'external_id': 'ext-1', 'status': 'paid'}, query={}, headers={'X-Webhook-Token': 'webhook-test-token'})
    assert db.session.get(Order, 'ext-1').status == 'paid'


def test_non_post_is_acknowledged_without_effects(campaign):
    assert send({'external_id': 'ext-9', 'status': 'paid'}, method='GET') == {'ok': True}
    assert db.session.get(Order, 'ext-9') is None


def test_payload_without_external_id(campaign):
    assert send({'status': 'paid'}) == {'ok': True}
    assert Order.query.count() == 0


def test_infraction_is_recorded(campaign):
    send({'external_id': 'ext-5', 'status': 'pending', 'infraction_status': 'open'})

    infraction = Infraction.query.one()
    assert infraction.external_id == 'ext-5'
    assert infraction.infraction_status == 'open'
    assert WebhookEvent.query.one().has_infraction_status is True


def test_unknown_order_is_created_from_webhook(campaign):
    send({'external_id': 'ext-x', 'status': 'paid', 'amount': 10, 'copy_past': 'PIXCODE'})

    order = db.session.get(Order, 'ext-x')
    assert order.status == 'paid'
    assert order.campaign_id == 'campanha-teste'
    assert order.pix_copy_paste == 'PIXCODE'
    assert order.pix_qr_code
    metrics = summary()
    assert metrics.total_revenue == Decimal('10.00')
    assert metrics.sold_numbers == 0


def test_live_foreign_reservation_is_not_overwritten(campaign, number_state):
    pending_order(reserve=False)
    number_state(2, 'reservado', reserved_by='buyer-2', expires_at_ms=now_ms() + 60000)

    send({'external_id': 'ext-1', 'status': 'paid'})

    assert state_of(1).status == 'pago'
    assert state_of(3).status == 'pago'
    assert state_of(2).status == 'reservado'
    assert state_of(2).reserved_by == 'buyer-2'


def test_live_claim_blocks_second_processor(campaign):
    pending_order()
    order = db.session.get(Order, 'ext-1')
    order.paid_business_processing_by = 'outro-evento'
    order.paid_business_processing_at_ms = now_ms()
    db.session.commit()

    send({'external_id': 'ext-1', 'status': 'paid'})

    assert summary() is None
    assert db.session.get(Order, 'ext-1').paid_business_applied_at_ms is None


def test_abandoned_claim_is_taken_over(campaign):
    pending_order()
    order = db.session.get(Order, 'ext-1')
    order.paid_business_processing_by = 'outro-evento'
    order.paid_business_processing_at_ms = now_ms() - 10 * 60 * 1000
    db.session.commit()

    send({'external_id': 'ext-1', 'status': 'paid'})

    assert summary().paid_orders == 1
    assert db.session.get(Order, 'ext-1').paid_business_applied_at_ms is not None


def test_failed_side_effects_release_claim_and_retry(campaign, monkeypatch):
    pending_order()

    def boom(order):
        raise RuntimeError('disco cheio')

    monkeypatch.setattr(webhook, 'apply_paid_deposit', boom)
    assert send({'external_id': 'ext-1', 'status': 'paid'}) == {'ok': True}

    order = db.session.get(Order, 'ext-1')
    assert order.status == 'paid'
    assert order.paid_business_processing_by is None
    assert order.paid_business_applied_at_ms is None
    assert 'RuntimeError' in order.paid_business_processing_error

    monkeypatch.undo()
    send({'external_id': 'ext-1', 'status': 'paid'})

    order = db.session.get(Order, 'ext-1')
    assert order.paid_business_applied_at_ms is not None
    assert order.paid_business_processing_error is None
    assert summary().paid_orders == 1


def test_webhook_route_always_returns_200(client, test_app):
    response = client.post('/webhook/pix?token=wrong', json={'external_id': 'ext-1', 'status': 'paid'})
    assert response.status_code == 200
    assert response.get_json() == {'ok': True}

    response = client.get('/webhook/pix')
    assert response.status_code == 200

    response = client.post('/webhook/pix?token=webhook-test-token', data='not json', content_type='text/plain')
    assert response.status_code == 200

    response = client.post('/webhook/pix?token=webhook-test-token', json={'external_id': 'ext-7', 'status': 'paid'})
    assert response.status_code == 200
    with test_app.app_context():
        assert db.session.get(Order, 'ext-7').status == 'paid'


def test_non_ascii_token_gets_200_without_effects(client, test_app):
    payload = {'external_id': 'ext-8', 'status': 'paid'}

    response = client.post('/webhook/pix?token=%C3%A9', json=payload)
    assert response.status_code == 200
    assert response.get_json() == {'ok': True}

    response = client.post('/webhook/pix', json=payload, headers={'X-Webhook-Token': 'tökén'})
    assert response.status_code == 200
    assert response.get_json() == {'ok': True}

    with test_app.app_context():
        assert db.session.get(Order, 'ext-8') is None


def test_finishing_does_not_clear_a_claim_taken_over_meanwhile(campaign, monkeypatch):
    pending_order()
    real_apply = webhook.apply_paid_deposit

    def apply_then_lose_claim(result):
        marked = real_apply(result)
        # outra entrega assumiu o pedido enquanto esta terminava
        order = db.session.get(Order, 'ext-1')
        order.paid_business_processing_by = 'outra-entrega'
        order.paid_business_processing_at_ms = now_ms()
        db.session.commit()
        return marked

    monkeypatch.setattr(webhook, 'apply_paid_deposit', apply_then_lose_claim)
    send({'external_id': 'ext-1', 'status': 'paid'})

    order = db.session.get(Order, 'ext-1')
    assert order.paid_business_processing_by == 'outra-entrega'
    assert order.paid_business_processing_at_ms is not None
    assert order.paid_business_applied_at_ms is not None
    assert summary().paid_orders == 1


def test_concurrent_payments_keep_every_increment(test_app, campaign):
    pending_order('ext-1', 'buyer-1', (1, 2, 3), '2.97')
    pending_order('ext-2', 'buyer-2', (4, 5), '1.98')
    db.session.close()
    barrier = threading.Barrier(2)

    def deliver(external_id):
        with test_app.app_context():
            barrier.wait(timeout=5)
            send({'external_id': external_id, 'status': 'paid'})

    threads = [threading.Thread(target=deliver, args=(external_id,)) for external_id in ('ext-1', 'ext-2')]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    metrics = summary()
    assert metrics.paid_orders == 2
    assert metrics.sold_numbers == 5
    assert metrics.total_revenue == Decimal('4.95')

    daily = DailySalesMetrics.query.one()
    assert daily.paid_orders == 2
    assert daily.revenue == Decimal('4.95')
