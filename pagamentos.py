"""
Depósito PIX (checkout da reserva), saque e saldo.

O preço é sempre calculado no servidor a partir da reserva e da campanha; o
valor enviado pelo cliente serve apenas para registrar divergências no log.
"""
import logging
import re
import time
from collections import namedtuple
from decimal import Decimal
from urllib.parse import quote

from flask import current_app, has_request_context, request

from campaigns import default_campaign_id, get_campaign, read_coupons, read_min_purchase_quantity, read_price_per_cota
from database import NumberReservation, Order, db, run_transaction
from number_state import resolve_range
from pagamentos_gateway import (
    ensure_qr_code_base64, extract_external_id, extract_pix_payload, infer_order_status, to_callable_error,
)
from reservations import read_stored_numbers
from shared import (
    CallableError, as_record, mask_name, mask_phone_number, mask_pix_key, mask_uid, money, now_ms,
    require_caller, sanitize_amount, sanitize_optional_amount, sanitize_phone, sanitize_string, top_level_keys,
    value_shape,
)

logger = logging.getLogger(__name__)

PIX_TYPES = ('CPF', 'CNPJ', 'EMAIL', 'PHONE', 'RANDOM')
AMOUNT_MISMATCH_TOLERANCE = Decimal('0.009')

CouponResolution = namedtuple('CouponResolution', 'code discount_type discount_value discount_amount')


def normalize_coupon_code(raw) -> str:
    return re.sub(r'[^A-Z0-9_-]', '', sanitize_string(raw).upper())[:24]


def compute_discount_amount(subtotal, discount_type, discount_value) -> Decimal:
    subtotal = Decimal(subtotal)
    discount_value = Decimal(discount_value)
    if discount_type == 'percent':
        return money(min(subtotal, subtotal * discount_value / 100))
    return money(min(subtotal, discount_value))


def resolve_coupon(raw_code, coupons, subtotal):
    code = normalize_coupon_code(raw_code)
    if not code:
        return None

    matched = next((coupon for coupon in coupons if coupon.code == code and coupon.active), None)
    if matched is None:
        raise CallableError('invalid-argument', 'Cupom inválido ou inativo para esta campanha.')

    discount_amount = compute_discount_amount(subtotal, matched.discount_type, matched.discount_value)
    if discount_amount <= 0:
        raise CallableError('invalid-argument', 'Cupom sem efeito para o valor atual da compra.')

    return CouponResolution(matched.code, matched.discount_type, matched.discount_value, discount_amount)


def build_callback_url(webhook_token):
    base_url = current_app.config.get('WEBHOOK_PUBLIC_URL')
    if not base_url and has_request_context():
        base_url = request.url_root.rstrip('/') + '/webhook/pix'
    if not base_url:
        return None
    separator = '&' if '?' in base_url else '?'
    return f'{base_url}{separator}token={quote(webhook_token, safe="")}'


def save_order(external_id, fields, replace=False):
    """Grava o pedido. replace=True sobrescreve o snapshot do checkout; senão faz merge."""
    def work(session):
        order = session.get(Order, external_id)
        current_ms = now_ms()
        if order is None:
            order = Order(external_id=external_id, created_at_ms=current_ms)
            session.add(order)
        elif replace:
            order.failure_reason = None
        for key, value in fields.items():
            setattr(order, key, value)
        order.updated_at_ms = current_ms
        return order.status

    return run_transaction(work)


def _log_gateway_shape(message, response, **extra):
    response = as_record(response)
    details = ' '.join(f'{key}={value}' for key, value in extra.items())
    logger.info(
        f"{message} {details} keys={top_level_keys(response)} shape={value_shape(response)} "
        f"dataKeys={top_level_keys(response.get('data'))} resultKeys={top_level_keys(response.get('result'))} "
        f"transactionKeys={top_level_keys(response.get('transaction'))}"
    )


def create_pix_deposit(call, gateway, sleep=time.sleep):
    uid = require_caller(call)
    payload = as_record(call.payload)
    config = current_app.config

    try:
        requested_amount = sanitize_optional_amount(payload.get('amount'))
        payer_name = sanitize_string(payload.get('payerName'))
        phone = sanitize_phone(payload.get('phone'))
        if not payer_name:
            raise CallableError('invalid-argument', 'payerName é obrigatório.')

        reservation = db.session.get(NumberReservation, uid)
        if reservation is None:
            raise CallableError('failed-precondition', 'Sua reserva não foi encontrada. Reserve seus números novamente.')

        campaign_id = default_campaign_id()
        campaign = get_campaign(campaign_id)
        number_range = resolve_range(campaign, campaign_id)
        min_quantity = read_min_purchase_quantity(campaign)
        numbers = read_stored_numbers(reservation.numbers, number_range.start, number_range.end)
        expires_at_ms = reservation.expires_at_ms
        unit_price = read_price_per_cota(campaign)
        subtotal = money(len(numbers) * unit_price)

        coupon = resolve_coupon(payload.get('couponCode'), read_coupons(campaign), subtotal)
        discount = coupon.discount_amount if coupon else Decimal('0.00')
        expected_amount = money(max(subtotal - discount, Decimal('0')))

        if expected_amount <= 0:
            raise CallableError(
                'invalid-argument',
                'Valor final do pedido inválido. Ajuste o cupom ou a quantidade para gerar o PIX.',
            )
        if len(numbers) < min_quantity:
            raise CallableError(
                'failed-precondition',
                f'Sua reserva não possui números suficientes. Mínimo da campanha: {min_quantity}.',
            )
        if not expires_at_ms or expires_at_ms <= now_ms():
            raise CallableError('failed-precondition', 'Sua reserva expirou. Reserve novamente para gerar o PIX.')

        has_mismatch = requested_amount is not None and abs(requested_amount - expected_amount) > AMOUNT_MISMATCH_TOLERANCE
        if has_mismatch:
            logger.warning(
                f"createPixDeposit valor divergente uid={mask_uid(uid)} enviado={requested_amount} "
                f"calculado={expected_amount} quantidade={len(numbers)} unitario={unit_price}"
            )

        webhook_token = sanitize_string(config.get('HORSEPAY_WEBHOOK_TOKEN'))
        if not webhook_token:
            raise CallableError('internal', 'HORSEPAY_WEBHOOK_TOKEN não configurado.')
        callback_url = build_callback_url(webhook_token)
        if not callback_url:
            raise CallableError('internal', 'Não foi possível montar a callback_url do webhook.')

        max_attempts = config['MAX_DEPOSIT_ORDER_ATTEMPTS']
        retry_delay = config['DEPOSIT_RETRY_DELAY_SECONDS']
        client_reference_base = f'{uid}_{now_ms()}'

        logger.info(
            f"createPixDeposit iniciado uid={mask_uid(uid)} esperado={expected_amount} subtotal={subtotal} "
            f"desconto={discount} cupom={coupon.code if coupon else None} pagador={mask_name(payer_name)} "
            f"telefone={mask_phone_number(phone)} quantidade={len(numbers)} minimo={min_quantity} "
            f"tentativas={max_attempts}"
        )

        snapshot = {
            'user_id': uid,
            'campaign_id': campaign_id,
            'type': 'deposit',
            'amount': expected_amount,
            'subtotal_amount': subtotal,
            'discount_amount': discount,
            'expected_amount': expected_amount,
            'requested_amount': requested_amount,
            'unit_price_at_checkout': unit_price,
            'min_purchase_quantity': min_quantity,
            'quantity': len(numbers),
            'reserved_numbers': list(numbers),
            'applied_coupon_code': coupon.code if coupon else None,
            'applied_coupon_discount_type': coupon.discount_type if coupon else None,
            'applied_coupon_discount_value': coupon.discount_value if coupon else None,
            'reservation_expires_at_ms': expires_at_ms,
        }

        # nenhuma transação aberta durante as chamadas ao gateway
        db.session.commit()
        access_token = gateway.authenticate()

        for attempt in range(1, max_attempts + 1):
            client_reference_id = f'{client_reference_base}_a{attempt}'
            order_body = {
                'amount': float(expected_amount),
                'payer_name': payer_name,
                'callback_url': callback_url,
                'client_reference_id': client_reference_id,
                'payment_method': 'PIX',
            }
            if phone:
                order_body['phone'] = phone

            response = gateway.create_order(access_token, order_body)
            external_id = extract_external_id(response)
            pix = extract_pix_payload(response)
            qr_code = ensure_qr_code_base64(pix.qr_code, pix.copy_paste)

            _log_gateway_shape(
                'HorsePay neworder recebido',
                response,
                tentativa=attempt,
                ref=client_reference_id,
                externalId=external_id,
                copiaECola=bool(pix.copy_paste),
                qrGateway=bool(pix.qr_code),
                qr=bool(qr_code),
            )

            if not external_id:
                logger.error(f"HorsePay neworder sem external_id tentativa={attempt} ref={client_reference_id}")
                if attempt < max_attempts:
                    sleep(retry_delay)
                    continue
                raise CallableError('internal', 'HorsePay não retornou external_id.')

            if not pix.copy_paste and not qr_code:
                logger.warning(f"HorsePay neworder sem dados PIX tentativa={attempt} externalId={external_id}")
                save_order(external_id, dict(
                    snapshot,
                    status='failed',
                    failure_reason='missing_pix_payload',
                    pix_copy_paste=None,
                    pix_qr_code=None,
                    client_reference_id=client_reference_id,
                    attempt=attempt,
                ))
                if attempt < max_attempts:
                    sleep(retry_delay)
                    continue
                raise CallableError(
                    'internal',
                    'Gateway não retornou dados PIX para o pedido. Gere um novo PIX e tente novamente.',
                )

            status = 'failed' if infer_order_status(response) == 'failed' else 'pending'
            save_order(external_id, dict(
                snapshot,
                status=status,
                pix_copy_paste=pix.copy_paste,
                pix_qr_code=qr_code,
                client_reference_id=client_reference_id,
                attempt=attempt,
            ), replace=True)

            logger.info(
                f"createPixDeposit pedido gravado uid={mask_uid(uid)} tentativa={attempt} "
                f"externalId={external_id} status={status} esperado={expected_amount}"
            )
            return {
                'externalId': external_id,
                'copyPaste': pix.copy_paste,
                'qrCode': qr_code,
                'status': status,
            }

        raise CallableError('internal', 'Falha ao criar depósito PIX após múltiplas tentativas.')
    except Exception as e:
        logger.error(
            f"createPixDeposit falhou uid={mask_uid(uid)} cupom={normalize_coupon_code(payload.get('couponCode'))} "
            f"erro={e.__class__.__name__}: {e}"
        )
        raise to_callable_error(e, 'Falha ao criar depósito PIX.')


def sanitize_pix_type(value) -> str:
    pix_type = sanitize_string(value).upper()
    if pix_type not in PIX_TYPES:
        raise CallableError('invalid-argument', 'pixType inválido.')
    return pix_type


def request_withdraw(call, gateway):
    uid = require_caller(call)
    payload = as_record(call.payload)

    try:
        amount = sanitize_amount(payload.get('amount'))
        pix_key = sanitize_string(payload.get('pixKey'))
        pix_type = sanitize_pix_type(payload.get('pixType'))
        if not pix_key:
            raise CallableError('invalid-argument', 'pixKey é obrigatório.')

        access_token = gateway.authenticate()
        client_reference_id = f'{uid}_{now_ms()}'
        logger.info(
            f"requestWithdraw iniciado uid={mask_uid(uid)} valor={amount} tipo={pix_type} "
            f"chave={mask_pix_key(pix_key)} ref={client_reference_id}"
        )

        response = gateway.withdraw(access_token, {
            'amount': float(amount),
            'pix_key': pix_key,
            'pix_type': pix_type,
            'client_reference_id': client_reference_id,
        })
        external_id = extract_external_id(response)
        logger.info(
            f"HorsePay withdraw recebido ref={client_reference_id} externalId={external_id} "
            f"keys={top_level_keys(response)}"
        )

        if external_id:
            save_order(external_id, {
                'user_id': uid,
                'type': 'withdraw',
                'amount': amount,
                'status': 'pending',
                'pix_key_masked': mask_pix_key(pix_key),
                'client_reference_id': client_reference_id,
            })
            logger.info(f"requestWithdraw pedido gravado uid={mask_uid(uid)} externalId={external_id}")

        return response
    except Exception as e:
        logger.error(f"requestWithdraw falhou uid={mask_uid(uid)} erro={e.__class__.__name__}: {e}")
        raise to_callable_error(e, 'Falha ao solicitar saque.')


def get_balance(call, gateway):
    uid = require_caller(call)
    try:
        logger.info(f"getBalance iniciado uid={mask_uid(uid)}")
        access_token = gateway.authenticate()
        response = gateway.balance(access_token)
        logger.info(f"getBalance recebido uid={mask_uid(uid)} keys={top_level_keys(response)}")
        return response
    except Exception as e:
        logger.error(f"getBalance falhou uid={mask_uid(uid)} erro={e.__class__.__name__}: {e}")
        raise to_callable_error(e, 'Falha ao consultar saldo.')

