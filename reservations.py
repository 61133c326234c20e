"""
Motor de reservas: um comprador segura um conjunto de números por alguns
minutos antes de pagar. Leitura, decisão e escrita acontecem numa única
transação; nenhum número fica com dois donos.
"""
import logging

from flask import current_app

from campaigns import default_campaign_id, get_campaign, max_purchase_quantity, read_min_purchase_quantity
from database import NumberReservation, lock_rows, run_transaction
from number_state import (
    PAGO, RESERVADO, derive_state, is_held_by_other, load_states, reserved_fields, resolve_range, write_state,
)
from shared import CallableError, as_record, mask_uid, now_ms, read_int, require_caller

logger = logging.getLogger(__name__)


def sanitize_reservation_numbers(value, range_start, range_end, min_quantity, max_quantity):
    if not isinstance(value, list):
        raise CallableError('invalid-argument', 'numbers deve ser uma lista.')

    parsed = set()
    for item in value:
        number = read_int(item)
        if number is None:
            raise CallableError('invalid-argument', 'Todos os números devem ser inteiros.')
        if number < range_start or number > range_end:
            raise CallableError('invalid-argument', f'Número fora da faixa permitida: {number}')
        parsed.add(number)

    numbers = sorted(parsed)
    if len(numbers) < min_quantity:
        raise CallableError('invalid-argument', f'Selecione no mínimo {min_quantity} números.')
    if len(numbers) > max_quantity:
        raise CallableError('invalid-argument', f'Selecione no máximo {max_quantity} números.')
    return numbers


def read_stored_numbers(value, range_start=1, range_end=None):
    """Lista gravada -> inteiros únicos, ordenados e dentro da faixa; lixo é ignorado."""
    if not isinstance(value, list):
        return []
    numbers = set()
    for item in value:
        number = read_int(item)
        if number is None or number < range_start:
            continue
        if range_end is not None and number > range_end:
            continue
        numbers.add(number)
    return sorted(numbers)


def get_reservation(session, uid, lock=False):
    query = session.query(NumberReservation).filter_by(user_id=uid)
    if lock:
        query = lock_rows(query)
    return query.first()


def reserve_numbers(call):
    uid = require_caller(call)
    payload = as_record(call.payload)
    campaign_id = default_campaign_id()
    campaign = get_campaign(campaign_id)
    number_range = resolve_range(campaign, campaign_id)
    requested = sanitize_reservation_numbers(
        payload.get('numbers'),
        number_range.start,
        number_range.end,
        read_min_purchase_quantity(campaign),
        max_purchase_quantity(),
    )
    duration_seconds = current_app.config['RESERVATION_DURATION_SECONDS']

    def work(session):
        current_ms = now_ms()
        expires_at_ms = current_ms + duration_seconds * 1000

        reservation = get_reservation(session, uid, lock=True)
        previous = []
        if reservation is not None:
            previous = read_stored_numbers(reservation.numbers, number_range.start, number_range.end)

        requested_set = set(requested)
        to_release = [number for number in previous if number not in requested_set]
        rows = load_states(session, campaign_id, requested + to_release, lock=True)

        for number in requested:
            view = derive_state(number, rows.get(number), current_ms)
            if view.status == PAGO:
                raise CallableError('failed-precondition', f'Número {number} já foi pago.')
            if is_held_by_other(view, uid):
                raise CallableError(
                    'failed-precondition',
                    f'Número {number} não está mais disponível. Atualize a seleção e tente novamente.',
                )

        for number in to_release:
            record = rows.get(number)
            view = derive_state(number, record, current_ms)
            if view.status == RESERVADO and view.reserved_by == uid:
                session.delete(record)

        fields = reserved_fields(uid, expires_at_ms, current_ms)
        for number in requested:
            write_state(session, campaign_id, number, rows.get(number), fields)

        if reservation is None:
            reservation = NumberReservation(user_id=uid, created_at_ms=current_ms)
            session.add(reservation)
        reservation.campaign_id = campaign_id
        reservation.numbers = list(requested)
        reservation.status = 'active'
        reservation.expires_at_ms = expires_at_ms
        reservation.updated_at_ms = current_ms
        if reservation.created_at_ms is None:
            reservation.created_at_ms = current_ms

        return expires_at_ms, len(to_release)

    expires_at_ms, released = run_transaction(work)

    logger.info(
        f"reserveNumbers OK uid={mask_uid(uid)} quantidade={len(requested)} "
        f"primeiro={requested[0]} ultimo={requested[-1]} liberados={released} expiresAtMs={expires_at_ms}"
    )
    return {
        'numbers': requested,
        'expiresAtMs': expires_at_ms,
        'reservationSeconds': duration_seconds,
    }


def release_reservation(call):
    uid = require_caller(call)
    campaign_id = default_campaign_id()
    number_range = resolve_range(get_campaign(campaign_id), campaign_id)

    def work(session):
        current_ms = now_ms()
        reservation = get_reservation(session, uid, lock=True)
        if reservation is None:
            return 0

        numbers = read_stored_numbers(reservation.numbers, number_range.start, number_range.end)
        released = 0
        rows = load_states(session, reservation.campaign_id or campaign_id, numbers, lock=True)
        for number in numbers:
            record = rows.get(number)
            view = derive_state(number, record, current_ms)
            if view.status == RESERVADO and view.reserved_by == uid:
                session.delete(record)
                released += 1

        session.delete(reservation)
        return released

    released = run_transaction(work)
    logger.info(f"releaseReservation OK uid={mask_uid(uid)} liberados={released}")
    return {'releasedNumbers': released}
