"""
Faixa de números da campanha e estado derivado de cada número.

O status gravado nunca é lido diretamente: derive_state() aplica a expiração
preguiçosa das reservas, então uma reserva vencida aparece como disponível
mesmo sem nenhuma escrita desde então.
"""
from collections import namedtuple

from database import NumberState, lock_rows
from shared import read_int, sanitize_string

RAFFLE_NUMBER_START = 1
RAFFLE_NUMBER_END = 3_450_000

DISPONIVEL = 'disponivel'
RESERVADO = 'reservado'
PAGO = 'pago'

NumberRange = namedtuple('NumberRange', 'campaign_id start end total')
NumberStateView = namedtuple('NumberStateView', 'number status reserved_by reservation_expires_at_ms')


def _positive_int(value):
    number = read_int(value)
    if number is None or number <= 0:
        return None
    return number


def resolve_range(campaign, campaign_id: str) -> NumberRange:
    start = _positive_int(getattr(campaign, 'number_start', None)) or RAFFLE_NUMBER_START
    explicit_end = _positive_int(getattr(campaign, 'number_end', None))
    total_numbers = _positive_int(getattr(campaign, 'total_numbers', None))

    end = RAFFLE_NUMBER_END
    if explicit_end and explicit_end >= start:
        end = explicit_end
    elif total_numbers:
        end = start + total_numbers - 1
    elif RAFFLE_NUMBER_END < start:
        end = start

    return NumberRange(campaign_id, start, end, max(0, end - start + 1))


def normalize_stored_status(raw) -> str:
    value = sanitize_string(raw).lower()
    if value in ('paid', 'pago'):
        return PAGO
    if value in ('reserved', 'reservado'):
        return RESERVADO
    return DISPONIVEL


def derive_state(number: int, record, now_ms: int) -> NumberStateView:
    if record is None:
        return NumberStateView(number, DISPONIVEL, None, None)

    status = normalize_stored_status(record.status)
    expires_at_ms = record.reservation_expires_at_ms
    if status == RESERVADO and expires_at_ms is not None and expires_at_ms <= now_ms:
        status = DISPONIVEL

    return NumberStateView(number, status, record.reserved_by, expires_at_ms)


def is_held_by_other(view: NumberStateView, uid: str) -> bool:
    return view.status == RESERVADO and view.reserved_by != uid


def reserved_fields(uid: str, expires_at_ms: int, now_ms: int) -> dict:
    return {
        'status': RESERVADO,
        'reserved_by': uid,
        'reserved_at_ms': now_ms,
        'reservation_expires_at_ms': expires_at_ms,
        'owner_uid': None,
        'order_id': None,
        'paid_at_ms': None,
        'updated_at_ms': now_ms,
    }


def paid_fields(uid: str, order_id: str, now_ms: int) -> dict:
    return {
        'status': PAGO,
        'reserved_by': None,
        'reserved_at_ms': None,
        'reservation_expires_at_ms': None,
        'owner_uid': uid,
        'order_id': order_id,
        'paid_at_ms': now_ms,
        'updated_at_ms': now_ms,
    }


def write_state(session, campaign_id: str, number: int, record, fields: dict):
    """Sobrescreve (ou cria) a linha do número com todos os campos informados."""
    if record is None:
        record = NumberState(campaign_id=campaign_id, number=number)
        session.add(record)
    for key, value in fields.items():
        setattr(record, key, value)
    return record


def load_states(session, campaign_id: str, numbers, lock=False) -> dict:
    unique_numbers = sorted(set(numbers))
    if not unique_numbers:
        return {}

    rows = {}
    # lotes para não estourar o limite de parâmetros do SQLite
    for index in range(0, len(unique_numbers), 500):
        chunk = unique_numbers[index:index + 500]
        query = session.query(NumberState).filter(
            NumberState.campaign_id == campaign_id,
            NumberState.number.in_(chunk),
        )
        if lock:
            query = lock_rows(query)
        for row in query.all():
            rows[row.number] = row
    return rows


def read_views(session, campaign_id: str, numbers, now_ms: int):
    """Visões derivadas (ordenadas, sem repetição) de uma lista de números."""
    rows = load_states(session, campaign_id, numbers)
    return [derive_state(number, rows.get(number), now_ms) for number in sorted(set(numbers))]


def read_range_views(session, campaign_id: str, start: int, end: int, now_ms: int):
    if end < start:
        return []
    rows = {}
    query = session.query(NumberState).filter(
        NumberState.campaign_id == campaign_id,
        NumberState.number >= start,
        NumberState.number <= end,
    )
    for row in query.all():
        rows[row.number] = row
    return [derive_state(number, rows.get(number), now_ms) for number in range(start, end + 1)]
