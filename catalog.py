"""
Consultas públicas sobre os números: janela paginada e escolha aleatória.
Somente leitura; todo status passa por derive_state().
"""
import logging
import random

from campaigns import default_campaign_id, get_campaign, max_purchase_quantity
from database import db
from number_state import DISPONIVEL, read_range_views, read_views, resolve_range
from shared import CallableError, as_record, now_ms, read_int, sanitize_string

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 240
SEARCH_BLOCK_SIZE = 240
RANDOM_ROUNDS = 20


def _campaign_id(raw):
    return sanitize_string(raw) or default_campaign_id()


def sanitize_page_size(raw) -> int:
    page_size = read_int(raw)
    if page_size is None or page_size <= 0:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


def sanitize_page_start(raw):
    if raw is None or raw == '':
        return None
    page_start = read_int(raw)
    if page_start is None or page_start <= 0:
        raise CallableError('invalid-argument', 'pageStart deve ser um número inteiro positivo.')
    return page_start


def sanitize_quantity(raw) -> int:
    quantity = read_int(raw)
    if quantity is None:
        raise CallableError('invalid-argument', 'quantity deve ser um número inteiro.')
    limit = max_purchase_quantity()
    if quantity <= 0 or quantity > limit:
        raise CallableError('invalid-argument', f'quantity deve estar entre 1 e {limit}.')
    return quantity


def sanitize_exclude_numbers(raw, range_start, range_end):
    if raw is None:
        return set()
    if not isinstance(raw, list):
        raise CallableError('invalid-argument', 'excludeNumbers deve ser uma lista de inteiros.')
    excluded = set()
    for item in raw:
        number = read_int(item)
        if number is None:
            raise CallableError('invalid-argument', 'excludeNumbers deve conter apenas inteiros.')
        if number < range_start or number > range_end:
            raise CallableError('invalid-argument', f'excludeNumbers contém número fora da faixa permitida: {number}')
        excluded.add(number)
    return excluded


def find_smallest_available(session, campaign_id, range_start, range_end, current_ms):
    for block_start in range(range_start, range_end + 1, SEARCH_BLOCK_SIZE):
        block_end = min(block_start + SEARCH_BLOCK_SIZE - 1, range_end)
        for view in read_range_views(session, campaign_id, block_start, block_end, current_ms):
            if view.status == DISPONIVEL:
                return view.number
    return None


def clamp(value, lower, upper):
    return max(lower, min(value, upper))


def get_number_window(call):
    try:
        payload = as_record(call.payload)
        campaign_id = _campaign_id(payload.get('campaignId'))
        page_size = sanitize_page_size(payload.get('pageSize'))
        requested_start = sanitize_page_start(payload.get('pageStart'))
        number_range = resolve_range(get_campaign(campaign_id), campaign_id)

        if number_range.total <= 0:
            raise CallableError('failed-precondition', 'Campanha sem faixa de números configurada.')

        session = db.session
        current_ms = now_ms()
        smallest = find_smallest_available(session, campaign_id, number_range.start, number_range.end, current_ms)

        page_start = requested_start
        if page_start is None:
            page_start = smallest if smallest is not None else number_range.start
        page_start = clamp(page_start, number_range.start, number_range.end)
        page_end = min(page_start + page_size - 1, number_range.end)

        views = read_range_views(session, campaign_id, page_start, page_end, current_ms)
        available_in_page = sum(1 for view in views if view.status == DISPONIVEL)
        previous_start = max(number_range.start, page_start - page_size) if page_start > number_range.start else None
        next_start = page_end + 1 if page_end < number_range.end else None
    except CallableError as e:
        logger.warning(f"getNumberWindow rejeitado: {e.kind} {e.message}")
        raise
    except Exception as e:
        logger.error(f"getNumberWindow falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Falha ao carregar números da página.')

    logger.info(
        f"getNumberWindow campaign={campaign_id} pageSize={page_size} pedido={requested_start} "
        f"inicio={page_start} fim={page_end} disponiveis={available_in_page} menor={smallest}"
    )
    return {
        'campaignId': campaign_id,
        'pageSize': page_size,
        'pageStart': page_start,
        'pageEnd': page_end,
        'rangeStart': number_range.start,
        'rangeEnd': number_range.end,
        'totalNumbers': number_range.total,
        'smallestAvailableNumber': smallest,
        'availableInPage': available_in_page,
        'hasPreviousPage': previous_start is not None,
        'hasNextPage': next_start is not None,
        'previousPageStart': previous_start,
        'nextPageStart': next_start,
        'numbers': [
            {
                'number': view.number,
                'status': view.status,
                'reservationExpiresAtMs': view.reservation_expires_at_ms,
            }
            for view in views
        ],
    }


def build_random_candidates(start, end, size, excluded, rng=random):
    candidates = set()
    total = end - start + 1
    while len(candidates) < size and len(candidates) + len(excluded) < total:
        value = rng.randint(start, end)
        if value in excluded:
            continue
        candidates.add(value)
    return list(candidates)


def pick_random_available_numbers(call, rng=random):
    try:
        payload = as_record(call.payload)
        campaign_id = _campaign_id(payload.get('campaignId'))
        quantity = sanitize_quantity(payload.get('quantity'))
        number_range = resolve_range(get_campaign(campaign_id), campaign_id)
        excluded = sanitize_exclude_numbers(payload.get('excludeNumbers'), number_range.start, number_range.end)

        session = db.session
        current_ms = now_ms()
        selected = set()
        blocked = set()
        batch_size = max(40, min(200, quantity * 4))

        for _ in range(RANDOM_ROUNDS):
            if len(selected) >= quantity:
                break
            candidates = build_random_candidates(
                number_range.start, number_range.end, batch_size, selected | blocked | excluded, rng,
            )
            if not candidates:
                break
            for view in read_views(session, campaign_id, candidates, current_ms):
                if view.status == DISPONIVEL:
                    selected.add(view.number)
                    if len(selected) >= quantity:
                        break
                else:
                    blocked.add(view.number)

        # varredura determinística para completar o que o sorteio não achou
        block_start = number_range.start
        while len(selected) < quantity and block_start <= number_range.end:
            block_end = min(block_start + SEARCH_BLOCK_SIZE - 1, number_range.end)
            for view in read_range_views(session, campaign_id, block_start, block_end, current_ms):
                if view.status != DISPONIVEL or view.number in selected or view.number in excluded:
                    continue
                selected.add(view.number)
                if len(selected) >= quantity:
                    break
            block_start += SEARCH_BLOCK_SIZE
    except CallableError as e:
        logger.warning(f"pickRandomAvailableNumbers rejeitado: {e.kind} {e.message}")
        raise
    except Exception as e:
        logger.error(f"pickRandomAvailableNumbers falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Falha ao selecionar números automaticamente.')

    numbers = sorted(selected)
    logger.info(
        f"pickRandomAvailableNumbers campaign={campaign_id} pedido={quantity} "
        f"selecionados={len(numbers)} excluidos={len(excluded)}"
    )
    return {
        'campaignId': campaign_id,
        'quantityRequested': quantity,
        'numbers': numbers,
        'exhausted': len(numbers) < quantity,
    }
