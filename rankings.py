"""
Rankings públicos de compradores e o sorteio semanal entre os maiores
compradores (posição vencedora derivada do número da Loteria Federal).
"""
import logging
import uuid
from collections import namedtuple
from datetime import timedelta

from campaigns import default_campaign_id, order_quantity
from database import Order, TopBuyersDraw, User, run_transaction
from shared import BRAZIL_TZ, CallableError, as_record, now_ms, read_int, require_admin, sanitize_string, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DRAW_RANKING_LIMIT = 50
MAX_RANKING_LIMIT = 50

RankingWindow = namedtuple('RankingWindow', 'week_id start_ms end_ms')
RankingEntry = namedtuple('RankingEntry', 'pos user_id name cotas first_purchase_at_ms')


def sanitize_limit(value, maximum=10, fallback=5) -> int:
    parsed = read_int(value)
    if parsed is None or parsed <= 0:
        return fallback
    return max(1, min(parsed, maximum))


def format_public_name(name, uid: str) -> str:
    """'maria souza' -> 'maria S.'; sem nome -> 'Participante ABCD'."""
    normalized = sanitize_string(name)
    if not normalized:
        return f'Participante {uid[-4:].upper()}'

    tokens = normalized.split()
    first_name = tokens[0]
    if len(tokens) > 1:
        return f'{first_name} {tokens[1][0].upper()}.'
    if len(first_name) <= 2:
        return f'{first_name[0]}*'
    return first_name[0].upper() + first_name[1:].lower()


def _to_ms(moment) -> int:
    return int(round(moment.timestamp() * 1000))


def weekly_window(moment=None) -> RankingWindow:
    """Domingo 00:00 até sexta 23:59:59.999, horário de Brasília."""
    local = (moment or utcnow()).astimezone(BRAZIL_TZ)
    start_of_day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    days_since_sunday = (local.weekday() + 1) % 7
    week_start = start_of_day - timedelta(days=days_since_sunday)
    week_end = week_start + timedelta(days=6) - timedelta(milliseconds=1)
    return RankingWindow(week_start.strftime('%Y-%m-%d'), _to_ms(week_start), _to_ms(week_end))


def build_ranking(limit, start_ms=None, end_ms=None):
    orders = (
        Order.query
        .filter_by(status='paid', type='deposit', campaign_id=default_campaign_id())
        .all()
    )

    totals = {}
    for order in orders:
        user_id = sanitize_string(order.user_id)
        quantity = order_quantity(order)
        if not user_id or quantity <= 0:
            continue

        purchase_at_ms = order.created_at_ms or order.updated_at_ms
        if not purchase_at_ms:
            continue
        if start_ms is not None and purchase_at_ms < start_ms:
            continue
        if end_ms is not None and purchase_at_ms > end_ms:
            continue

        cotas, first_purchase = totals.get(user_id, (0, purchase_at_ms))
        totals[user_id] = (cotas + quantity, min(first_purchase, purchase_at_ms))

    ranked = sorted(totals.items(), key=lambda item: (-item[1][0], item[1][1], item[0]))[:limit]
    if not ranked:
        return []

    users = {user.id: user for user in User.query.filter(User.id.in_([uid for uid, _ in ranked])).all()}
    return [
        RankingEntry(
            index + 1,
            uid,
            format_public_name(getattr(users.get(uid), 'name', None), uid),
            cotas,
            first_purchase,
        )
        for index, (uid, (cotas, first_purchase)) in enumerate(ranked)
    ]


def _public_items(entries):
    return [
        {'pos': entry.pos, 'name': entry.name, 'cotas': entry.cotas, 'isGold': entry.pos == 1}
        for entry in entries
    ]


def get_champions_ranking(call):
    limit = sanitize_limit(as_record(call.payload).get('limit'), MAX_RANKING_LIMIT, 5)
    try:
        items = _public_items(build_ranking(limit))
    except Exception as e:
        logger.error(f"getChampionsRanking falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Não foi possível carregar o ranking agora.')

    return {'campaignId': default_campaign_id(), 'updatedAtMs': now_ms(), 'items': items}


def get_weekly_top_buyers_ranking(call):
    limit = sanitize_limit(as_record(call.payload).get('limit'), MAX_RANKING_LIMIT, MAX_RANKING_LIMIT)
    window = weekly_window()
    try:
        items = _public_items(build_ranking(limit, window.start_ms, window.end_ms))
    except Exception as e:
        logger.error(f"getWeeklyTopBuyersRanking falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Não foi possível carregar o ranking semanal agora.')

    return {
        'campaignId': default_campaign_id(),
        'updatedAtMs': now_ms(),
        'weekId': window.week_id,
        'weekStartAtMs': window.start_ms,
        'weekEndAtMs': window.end_ms,
        'items': items,
    }


def winning_position(lottery_number: int, participant_count: int) -> int:
    modulo = lottery_number % participant_count
    return participant_count if modulo == 0 else modulo


def sanitize_lottery_number(value) -> int:
    parsed = read_int(value)
    if parsed is None or parsed <= 0:
        raise CallableError('invalid-argument', 'Informe um número inteiro válido da Loteria Federal.')
    return parsed


def draw_to_dict(draw: TopBuyersDraw):
    return {
        'campaignId': draw.campaign_id,
        'drawId': draw.id,
        'weekId': draw.week_id,
        'weekStartAtMs': draw.week_start_at_ms,
        'weekEndAtMs': draw.week_end_at_ms,
        'lotteryNumber': draw.lottery_number,
        'requestedRankingLimit': draw.requested_ranking_limit,
        'participantCount': draw.participant_count,
        'winningPosition': draw.winning_position,
        'winner': draw.winner,
        'rankingSnapshot': draw.ranking_snapshot,
        'publishedAtMs': draw.published_at_ms,
    }


def publish_top_buyers_draw(call):
    uid = require_admin(call, 'Apenas administradores podem publicar o resultado.')
    payload = as_record(call.payload)
    lottery_number = sanitize_lottery_number(payload.get('lotteryNumber'))
    ranking_limit = sanitize_limit(payload.get('rankingLimit'), MAX_RANKING_LIMIT, DEFAULT_DRAW_RANKING_LIMIT)
    window = weekly_window()

    entries = build_ranking(ranking_limit, window.start_ms, window.end_ms)
    if not entries:
        raise CallableError('failed-precondition', 'Ainda não há participantes elegíveis para sorteio.')

    position = winning_position(lottery_number, len(entries))
    winner = entries[position - 1]
    snapshot = [entry._asdict() for entry in entries]

    def work(session):
        draw = TopBuyersDraw(
            id=str(uuid.uuid4()),
            campaign_id=default_campaign_id(),
            week_id=window.week_id,
            week_start_at_ms=window.start_ms,
            week_end_at_ms=window.end_ms,
            lottery_number=lottery_number,
            requested_ranking_limit=ranking_limit,
            participant_count=len(entries),
            winning_position=position,
            winner={'userId': winner.user_id, 'name': winner.name, 'cotas': winner.cotas, 'pos': winner.pos},
            ranking_snapshot=[
                {
                    'pos': item['pos'],
                    'userId': item['user_id'],
                    'name': item['name'],
                    'cotas': item['cotas'],
                    'firstPurchaseAtMs': item['first_purchase_at_ms'],
                }
                for item in snapshot
            ],
            published_by_uid=uid,
            published_at_ms=now_ms(),
        )
        session.add(draw)
        session.flush()
        return draw_to_dict(draw)

    try:
        result = run_transaction(work)
    except Exception as e:
        logger.error(f"publishTopBuyersDraw falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Não foi possível publicar o resultado agora.')

    logger.info(
        f"publishTopBuyersDraw semana={window.week_id} loteria={lottery_number} "
        f"participantes={len(entries)} posicao={position}"
    )
    return result


def get_latest_top_buyers_draw(call=None):
    draw = (
        TopBuyersDraw.query
        .filter_by(campaign_id=default_campaign_id())
        .order_by(TopBuyersDraw.published_at_ms.desc())
        .first()
    )
    if draw is None:
        return {'hasResult': False, 'result': None}
    return {'hasResult': True, 'result': draw_to_dict(draw)}
