"""
Configuração de campanha (admin), leitores tolerantes dos campos da campanha
e resumos de vendas para o painel.
"""
import logging
import re
from collections import namedtuple
from datetime import date, datetime, timezone
from decimal import Decimal

from flask import current_app

from database import (
    Campaign, CampaignCoupon, DailySalesMetrics, Order, SalesMetrics, db, lock_rows, run_transaction,
)
from number_state import resolve_range
from shared import (
    CallableError, as_float, as_record, money, now_ms, read_int, read_metric_number, require_admin,
    sanitize_string, to_decimal,
)

logger = logging.getLogger(__name__)

DEFAULT_CAMPAIGN_TITLE = 'Sorteio BMW R1200 GS'
DEFAULT_PRICE_PER_COTA = Decimal('0.99')
DEFAULT_MAIN_PRIZE = 'BMW R1200 GS 2015/2016'
DEFAULT_SECOND_PRIZE = 'Honda CG Start 160 2026/2026'
DEFAULT_BONUS_PRIZE = '20 PIX de R$ 1.000'
DEFAULT_CAMPAIGN_STATUS = 'active'
CAMPAIGN_STATUS_VALUES = ('active', 'scheduled', 'paused', 'finished')
MAX_COUPONS = 100
SUMMARY_ID = 'sales_summary'
DAILY_SERIES_DAYS = 14

Coupon = namedtuple('Coupon', 'code discount_type discount_value active created_at')

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def get_campaign(campaign_id, lock=False):
    query = Campaign.query.filter_by(id=campaign_id)
    if lock:
        query = lock_rows(query)
    return query.first()


def default_campaign_id():
    return current_app.config['DEFAULT_CAMPAIGN_ID']


def max_purchase_quantity():
    return current_app.config['MAX_PURCHASE_QUANTITY']


# ----------------------------------------------------------------------
# Leitores (nunca falham: valores inválidos caem no padrão)
# ----------------------------------------------------------------------

def read_price_per_cota(campaign) -> Decimal:
    price = to_decimal(getattr(campaign, 'price_per_cota', None))
    if price is None or price <= 0:
        return DEFAULT_PRICE_PER_COTA
    return money(price)


def read_min_purchase_quantity(campaign) -> int:
    """O valor da campanha prevalece; a configuração é só o padrão inicial."""
    quantity = read_int(getattr(campaign, 'min_purchase_quantity', None))
    if quantity is None or quantity <= 0 or quantity > max_purchase_quantity():
        return current_app.config['DEFAULT_MIN_PURCHASE_QUANTITY']
    return quantity


def read_coupons(campaign):
    if campaign is None:
        return []
    coupons = []
    for row in campaign.coupons:
        value = to_decimal(row.discount_value)
        if not row.code or value is None or value <= 0:
            continue
        coupons.append(Coupon(
            row.code,
            'fixed' if row.discount_type == 'fixed' else 'percent',
            money(value),
            bool(row.active),
            row.created_at,
        ))
    return coupons


def _read_text(campaign, attr, default):
    return sanitize_string(getattr(campaign, attr, None)) or default


def read_status(campaign) -> str:
    value = sanitize_string(getattr(campaign, 'status', None)).lower()
    return value if value in CAMPAIGN_STATUS_VALUES else DEFAULT_CAMPAIGN_STATUS


def read_date(campaign, attr):
    value = sanitize_string(getattr(campaign, attr, None))
    if not value or not _DATE_RE.match(value):
        return None
    return value


def coupon_to_dict(coupon: Coupon):
    return {
        'code': coupon.code,
        'discountType': coupon.discount_type,
        'discountValue': float(coupon.discount_value),
        'active': coupon.active,
        'createdAt': coupon.created_at,
    }


def campaign_snapshot(campaign, campaign_id):
    number_range = resolve_range(campaign, campaign_id)
    return {
        'campaignId': campaign_id,
        'title': _read_text(campaign, 'title', DEFAULT_CAMPAIGN_TITLE),
        'pricePerCota': float(read_price_per_cota(campaign)),
        'minPurchaseQuantity': read_min_purchase_quantity(campaign),
        'mainPrize': _read_text(campaign, 'main_prize', DEFAULT_MAIN_PRIZE),
        'secondPrize': _read_text(campaign, 'second_prize', DEFAULT_SECOND_PRIZE),
        'bonusPrize': _read_text(campaign, 'bonus_prize', DEFAULT_BONUS_PRIZE),
        'status': read_status(campaign),
        'startsAt': read_date(campaign, 'starts_at'),
        'endsAt': read_date(campaign, 'ends_at'),
        'numberStart': number_range.start,
        'numberEnd': number_range.end,
        'coupons': [coupon_to_dict(coupon) for coupon in read_coupons(campaign)],
    }


# ----------------------------------------------------------------------
# Validação da entrada do admin (A03)
# ----------------------------------------------------------------------

def sanitize_coupon_code(value) -> str:
    normalized = re.sub(r'[^A-Z0-9_-]', '', sanitize_string(value).upper())
    return normalized[:24]


def _sanitize_price(value):
    if value is None or value == '':
        return None
    price = to_decimal(value)
    if price is None or price <= 0:
        raise CallableError('invalid-argument', 'pricePerCota deve ser um número maior que zero.')
    return money(price)


def _sanitize_min_purchase_quantity(value):
    if value is None or value == '':
        return None
    quantity = read_int(value)
    limit = max_purchase_quantity()
    if quantity is None or quantity <= 0 or quantity > limit:
        raise CallableError('invalid-argument', f'minPurchaseQuantity deve ser inteiro entre 1 e {limit}.')
    return quantity


def _sanitize_text(value, field_name, maxlen):
    if value is None:
        return None
    normalized = sanitize_string(value)
    if not normalized:
        raise CallableError('invalid-argument', f'{field_name} não pode ser vazio.')
    return normalized[:maxlen]


def _sanitize_status(value):
    if value is None or value == '':
        return None
    normalized = sanitize_string(value).lower()
    if normalized not in CAMPAIGN_STATUS_VALUES:
        raise CallableError('invalid-argument', 'status de campanha inválido.')
    return normalized


def _sanitize_date(value, field_name):
    if value is None or value == '':
        return None
    normalized = sanitize_string(value)
    if not _DATE_RE.match(normalized):
        raise CallableError('invalid-argument', f'{field_name} deve seguir o formato YYYY-MM-DD.')
    try:
        date.fromisoformat(normalized)
    except ValueError:
        raise CallableError('invalid-argument', f'{field_name} inválido.')
    return normalized


def _sanitize_range_bound(value, field_name):
    if value is None or value == '':
        return None
    number = read_int(value)
    if number is None or number <= 0:
        raise CallableError('invalid-argument', f'{field_name} deve ser um inteiro positivo.')
    return number


def sanitize_coupons(value):
    """None -> lista vazia (remove todos). Aceita lista ou mapa código -> cupom."""
    if value is None:
        return []
    if isinstance(value, list):
        items = value
    elif isinstance(value, dict):
        items = list(value.values())
    else:
        raise CallableError('invalid-argument', 'coupons deve ser uma lista.')

    deduplicated = {}
    for raw_coupon in items:
        coupon = as_record(raw_coupon)
        code = sanitize_coupon_code(coupon.get('code'))
        discount_type = 'fixed' if coupon.get('discountType') == 'fixed' else 'percent'
        discount_value = to_decimal(coupon.get('discountValue'))
        if discount_value is None or discount_value <= 0:
            raise CallableError('invalid-argument', 'Cupom com discountValue inválido.')
        if discount_type == 'percent' and discount_value > 100:
            raise CallableError('invalid-argument', 'Cupom percentual não pode exceder 100%.')
        if not code:
            continue
        deduplicated[code] = Coupon(
            code,
            discount_type,
            money(discount_value),
            coupon.get('active') is not False,
            sanitize_string(coupon.get('createdAt')) or datetime.now(timezone.utc).isoformat(),
        )

    return list(deduplicated.values())[:MAX_COUPONS]


def _replace_coupons(session, campaign, coupons):
    # atualiza no lugar: apagar e reinserir a mesma chave no mesmo flush viola a PK
    existing = {row.code: row for row in campaign.coupons}
    wanted = {coupon.code for coupon in coupons}
    for code, row in existing.items():
        if code not in wanted:
            campaign.coupons.remove(row)

    for position, coupon in enumerate(coupons):
        row = existing.get(coupon.code)
        if row is None:
            row = CampaignCoupon(campaign_id=campaign.id, code=coupon.code)
            campaign.coupons.append(row)
        row.position = position
        row.discount_type = coupon.discount_type
        row.discount_value = coupon.discount_value
        row.active = coupon.active
        row.created_at = coupon.created_at


# ----------------------------------------------------------------------
# Operações
# ----------------------------------------------------------------------

def upsert_campaign_settings(call):
    uid = require_admin(call, 'Apenas administradores podem alterar a campanha.')
    payload = as_record(call.payload)
    campaign_id = default_campaign_id()

    updates = {}
    text_fields = (
        ('title', 'title', 120),
        ('mainPrize', 'main_prize', 160),
        ('secondPrize', 'second_prize', 160),
        ('bonusPrize', 'bonus_prize', 160),
    )
    for key, attr, maxlen in text_fields:
        value = _sanitize_text(payload.get(key), key, maxlen)
        if value is not None:
            updates[attr] = value

    price = _sanitize_price(payload.get('pricePerCota'))
    if price is not None:
        updates['price_per_cota'] = price
    min_quantity = _sanitize_min_purchase_quantity(payload.get('minPurchaseQuantity'))
    if min_quantity is not None:
        updates['min_purchase_quantity'] = min_quantity
    status = _sanitize_status(payload.get('status'))
    if status is not None:
        updates['status'] = status
    for key, attr in (('numberStart', 'number_start'), ('numberEnd', 'number_end')):
        bound = _sanitize_range_bound(payload.get(key), key)
        if bound is not None:
            updates[attr] = bound
    # datas: ausente = mantém, null/'' = limpa
    for key, attr in (('startsAt', 'starts_at'), ('endsAt', 'ends_at')):
        if key in payload:
            updates[attr] = _sanitize_date(payload.get(key), key)

    coupons = sanitize_coupons(payload['coupons']) if 'coupons' in payload else None

    def work(session):
        campaign = get_campaign(campaign_id, lock=True)
        is_new = campaign is None

        if not is_new and not updates and coupons is None:
            raise CallableError('invalid-argument', 'Nenhum dado válido para atualizar campanha.')

        starts_at = updates.get('starts_at', read_date(campaign, 'starts_at'))
        ends_at = updates.get('ends_at', read_date(campaign, 'ends_at'))
        if starts_at and ends_at and starts_at > ends_at:
            raise CallableError('invalid-argument', 'startsAt não pode ser maior que endsAt.')

        number_start = updates.get('number_start', getattr(campaign, 'number_start', None))
        number_end = updates.get('number_end', getattr(campaign, 'number_end', None))
        if number_start and number_end and number_start > number_end:
            raise CallableError('invalid-argument', 'numberStart não pode ser maior que numberEnd.')

        if is_new:
            campaign = Campaign(
                id=campaign_id,
                title=DEFAULT_CAMPAIGN_TITLE,
                price_per_cota=DEFAULT_PRICE_PER_COTA,
                min_purchase_quantity=current_app.config['DEFAULT_MIN_PURCHASE_QUANTITY'],
                main_prize=DEFAULT_MAIN_PRIZE,
                second_prize=DEFAULT_SECOND_PRIZE,
                bonus_prize=DEFAULT_BONUS_PRIZE,
                status=DEFAULT_CAMPAIGN_STATUS,
            )
            session.add(campaign)

        for attr, value in updates.items():
            setattr(campaign, attr, value)
        campaign.updated_by = uid
        if coupons is not None:
            _replace_coupons(session, campaign, coupons)

        session.flush()
        return campaign_snapshot(campaign, campaign_id)

    logger.info(
        f"upsertCampaignSettings iniciado por uid={uid} campos={sorted(updates)} "
        f"cupons={len(coupons) if coupons is not None else None}"
    )
    try:
        snapshot = run_transaction(work)
    except CallableError:
        raise
    except Exception as e:
        logger.error(f"upsertCampaignSettings falhou: {e.__class__.__name__}: {e}")
        raise CallableError('internal', 'Falha ao salvar configurações da campanha.')

    logger.info(
        f"upsertCampaignSettings concluído campaign={campaign_id} "
        f"minPurchaseQuantity={snapshot['minPurchaseQuantity']} cupons={len(snapshot['coupons'])}"
    )
    return snapshot


def _summary_counter(value) -> int:
    return max(0, int(read_metric_number(value)))


def get_dashboard_summary(call):
    require_admin(call)

    summary = db.session.get(SalesMetrics, SUMMARY_ID)
    total_revenue = read_metric_number(getattr(summary, 'total_revenue', None))
    paid_orders = _summary_counter(getattr(summary, 'paid_orders', None))
    sold_numbers = _summary_counter(getattr(summary, 'sold_numbers', None))
    avg_ticket = money(total_revenue / paid_orders) if paid_orders > 0 else Decimal('0')

    daily_rows = (
        DailySalesMetrics.query
        .order_by(DailySalesMetrics.date.desc())
        .limit(DAILY_SERIES_DAYS)
        .all()
    )
    daily = [
        {
            'date': row.date,
            'revenue': float(read_metric_number(row.revenue)),
            'paidOrders': _summary_counter(row.paid_orders),
            'soldNumbers': _summary_counter(row.sold_numbers),
        }
        for row in daily_rows
    ]

    return {
        'totalRevenue': float(total_revenue),
        'paidOrders': paid_orders,
        'soldNumbers': sold_numbers,
        'avgTicket': float(avg_ticket),
        'daily': daily,
    }


def get_public_sales_snapshot(call=None):
    campaign_id = default_campaign_id()
    number_range = resolve_range(get_campaign(campaign_id), campaign_id)
    total_numbers = max(1, number_range.total)

    summary = db.session.get(SalesMetrics, SUMMARY_ID)
    if summary is not None:
        sold_numbers = _summary_counter(summary.sold_numbers)
        paid_orders = _summary_counter(summary.paid_orders)
    else:
        # sem agregado ainda: conta direto nos pedidos pagos
        paid = Order.query.filter_by(status='paid', type='deposit', campaign_id=campaign_id).all()
        paid_orders = len(paid)
        sold_numbers = sum(order_quantity(order) for order in paid)

    capped = min(sold_numbers, total_numbers)
    return {
        'campaignId': campaign_id,
        'totalNumbers': total_numbers,
        'soldNumbers': capped,
        'paidOrders': paid_orders,
        'soldPercentage': round(capped / total_numbers * 100, 1),
        'updatedAtMs': now_ms(),
    }


def order_quantity(order) -> int:
    if isinstance(order.reserved_numbers, list):
        return len([n for n in order.reserved_numbers if isinstance(n, int) and not isinstance(n, bool) and n > 0])
    quantity = read_int(order.quantity)
    if quantity and quantity > 0:
        return quantity
    return 0
