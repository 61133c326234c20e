"""
Utilitários compartilhados: saneamento de entrada, hashing idempotente,
mascaramento para logs (A09) e a taxonomia de erros das operações.
"""
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

BRAZIL_TZ = ZoneInfo('America/Sao_Paulo')
CENTS = Decimal('0.01')

ERROR_KINDS = (
    'invalid-argument',
    'unauthenticated',
    'permission-denied',
    'not-found',
    'failed-precondition',
    'resource-exhausted',
    'internal',
)


class CallableError(Exception):
    """Erro de domínio exposto ao chamador como {kind, message}."""

    def __init__(self, kind: str, message: str):
        if kind not in ERROR_KINDS:
            kind = 'internal'
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_dict(self):
        return {'kind': self.kind, 'message': self.message}

    def __repr__(self):
        return f'<CallableError {self.kind}: {self.message}>'


@dataclass
class CallRequest:
    caller_id: Optional[str] = None
    caller_role: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def require_caller(call: CallRequest) -> str:
    if not call.caller_id:
        raise CallableError('unauthenticated', 'Usuário precisa estar autenticado.')
    return call.caller_id


def require_admin(call: CallRequest, message='Apenas administradores podem executar esta ação.') -> str:
    uid = require_caller(call)
    if sanitize_string(call.caller_role).lower() != 'admin':
        raise CallableError('permission-denied', message)
    return uid


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow():
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Saneamento / coerção
# ----------------------------------------------------------------------

def sanitize_string(value) -> str:
    if not isinstance(value, str):
        return ''
    return value.strip()


def sanitize_phone(value) -> Optional[str]:
    return sanitize_string(value) or None


def as_record(value) -> dict:
    if isinstance(value, dict):
        return value
    return {}


def read_string(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    # bool é subclasse de int, mas "true" não é um identificador
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def read_int(value) -> Optional[int]:
    """Converte para int apenas valores inteiros exatos (7, 7.0, "7")."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def to_decimal(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool) or value == '':
        return None
    try:
        number = Decimal(str(value).strip().replace(',', '.'))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def money(value) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def sanitize_amount(value) -> Decimal:
    amount = to_decimal(value)
    if amount is None or amount <= 0:
        raise CallableError('invalid-argument', 'amount deve ser um número maior que zero.')
    return money(amount)


def sanitize_optional_amount(value) -> Optional[Decimal]:
    amount = to_decimal(value)
    if amount is None or amount <= 0:
        return None
    return money(amount)


def read_metric_number(value) -> Decimal:
    number = to_decimal(value)
    if number is None:
        return Decimal('0.00')
    return money(number)


def as_float(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def top_level_keys(value):
    return list(as_record(value).keys())[:25]


def _type_name(value):
    if isinstance(value, list):
        return 'array'
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, dict):
        return 'object'
    return type(value).__name__


def value_shape(value):
    return {key: _type_name(item) for key, item in list(as_record(value).items())[:25]}


def get_nested_value(source, path: str):
    current = source
    for part in path.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def same_number_set(a, b) -> bool:
    if len(a) != len(b):
        return False
    return sorted(a) == sorted(b)


def stable_stringify(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False, default=str)


def build_webhook_event_id(external_id: str, payload) -> str:
    digest = hashlib.sha256(f'{external_id}:{stable_stringify(payload)}'.encode('utf-8'))
    return digest.hexdigest()[:32]


def brazil_date_key(moment: Optional[datetime] = None) -> str:
    moment = moment or utcnow()
    return moment.astimezone(BRAZIL_TZ).strftime('%Y-%m-%d')


# ----------------------------------------------------------------------
# Mascaramento para logs (A09)
# ----------------------------------------------------------------------

def mask_uid(uid: str) -> str:
    uid = str(uid or '')
    if len(uid) <= 8:
        return f'{uid[:2]}***'
    return f'{uid[:4]}...{uid[-4:]}'


def mask_name(name) -> str:
    clean = sanitize_string(name)
    if not clean:
        return ''
    if len(clean) <= 2:
        return f'{clean[0]}*'
    return f'{clean[0]}***{clean[-1]}'


def mask_phone_number(phone) -> Optional[str]:
    if not phone:
        return None
    digits = re.sub(r'\D', '', phone)
    if len(digits) <= 4:
        return '***'
    return f'***{digits[-4:]}'


def mask_pix_key(pix_key) -> str:
    value = sanitize_string(pix_key)
    if len(value) <= 6:
        return '***'
    return f'{value[:3]}***{value[-2:]}'


def mask_ip(ip: str) -> str:
    if not ip:
        return ''
    # IPv4 mascara o último octeto -> 192.0.2.xxx
    if '.' in ip:
        parts = ip.split('.')
        if len(parts) == 4:
            return '.'.join(parts[:3] + ['xxx'])
        return ip
    if ':' in ip:
        parts = ip.split(':')
        return ':'.join(parts[:len(parts) - 1] + ['xxxx'])
    return ip


def sanitize_for_log(value, maxlen: int = 120) -> str:
    s = str(value)
    s = s.replace('\n', '\\n').replace('\r', '\\r').replace('\t', ' ')
    if len(s) > maxlen:
        return s[:maxlen] + '...'
    return s


# ----------------------------------------------------------------------
# Token do webhook
# ----------------------------------------------------------------------

def read_header_value(headers, key: str) -> str:
    if headers is None:
        return ''
    candidate = headers.get(key)
    if isinstance(candidate, (list, tuple)):
        candidate = candidate[0] if candidate else None
    if isinstance(candidate, str):
        return candidate.strip()
    return ''


def read_query_token(query) -> str:
    return read_header_value(query, 'token')


def _same_token(candidate: str, expected: str) -> bool:
    # compare_digest só aceita str ASCII; tokens chegam da URL e de cabeçalhos
    return hmac.compare_digest(candidate.encode('utf-8'), expected.encode('utf-8'))


def has_valid_webhook_token(query, headers, expected_token: str) -> bool:
    # Sem token configurado (desenvolvimento) qualquer chamada é aceita
    if not expected_token:
        return True

    query_token = read_query_token(query)
    if query_token and _same_token(query_token, expected_token):
        return True

    header_token = (
        read_header_value(headers, 'X-HorsePay-Webhook-Token')
        or read_header_value(headers, 'X-Webhook-Token')
    )
    return bool(header_token) and _same_token(header_token, expected_token)
