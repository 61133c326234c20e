"""
Adaptador do gateway de pagamentos (HorsePay).

Suporta uma implementação sandbox para desenvolvimento e testes e o cliente
HTTP real. O formato das respostas do gateway não é estável, então a extração
de campos procura em uma lista ordenada de caminhos possíveis e usa o primeiro
valor presente.
"""
import base64
import io
import logging
import re
import uuid
from collections import namedtuple
from typing import Dict

import qrcode
import requests

from shared import CallableError, as_record, get_nested_value, read_string, sanitize_string, top_level_keys, value_shape

logger = logging.getLogger(__name__)

PixPayload = namedtuple('PixPayload', 'copy_paste qr_code')

DEFAULT_TIMEOUT_SECONDS = 20


class BaseGateway:
    def authenticate(self) -> str:
        raise NotImplementedError()

    def create_order(self, token, body) -> Dict:
        raise NotImplementedError()

    def withdraw(self, token, body) -> Dict:
        raise NotImplementedError()

    def balance(self, token) -> Dict:
        raise NotImplementedError()


class HorsePayGateway(BaseGateway):
    """Cliente HTTP da HorsePay. Credenciais chegam pelo construtor, nunca do ambiente."""

    def __init__(self, base_url, client_key, client_secret, timeout=DEFAULT_TIMEOUT_SECONDS, session=None):
        self.base_url = (base_url or '').rstrip('/')
        self.client_key = client_key or ''
        self.client_secret = client_secret or ''
        self.timeout = timeout
        self.session = session or requests.Session()

    def request(self, method, path, token=None, body=None):
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['Authorization'] = f'Bearer {token}'

        method = method.upper()
        try:
            response = self.session.request(
                method, f'{self.base_url}{path}', json=body, headers=headers, timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json() if response.content else {}
        except requests.HTTPError as e:
            response_data = _response_data(e.response)
            logger.error(
                f"HorsePay falhou path={path} method={method} status={e.response.status_code} "
                f"keys={top_level_keys(response_data)} shape={value_shape(response_data)} "
                f"mensagem={extract_gateway_message(response_data)}"
            )
            raise
        except requests.RequestException as e:
            logger.error(f"HorsePay falhou path={path} method={method} erro={e.__class__.__name__}")
            raise

        logger.info(
            f"HorsePay OK path={path} method={method} status={response.status_code} keys={top_level_keys(data)}"
        )
        return data

    def authenticate(self) -> str:
        if not self.client_key or not self.client_secret:
            raise CallableError('internal', 'Secrets da HorsePay não configurados.')

        data = self.request('post', '/auth/token', body={
            'client_key': self.client_key,
            'client_secret': self.client_secret,
        })
        data = as_record(data)
        access_token = read_string(data.get('access_token')) or read_string(data.get('token'))
        if not access_token:
            raise CallableError('internal', 'HorsePay não retornou access_token.')

        logger.info(f"HorsePay token gerado keys={top_level_keys(data)}")
        return access_token

    def create_order(self, token, body):
        return self.request('post', '/transaction/neworder', token=token, body=body)

    def withdraw(self, token, body):
        return self.request('post', '/transaction/withdraw', token=token, body=body)

    def balance(self, token):
        return self.request('get', '/user/balance', token=token)


class SandboxGateway(BaseGateway):
    """Sandbox local com respostas no formato da HorsePay.
    Apenas para desenvolvimento e testes.
    """

    def authenticate(self) -> str:
        return 'sandbox-token'

    def create_order(self, token, body):
        body = as_record(body)
        tx_id = str(uuid.uuid4())
        copy_paste = f"00020126PIX:{tx_id}|AMOUNT:{body.get('amount')}|REF:{body.get('client_reference_id')}"

        qr = qrcode.QRCode(box_size=10, border=4)
        qr.add_data(copy_paste)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        qr_b64 = base64.b64encode(buffered.getvalue()).decode('ascii')

        return {
            'external_id': tx_id,
            'status': 'pending',
            'amount': body.get('amount'),
            'copy_past': copy_paste,
            'qr_code': f"data:image/png;base64,{qr_b64}",
            'message': 'PIX gerado (sandbox).',
        }

    def withdraw(self, token, body):
        body = as_record(body)
        return {
            'external_id': str(uuid.uuid4()),
            'status': 'pending',
            'amount': body.get('amount'),
            'message': 'Saque registrado (sandbox).',
        }

    def balance(self, token):
        return {'balance': 0.0, 'currency': 'BRL'}


def get_gateway(config) -> BaseGateway:
    """Escolhe o gateway por GATEWAY_PROVIDER; padrão sandbox."""
    provider = (config.get('GATEWAY_PROVIDER') or 'sandbox').lower()
    if provider == 'horsepay':
        return HorsePayGateway(
            config.get('HORSEPAY_BASE_URL'),
            config.get('HORSEPAY_CLIENT_KEY'),
            config.get('HORSEPAY_CLIENT_SECRET'),
            timeout=config.get('HORSEPAY_TIMEOUT_SECONDS', DEFAULT_TIMEOUT_SECONDS),
        )
    if provider != 'sandbox':
        logger.warning(f"GATEWAY_PROVIDER desconhecido '{provider}', usando sandbox.")
    return SandboxGateway()


# ----------------------------------------------------------------------
# Mapeamento de erros
# ----------------------------------------------------------------------

def _response_data(response):
    if response is None:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text or None


def extract_gateway_message(data):
    if not data:
        return None
    if isinstance(data, str):
        return data
    record = as_record(data)
    return read_string(record.get('message')) or read_string(record.get('error')) or read_string(record.get('msg'))


_STATUS_KINDS = {
    400: 'invalid-argument',
    401: 'unauthenticated',
    403: 'permission-denied',
    404: 'not-found',
    429: 'resource-exhausted',
}


def to_callable_error(exc, fallback_message) -> CallableError:
    if isinstance(exc, CallableError):
        return exc

    if isinstance(exc, requests.RequestException):
        response = getattr(exc, 'response', None)
        status = response.status_code if response is not None else 500
        message = extract_gateway_message(_response_data(response)) or fallback_message
        if status in _STATUS_KINDS:
            return CallableError(_STATUS_KINDS[status], message)
        if status >= 500:
            return CallableError('internal', f'[HorsePay {status}] {message}')
        return CallableError('internal', message)

    return CallableError('internal', fallback_message)


# ----------------------------------------------------------------------
# Extração tolerante de campos
# ----------------------------------------------------------------------

def _paths(*groups):
    paths = []
    for node, keys in groups:
        for key in keys:
            paths.append(f'{node}.{key}' if node else key)
    return tuple(paths)


EXTERNAL_ID_PATHS = _paths(
    ('', ('external_id', 'externalId', 'id', 'transaction_id', 'transactionId')),
    ('data', ('external_id', 'externalId', 'id', 'transaction_id', 'transactionId')),
    ('transaction', ('external_id', 'externalId', 'id')),
    ('order', ('external_id', 'externalId', 'id')),
    ('result', ('external_id', 'externalId', 'id')),
)

_COPY_KEYS = ('copy_past', 'copy_paste', 'copyPaste', 'pix_copy_paste', 'pix_copy_past', 'pixCode', 'pix_code')
_NESTED_COPY_KEYS = ('copy_paste', 'copy_past', 'copyPaste', 'pix_code', 'pixCode')

COPY_PASTE_PATHS = _paths(
    ('', _COPY_KEYS),
    ('pix', _NESTED_COPY_KEYS),
    ('data', _COPY_KEYS),
    ('data.pix', _NESTED_COPY_KEYS),
    ('payment', _COPY_KEYS + ('emv', 'payload')),
    ('payment.pix', _COPY_KEYS + ('emv',)),
    ('result', _COPY_KEYS),
    ('result.pix', _NESTED_COPY_KEYS),
    ('result.payment', _NESTED_COPY_KEYS + ('payload',)),
    ('data.payment', _NESTED_COPY_KEYS),
    ('transaction.payment', _NESTED_COPY_KEYS),
    ('transaction', _COPY_KEYS),
    ('transaction.pix', _NESTED_COPY_KEYS),
)

_QR_KEYS = ('pix_qr_code', 'pix_qrcode', 'qrcode', 'qrcode_base64', 'qr_code', 'qrCode')
_NESTED_QR_KEYS = ('qr_code', 'qrCode', 'qrcode', 'qrcode_base64')

QR_CODE_PATHS = _paths(
    ('', _QR_KEYS),
    ('pix', _NESTED_QR_KEYS),
    ('data', _QR_KEYS),
    ('data.pix', _NESTED_QR_KEYS),
    ('payment', _QR_KEYS + ('qr_image', 'qrImage')),
    ('payment.pix', _NESTED_QR_KEYS + ('qr_image',)),
    ('result', _NESTED_QR_KEYS),
    ('result.pix', _NESTED_QR_KEYS),
    ('result.payment', _NESTED_QR_KEYS + ('qr_image',)),
    ('data.payment', _NESTED_QR_KEYS),
    ('transaction.payment', _NESTED_QR_KEYS),
    ('transaction', _QR_KEYS),
    ('transaction.pix', _NESTED_QR_KEYS),
)


def _first_string(record, paths):
    for path in paths:
        candidate = read_string(get_nested_value(record, path))
        if candidate:
            return candidate
    return None


def extract_external_id(payload):
    record = as_record(payload)
    external_id = _first_string(record, EXTERNAL_ID_PATHS)
    if external_id:
        return external_id

    data_node = record.get('data')
    if isinstance(data_node, list) and data_node:
        first = as_record(data_node[0])
        return _first_string(first, ('external_id', 'externalId', 'id'))
    return None


def extract_pix_payload(payload) -> PixPayload:
    record = as_record(payload)
    return PixPayload(_first_string(record, COPY_PASTE_PATHS), _first_string(record, QR_CODE_PATHS))


def infer_order_status(payload) -> str:
    record = as_record(payload)
    if record.get('status') is True:
        return 'paid'
    if record.get('status') is False:
        return 'failed'

    raw = ''
    for key in ('status', 'payment_status', 'transaction_status', 'order_status'):
        if record.get(key):
            raw = str(record[key])
            break
    raw = raw.strip().lower()

    if not raw:
        return 'pending'
    if any(word in raw for word in ('paid', 'success', 'approved', 'completed')):
        return 'paid'
    if any(word in raw for word in ('fail', 'cancel', 'reject', 'expired')):
        return 'failed'
    return 'pending'


def infer_order_type(payload, fallback='deposit') -> str:
    record = as_record(payload)
    raw = ''
    for key in ('type', 'transaction_type', 'operation'):
        if record.get(key):
            raw = str(record[key])
            break
    raw = raw.strip().lower()

    if not raw:
        return fallback
    if 'withdraw' in raw or 'saque' in raw:
        return 'withdraw'
    if 'deposit' in raw or 'pix' in raw:
        return 'deposit'
    return fallback


# ----------------------------------------------------------------------
# QR Code
# ----------------------------------------------------------------------

_DATA_URL_RE = re.compile(r'^data:image/[a-zA-Z0-9.+-]+;base64,([a-zA-Z0-9+/=]+)$', re.IGNORECASE)


def data_url_to_base64(value):
    match = _DATA_URL_RE.match(sanitize_string(value))
    return match.group(1) if match else None


def render_qr_code_base64(content: str) -> str:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=1)
    qr.add_data(content)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode('ascii')


def ensure_qr_code_base64(qr_code, copy_paste):
    """Imagem do gateway (sem prefixo data URL) ou QR gerado a partir do copia-e-cola."""
    if qr_code:
        return data_url_to_base64(qr_code) or qr_code
    if not copy_paste:
        return None
    try:
        return render_qr_code_base64(copy_paste)
    except Exception as e:
        logger.warning(f"Falha ao gerar QR Code a partir do copia-e-cola: {e.__class__.__name__}: {e}")
        return None
