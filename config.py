import os

from dotenv import load_dotenv

# GESTÃO DE SEGREDOS (A02): tudo vem do ambiente / .env, nada versionado
load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev_key')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///rifas.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_FILE = os.getenv('LOG_FILE', 'app.log')
    FORCE_HTTPS = _env_bool('FORCE_HTTPS', 'false')
    RATELIMIT_ENABLED = _env_bool('RATELIMIT_ENABLED', 'true')
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

    # Gateway de pagamento (HorsePay)
    GATEWAY_PROVIDER = os.getenv('GATEWAY_PROVIDER', 'sandbox').lower()
    HORSEPAY_BASE_URL = os.getenv('HORSEPAY_BASE_URL', 'https://api.horsepay.io')
    HORSEPAY_CLIENT_KEY = os.getenv('HORSEPAY_CLIENT_KEY', '')
    HORSEPAY_CLIENT_SECRET = os.getenv('HORSEPAY_CLIENT_SECRET', '')
    HORSEPAY_WEBHOOK_TOKEN = os.getenv('HORSEPAY_WEBHOOK_TOKEN', '')
    HORSEPAY_TIMEOUT_SECONDS = float(os.getenv('HORSEPAY_TIMEOUT_SECONDS', '20'))
    # URL pública do webhook; se vazia, é montada a partir da requisição atual
    WEBHOOK_PUBLIC_URL = os.getenv('WEBHOOK_PUBLIC_URL', '')

    # Identidade emitida pelo provedor externo (token assinado com SECRET_KEY)
    IDENTITY_TOKEN_MAX_AGE = int(os.getenv('IDENTITY_TOKEN_MAX_AGE', '86400'))

    # Campanha / números
    DEFAULT_CAMPAIGN_ID = os.getenv('DEFAULT_CAMPAIGN_ID', 'campanha-bmw-r1200-gs-2026')
    RESERVATION_DURATION_SECONDS = int(os.getenv('RESERVATION_DURATION_SECONDS', '300'))
    DEFAULT_MIN_PURCHASE_QUANTITY = int(os.getenv('DEFAULT_MIN_PURCHASE_QUANTITY', '10'))
    MAX_PURCHASE_QUANTITY = int(os.getenv('MAX_PURCHASE_QUANTITY', '300'))

    # Depósito PIX
    MAX_DEPOSIT_ORDER_ATTEMPTS = int(os.getenv('MAX_DEPOSIT_ORDER_ATTEMPTS', '3'))
    DEPOSIT_RETRY_DELAY_SECONDS = float(os.getenv('DEPOSIT_RETRY_DELAY_SECONDS', '1.2'))

    # Webhook
    PAID_PROCESSING_CLAIM_TTL_SECONDS = int(os.getenv('PAID_PROCESSING_CLAIM_TTL_SECONDS', '300'))

    ADMIN_UID = os.getenv('ADMIN_UID', '')
