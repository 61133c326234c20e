import os
import logging

import click
from flask import Blueprint, Flask, current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager, current_user
from flask_migrate import Migrate
from flask_talisman import Talisman
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from campaigns import get_dashboard_summary, get_public_sales_snapshot, upsert_campaign_settings
from catalog import get_number_window, pick_random_available_numbers
from config import Config
from database import User, db, use_immediate_transactions
from pagamentos import create_pix_deposit, get_balance, request_withdraw
from pagamentos_gateway import get_gateway
from rankings import (
    get_champions_ranking, get_latest_top_buyers_draw, get_weekly_top_buyers_ranking, publish_top_buyers_draw,
)
from reservations import release_reservation, reserve_numbers
from shared import CallRequest, CallableError, mask_ip, mask_uid, sanitize_string
from webhook import handle_pix_webhook

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------
# 1. EXTENSÕES (inicializadas em create_app)
# ----------------------------------------------------------------------

login_manager = LoginManager()
limiter = Limiter(key_func=get_remote_address)  # Rate limiting (A07)
migrate = Migrate()

api = Blueprint('api', __name__, url_prefix='/api')
webhooks = Blueprint('webhooks', __name__)

ERROR_STATUS = {
    'invalid-argument': 400,
    'failed-precondition': 400,
    'unauthenticated': 401,
    'permission-denied': 403,
    'not-found': 404,
    'resource-exhausted': 429,
    'internal': 500,
}

IDENTITY_SALT = 'identity-token'

# API JSON: nada de scripts ou estilos externos
CSP_POLICY = {
    'default-src': ["'self'"],
    'img-src': ["'self'", 'data:'],
    'connect-src': ["'self'"],
}


def configure_logging(log_file):
    # Logger para arquivo e console (A09)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),  # trilha de auditoria
            logging.StreamHandler()
        ]
    )


# ----------------------------------------------------------------------
# 2. IDENTIDADE (token emitido pelo provedor externo, assinado com SECRET_KEY)
# ----------------------------------------------------------------------

def _identity_serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'], salt=IDENTITY_SALT)


def issue_identity_token(uid: str) -> str:
    return _identity_serializer().dumps({'uid': uid})


def read_identity_token(token: str):
    try:
        data = _identity_serializer().loads(token, max_age=current_app.config['IDENTITY_TOKEN_MAX_AGE'])
    except SignatureExpired:
        logger.info("Token de identidade expirado.")
        return None
    except BadSignature:
        logger.warning(f"Token de identidade inválido. IP: {mask_ip(request.remote_addr or '')}")
        return None
    uid = data.get('uid') if isinstance(data, dict) else None
    return sanitize_string(uid) or None


@login_manager.user_loader
def load_user(user_id):
    if user_id is None:
        return None
    return db.session.get(User, user_id)


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    uid = read_identity_token(header[len('Bearer '):].strip())
    if not uid:
        return None
    # uid desconhecido na tabela users = usuário autenticado sem papel
    return db.session.get(User, uid) or User(id=uid)


def build_call() -> CallRequest:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    # aceita tanto {"data": {...}} (protocolo callable) quanto o payload direto
    if set(body.keys()) == {'data'} and isinstance(body['data'], dict):
        body = body['data']

    if current_user.is_authenticated:
        return CallRequest(current_user.get_id(), getattr(current_user, 'role', None), body)
    return CallRequest(None, None, body)


def run_callable(name, operation):
    call = build_call()
    # encerra a leitura do usuário; a operação abre as próprias transações
    db.session.commit()
    try:
        result = operation(call)
    except CallableError as e:
        db.session.rollback()
        log = logger.error if e.kind == 'internal' else logger.warning
        log(f"{name} rejeitado: {e.kind} - {e.message} uid={mask_uid(call.caller_id) if call.caller_id else None}")
        return jsonify({'error': e.to_dict()}), ERROR_STATUS.get(e.kind, 500)
    except Exception:
        db.session.rollback()
        logger.exception(f"Exceção não tratada em {name}")
        error = CallableError('internal', 'Erro interno. Tente novamente mais tarde.')
        return jsonify({'error': error.to_dict()}), 500
    return jsonify({'result': result})


def payment_gateway():
    return current_app.extensions['payment_gateway']


# ----------------------------------------------------------------------
# 3. OPERAÇÕES (POST /api/<operação>)
# ----------------------------------------------------------------------

@api.route('/reserveNumbers', methods=['POST'])
@limiter.limit("30 per minute")
def reserve_numbers_view():
    return run_callable('reserveNumbers', reserve_numbers)


@api.route('/releaseReservation', methods=['POST'])
def release_reservation_view():
    return run_callable('releaseReservation', release_reservation)


@api.route('/getNumberWindow', methods=['POST'])
def get_number_window_view():
    return run_callable('getNumberWindow', get_number_window)


@api.route('/pickRandomAvailableNumbers', methods=['POST'])
def pick_random_available_numbers_view():
    return run_callable('pickRandomAvailableNumbers', pick_random_available_numbers)


@api.route('/createPixDeposit', methods=['POST'])
@limiter.limit("10 per minute")
def create_pix_deposit_view():
    return run_callable('createPixDeposit', lambda call: create_pix_deposit(call, payment_gateway()))


@api.route('/requestWithdraw', methods=['POST'])
@limiter.limit("5 per minute")
def request_withdraw_view():
    return run_callable('requestWithdraw', lambda call: request_withdraw(call, payment_gateway()))


@api.route('/getBalance', methods=['POST'])
def get_balance_view():
    return run_callable('getBalance', lambda call: get_balance(call, payment_gateway()))


@api.route('/upsertCampaignSettings', methods=['POST'])
def upsert_campaign_settings_view():
    return run_callable('upsertCampaignSettings', upsert_campaign_settings)


@api.route('/getDashboardSummary', methods=['POST'])
def get_dashboard_summary_view():
    return run_callable('getDashboardSummary', get_dashboard_summary)


@api.route('/getPublicSalesSnapshot', methods=['POST'])
def get_public_sales_snapshot_view():
    return run_callable('getPublicSalesSnapshot', get_public_sales_snapshot)


@api.route('/getChampionsRanking', methods=['POST'])
def get_champions_ranking_view():
    return run_callable('getChampionsRanking', get_champions_ranking)


@api.route('/getWeeklyTopBuyersRanking', methods=['POST'])
def get_weekly_top_buyers_ranking_view():
    return run_callable('getWeeklyTopBuyersRanking', get_weekly_top_buyers_ranking)


@api.route('/publishTopBuyersDraw', methods=['POST'])
def publish_top_buyers_draw_view():
    return run_callable('publishTopBuyersDraw', publish_top_buyers_draw)


@api.route('/getLatestTopBuyersDraw', methods=['POST'])
def get_latest_top_buyers_draw_view():
    return run_callable('getLatestTopBuyersDraw', get_latest_top_buyers_draw)


# ----------------------------------------------------------------------
# 4. WEBHOOK DO GATEWAY (sempre 200)
# ----------------------------------------------------------------------

@webhooks.route('/webhook/pix', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def pix_webhook():
    result = handle_pix_webhook(
        request.method,
        request.get_json(silent=True),
        request.args,
        request.headers,
        current_app.config,
        remote_addr=request.remote_addr,
    )
    return jsonify(result), 200


# ----------------------------------------------------------------------
# 5. FÁBRICA DA APLICAÇÃO
# ----------------------------------------------------------------------

def register_error_handlers(app):
    @app.errorhandler(404)
    def handle_404(e):
        logger.info(f"404 Not Found: {request.path}")
        return jsonify({'error': {'kind': 'not-found', 'message': 'Recurso não encontrado.'}}), 404

    @app.errorhandler(405)
    def handle_405(e):
        return jsonify({'error': {'kind': 'invalid-argument', 'message': 'Método não permitido.'}}), 405

    @app.errorhandler(429)
    def handle_429(e):
        logger.warning(f"Rate limit excedido (A07): {request.path} IP: {mask_ip(request.remote_addr or '')}")
        return jsonify({'error': {'kind': 'resource-exhausted', 'message': 'Muitas requisições. Aguarde e tente novamente.'}}), 429

    @app.errorhandler(500)
    def handle_500(e):
        # detalhes ficam no log do servidor, nunca na resposta
        logger.exception(f"Unhandled exception while handling request: {request.path}")
        return jsonify({'error': {'kind': 'internal', 'message': 'Erro interno. Tente novamente mais tarde.'}}), 500


def register_cli(app):
    @app.cli.command("create-admin")
    def create_admin():
        """Concede o papel admin ao ADMIN_UID."""
        admin_uid = sanitize_string(app.config.get('ADMIN_UID'))
        if not admin_uid:
            raise click.ClickException("ADMIN_UID must be set to grant the admin role.")

        user = db.session.get(User, admin_uid)
        if user is None:
            user = User(id=admin_uid)
            db.session.add(user)
        user.role = 'admin'
        db.session.commit()
        logger.info(f"Papel admin concedido. uid={mask_uid(admin_uid)}")  # Log (A09)
        click.echo(f"Admin configurado (uid={mask_uid(admin_uid)})")

    @app.cli.command("issue-token")
    @click.argument("uid")
    def issue_token(uid):
        """Emite um token de identidade para desenvolvimento."""
        click.echo(issue_identity_token(uid))


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    configure_logging(app.config['LOG_FILE'])

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)
    Talisman(
        app,
        content_security_policy=CSP_POLICY,
        force_https=app.config['FORCE_HTTPS'],
        strict_transport_security=app.config['FORCE_HTTPS'],
    )

    app.extensions['payment_gateway'] = get_gateway(app.config)

    app.register_blueprint(api)
    app.register_blueprint(webhooks)
    register_error_handlers(app)
    register_cli(app)

    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            use_immediate_transactions(db.engine)
        db.create_all()

    logger.info(f"Aplicação iniciada gateway={app.config['GATEWAY_PROVIDER']}")
    return app


if __name__ == '__main__':
    # Em produção, use debug=False; control via env
    debug_mode = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    create_app().run(debug=debug_mode)
