"""
Application factory for the Ibimina MFA service.
"""

import logging
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from .cli import mfa as mfa_cli
from .extensions import db, login_manager, mail
from .security.mfa.config import init_mfa_config, validate_mfa_config
from .security.mfa.exceptions import ConfigurationError
from .security.mfa.models import User
from .security.mfa.services import EXTENSION_KEY, MFAOrchestrationService
from .security.mfa.views import mfa_bp
from .security.rate_limiting import init_rate_limiting

log = logging.getLogger(__name__)

LOGFORMAT = "%(asctime)s:%(levelname)s:%(name)s:%(message)s"


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "unauthenticated"}), 401


def create_app(config: Optional[Mapping[str, Any]] = None, **services) -> Flask:
    """
    Build the MFA application.

    Args:
        config: Settings applied on top of ``IBIMINA_MFA_SETTINGS`` and the
            MFA defaults
        services: Optional overrides passed to
            :meth:`MFAOrchestrationService.from_config` (``storage``,
            ``email_sender``, ``whatsapp_sender``)

    Raises:
        ConfigurationError: If a required secret is missing or malformed
    """
    app = Flask(__name__)
    app.config.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite:///ibimina_mfa.db")
    app.config.setdefault("SQLALCHEMY_TRACK_MODIFICATIONS", False)
    app.config.from_envvar("IBIMINA_MFA_SETTINGS", silent=True)
    if config:
        app.config.update(config)
    init_mfa_config(app)

    is_valid, errors = validate_mfa_config(app.config)
    if not is_valid:
        for error in errors:
            log.error(f"MFA configuration error: {error}")
        raise ConfigurationError("; ".join(errors))

    if not app.debug and not app.testing:
        logging.basicConfig(format=LOGFORMAT)
    logging.getLogger("ibimina_mfa").setLevel(app.config.get("MFA_LOG_LEVEL", "INFO"))

    proxy_count = int(app.config.get("MFA_TRUSTED_PROXY_COUNT") or 0)
    if proxy_count:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxy_count, x_proto=proxy_count)

    db.init_app(app)
    login_manager.init_app(app)
    mail.init_app(app)
    init_rate_limiting(app)

    app.extensions[EXTENSION_KEY] = MFAOrchestrationService.from_config(app.config, **services)
    app.register_blueprint(mfa_bp)
    app.cli.add_command(mfa_cli)

    with app.app_context():
        db.create_all()

    log.info("Ibimina MFA application initialized")
    return app
