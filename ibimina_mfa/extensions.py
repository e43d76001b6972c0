"""
Shared Flask extension instances.

Extensions are created unbound here and attached to an application in
:func:`ibimina_mfa.app.create_app`, so models and views can import them
without importing the application itself.
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager
from flask_mail import Mail
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
login_manager = LoginManager()
mail = Mail()
limiter = Limiter(key_func=get_remote_address)
