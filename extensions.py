"""Flask extension singletons shared by models, services and blueprints."""
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
# Browser forms only; every JSON blueprint calls csrf.exempt().
csrf = CSRFProtect()
