# Overview: Flask extension instances for database, migrations and the in-process core state.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

# Process-local state shared by services; imported after `db` because the
# service modules import it back from here.
from .services.dictionary_cache import DictionaryCache  # noqa: E402
from .services.pi_session_store import PISessionStore  # noqa: E402
from .services.rates_service import RatesProvider  # noqa: E402

dictionary_cache = DictionaryCache()
rates_provider = RatesProvider()
pi_sessions = PISessionStore()
