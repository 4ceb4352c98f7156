# Overview: Flask extension instances for database and migrations, plus process-local stores.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .stores import InMemoryNonceStore, ScheduledTaskRegistry

db = SQLAlchemy()
migrate = Migrate()

# Single-process state. A multi-instance deployment must swap these for a
# shared store with atomic check-and-set semantics.
nonce_store = InMemoryNonceStore()
test_timers = ScheduledTaskRegistry()
