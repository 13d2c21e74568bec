"""Root pytest configuration.

Pins the environment before any ``receiptflow`` module is imported so the
settings singleton, the database engine and the Dramatiq broker are built
for tests: in-memory SQLite, no Redis, StubBroker.
"""

import os
import sys
from pathlib import Path

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ["DEV_AUTH_BYPASS"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.pop("AUTH_JWKS_URL", None)
os.environ.pop("AUTH_JWT_AUDIENCE", None)
os.environ.pop("AUTH_JWT_ISSUER", None)

# Add backend folder to sys.path so `import receiptflow...` works without an install
BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
