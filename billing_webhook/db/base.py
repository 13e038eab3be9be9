"""
Database base configuration
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# Create declarative base for SQLAlchemy models
Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# Import all models here to ensure they are registered with SQLAlchemy
def import_models():
    """Import all models to register them with SQLAlchemy"""
    from billing_webhook.models import transaction  # noqa: F401
    from billing_webhook.models import subscription  # noqa: F401
    from billing_webhook.models import user_access  # noqa: F401
    from billing_webhook.models import insurance_log  # noqa: F401
