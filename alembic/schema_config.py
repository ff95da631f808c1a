"""
Schema configuration helper for Alembic migrations.

Migrations read the target schema from settings so every environment can
keep its tables in its own schema.

Usage in migrations:
    from schema_config import get_schema

    def upgrade():
        schema = get_schema()
        op.create_table('my_table', ..., schema=schema)
"""
from filevault.config import settings


def get_schema() -> str:
    """Return the DB_SCHEMA setting (default 'vault')."""
    return settings.DB_SCHEMA
