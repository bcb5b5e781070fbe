"""Database access: async SQLAlchemy sessions and a raw asyncpg pool."""
