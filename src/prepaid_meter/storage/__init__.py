"""Persistence: async SQLAlchemy engine, ORM models and stores."""
