"""Workspace persistence: SQLModel tables, migrations, and repository facade."""
