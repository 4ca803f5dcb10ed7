"""codevault database layer."""

from codevault.db.connection import Database
from codevault.db.migrations import MIGRATIONS, run_migrations
from codevault.db.repository import Repository
from codevault.db.schema import initialize
from codevault.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
