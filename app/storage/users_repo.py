"""Read-only user lookups needed to validate job ownership at creation time."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import String, cast, column, select, table

from app.core.database import session_scope

# The users table belongs to the account service; only its id column is read here.
users_table = table("users", column("id"))


class UserStore(Protocol):
  """Lookup contract for user existence."""

  async def user_exists(self, user_id: str) -> bool:
    """Return True when a user row with this id exists."""


class PostgresUserStore(UserStore):
  """Check user existence against the shared Postgres users table."""

  async def user_exists(self, user_id: str) -> bool:
    async with session_scope() as session:
      stmt = select(users_table.c.id).where(cast(users_table.c.id, String) == str(user_id)).limit(1)
      row = (await session.execute(stmt)).first()
      return row is not None
