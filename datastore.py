"""
Data access layer for the relational datastore (Supabase / PostgREST).

The orchestration core only needs row-level CRUD with equality filters,
prefix matching, ordering and limits. This module exposes exactly that on top
of the supabase client, so the rest of the application never builds PostgREST
queries directly and tests can swap in an in-memory implementation.

Row-level security is enforced by the datastore itself: the client is created
with the caller's bearer token, and every query runs as that caller.
"""
import logging
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from config import SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL
from exceptions import AuthError, ConfigError, DatastoreError
from tracer import trace

# Table names used across the application.
PROJECTS = "projects"
PROJECT_FILES = "project_files"
PROJECT_CHAT_MESSAGES = "project_chat_messages"
PLAYGROUND_CHATS = "playground_chats"
PLAYGROUND_CHAT_MESSAGES = "playground_chat_messages"
PLAYGROUND_ARTIFACTS = "playground_artifacts"
CANVAS_FILES = "canvas_files"
CANVAS_FILE_VERSIONS = "canvas_file_versions"


def bearer_token(authorization_header: Optional[str]) -> str:
    """Extracts the raw JWT from an 'Authorization: Bearer ...' header value."""
    value = (authorization_header or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


@trace
def create_supabase_client(access_token: str = "", service_role: bool = False) -> Client:
    """
    Creates a supabase client acting either as the caller or as the service role.

    Args:
        access_token: The caller's JWT, forwarded so row-level policies apply.
        service_role: When True, use the elevated service key instead.

    Raises:
        ConfigError: If the Supabase URL or the required key is not configured.
    """
    if not SUPABASE_URL:
        raise ConfigError("SUPABASE_URL is not set.")
    if service_role:
        if not SUPABASE_SERVICE_ROLE_KEY:
            raise ConfigError("SUPABASE_SERVICE_ROLE_KEY is not set.")
        return create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    if not SUPABASE_ANON_KEY:
        raise ConfigError("SUPABASE_ANON_KEY is not set.")
    headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
    return create_client(SUPABASE_URL, SUPABASE_ANON_KEY, options=ClientOptions(headers=headers))


class Datastore:
    """
    Handles all direct read/write interactions with the datastore tables.
    This class acts as a Data Access Layer (DAL), abstracting away the specifics
    of the PostgREST query builder from the tool and persistence logic.
    """

    def __init__(self, client: Client, access_token: str = ""):
        self.client = client
        self.access_token = access_token

    def _execute(self, query, table: str, operation: str) -> list[dict[str, Any]]:
        """Runs a built query, translating client errors into DatastoreError."""
        try:
            response = query.execute()
        except APIError as e:
            logging.error(f"Datastore {operation} on '{table}' failed: {e.message}")
            raise DatastoreError(e.message or str(e), code=e.code) from e
        except httpx.HTTPError as e:
            logging.error(f"Datastore {operation} on '{table}' failed at transport level: {e}")
            raise DatastoreError(str(e)) from e
        data = response.data
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    @trace
    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[dict[str, Any]] = None,
        like: Optional[dict[str, str]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Returns the rows of `table` matching every equality filter.

        Args:
            table: The table to query.
            columns: A PostgREST column list, e.g. 'id, path, content'.
            filters: Column -> value equality constraints.
            like: Column -> SQL LIKE pattern constraints.
            order_by: Optional column to sort on.
            descending: Sort direction for `order_by`.
            limit: Optional maximum number of rows.
        """
        query = self.client.table(table).select(columns)
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        for column, pattern in (like or {}).items():
            query = query.like(column, pattern)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit:
            query = query.limit(limit)
        return self._execute(query, table, "select")

    def select_one(self, table: str, columns: str = "*", filters: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        """Returns the first matching row, or None when nothing matches."""
        rows = self.select(table, columns, filters=filters, limit=1)
        return rows[0] if rows else None

    @trace
    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Inserts one row and returns it as stored (including generated ids)."""
        rows = self._execute(self.client.table(table).insert(row), table, "insert")
        return rows[0] if rows else {}

    @trace
    def update(self, table: str, values: dict[str, Any], filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Updates every row matching `filters` and returns the updated rows."""
        query = self.client.table(table).update(values)
        for column, value in filters.items():
            query = query.eq(column, value)
        return self._execute(query, table, "update")

    @trace
    def delete(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Deletes every row matching `filters` and returns the deleted rows."""
        query = self.client.table(table).delete()
        for column, value in filters.items():
            query = query.eq(column, value)
        return self._execute(query, table, "delete")

    @trace
    def current_user_id(self) -> str:
        """
        Resolves the caller's user id from the forwarded token.

        Raises:
            AuthError: If no token was forwarded or it does not identify a user.
        """
        if not self.access_token:
            raise AuthError("Not authenticated")
        try:
            response = self.client.auth.get_user(self.access_token)
        except Exception as e:
            raise AuthError(f"Could not verify caller: {e}") from e
        user = getattr(response, "user", None)
        user_id = getattr(user, "id", None)
        if not user_id:
            raise AuthError("Not authenticated")
        return str(user_id)
