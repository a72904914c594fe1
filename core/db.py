from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import mysql.connector
from mysql.connector import errors as mysql_errors

__all__ = [
    "DEFAULT_CONNECT_TIMEOUT_S",
    "DatabaseError",
    "build_connect_kwargs",
    "connect",
    "fetch_one_dict",
]

DEFAULT_CONNECT_TIMEOUT_S = 10

DatabaseError = mysql_errors.Error


def build_connect_kwargs(
    *,
    user: Optional[str],
    password: Optional[str],
    host: str,
    port: int,
    defaults_file: Optional[Path] = None,
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_S,
) -> Dict[str, Any]:
    """Return keyword arguments for :func:`mysql.connector.connect`.

    A defaults file replaces explicit credentials; host and port are always
    passed so the option file cannot silently redirect the connection.
    """

    kwargs: Dict[str, Any] = {
        "host": host,
        "port": int(port),
        "connection_timeout": int(connect_timeout),
        "autocommit": True,
    }
    if defaults_file:
        kwargs["option_files"] = str(defaults_file)
        kwargs["option_groups"] = ["client"]
    else:
        if user:
            kwargs["user"] = user
        if password:
            kwargs["password"] = password
    return kwargs


def connect(params: Mapping[str, Any]):
    """Open a new server connection with *params* from :func:`build_connect_kwargs`."""

    return mysql.connector.connect(**dict(params))


def fetch_one_dict(conn, query: str) -> Optional[Dict[str, Any]]:
    # Buffered so unread rows never block the next statement on this connection.
    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        cursor.execute(query)
        row = cursor.fetchone()
    finally:
        cursor.close()
    return dict(row) if row else None
