from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("pustakabot.analytics")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_CREATE_SQL = """
    CREATE TABLE IF NOT EXISTS chat_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
"""


class AnalyticsLog:
    """Append-only log of inbound messages in a local SQLite file."""

    def __init__(self, db_path: Path) -> None:
        """Purpose: Open (and create if needed) the chat log database.
        Inputs/Outputs: Input is the SQLite file path; no return value.
        Side Effects / State: Creates the parent directory and the chat_logs table.
        Dependencies: Uses sqlite3.
        Failure Modes: sqlite3.Error propagates; the app refuses to start without it.
        If Removed: The admin stats endpoint has nothing to report.
        Testing Notes: Point at tmp_path and record a few rows.
        """
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute(_CREATE_SQL)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    def record(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Append one row for an inbound message (local time)."""
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        with closing(self._connect()) as conn, conn:
            conn.execute("INSERT INTO chat_logs (user_id, timestamp) VALUES (?, ?)", (user_id, stamp))

    def summary(self, today: Optional[datetime] = None) -> Dict[str, Any]:
        """Purpose: Aggregate the log for the admin dashboard.
        Inputs/Outputs: Input is the reference "today"; output is a dict with
            summary counts, a 7-day trend, peak hours, and the top 5 users.
        Side Effects / State: Read-only queries.
        Dependencies: Uses sqlite date()/strftime() over the stored local timestamps.
        Failure Modes: sqlite3.Error propagates to the endpoint (500).
        If Removed: Librarians cannot see usage volume or busy hours.
        Testing Notes: Rows 8 days old count toward totals but not the trend.
        """
        day = (today or datetime.now()).strftime("%Y-%m-%d")
        with closing(self._connect()) as conn:
            total = conn.execute("SELECT COUNT(*) FROM chat_logs").fetchone()[0]
            unique_users = conn.execute("SELECT COUNT(DISTINCT user_id) FROM chat_logs").fetchone()[0]
            today_count = conn.execute(
                "SELECT COUNT(*) FROM chat_logs WHERE date(timestamp) = ?", (day,)
            ).fetchone()[0]
            trend = conn.execute(
                "SELECT date(timestamp) AS day, COUNT(*) FROM chat_logs "
                "WHERE date(timestamp) >= date(?, '-6 days') AND date(timestamp) <= ? "
                "GROUP BY day ORDER BY day ASC",
                (day, day),
            ).fetchall()
            peak_hours = conn.execute(
                "SELECT strftime('%H', timestamp) AS hour, COUNT(*) FROM chat_logs "
                "GROUP BY hour ORDER BY hour ASC"
            ).fetchall()
            top_users = conn.execute(
                "SELECT user_id, COUNT(*) AS total FROM chat_logs "
                "GROUP BY user_id ORDER BY total DESC, user_id ASC LIMIT 5"
            ).fetchall()
        return {
            "summary": {
                "total_chats": total,
                "unique_users": unique_users,
                "today_chats": today_count,
            },
            "charts": {
                "trend_7_days": _pairs(trend, "date", "count"),
                "peak_hours": _pairs(peak_hours, "hour", "count"),
            },
            "top_users": _pairs(top_users, "user_id", "total"),
        }


def _pairs(rows: List[tuple], first: str, second: str) -> List[Dict[str, Any]]:
    return [{first: row[0], second: row[1]} for row in rows]
