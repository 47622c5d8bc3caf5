"""Predefined, parameterised read-only queries against the review data store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import aiosqlite

from mcp_review_engine.models import ToolResult
from mcp_review_engine.registry import Tool

MAX_LIMIT = 100
MAX_DAYS = 365

# Shape of the review data store the queries run against. The engine never
# writes to it; the schema is here for provisioning local stores and tests.
REVIEW_DATA_SCHEMA = """\
CREATE TABLE IF NOT EXISTS pull_requests (
    id            INTEGER PRIMARY KEY,
    title         TEXT NOT NULL,
    author        TEXT NOT NULL,
    status        TEXT NOT NULL,
    review_score  REAL,
    created_at    TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS code_reviews (
    id               INTEGER PRIMARY KEY,
    pull_request_id  INTEGER NOT NULL REFERENCES pull_requests(id),
    review_type      TEXT NOT NULL,
    overall_score    REAL,
    created_at       TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS review_findings (
    id         INTEGER PRIMARY KEY,
    review_id  INTEGER NOT NULL REFERENCES code_reviews(id),
    severity   TEXT NOT NULL,
    category   TEXT NOT NULL,
    file_path  TEXT,
    message    TEXT
);
CREATE INDEX IF NOT EXISTS idx_code_reviews_pr ON code_reviews(pull_request_id);
CREATE INDEX IF NOT EXISTS idx_review_findings_review ON review_findings(review_id);
"""


@dataclass(frozen=True)
class SafeQuery:
    sql: str
    default_days: int
    default_limit: int


SAFE_QUERIES: dict[str, SafeQuery] = {
    "pull_requests_summary": SafeQuery(
        """SELECT status, COUNT(*) AS count, AVG(review_score) AS avg_score
           FROM pull_requests
           WHERE created_at > datetime('now', :window)
             AND (:author IS NULL OR author = :author)
           GROUP BY status
           ORDER BY count DESC
           LIMIT :limit""",
        default_days=30,
        default_limit=MAX_LIMIT,
    ),
    "recent_reviews": SafeQuery(
        """SELECT pr.title, pr.author, cr.review_type, cr.overall_score, cr.created_at
           FROM pull_requests pr
           JOIN code_reviews cr ON pr.id = cr.pull_request_id
           WHERE cr.created_at > datetime('now', :window)
             AND (:author IS NULL OR pr.author = :author)
           ORDER BY cr.created_at DESC
           LIMIT :limit""",
        default_days=7,
        default_limit=20,
    ),
    "top_authors": SafeQuery(
        """SELECT author, COUNT(*) AS pr_count, AVG(review_score) AS avg_score
           FROM pull_requests
           WHERE created_at > datetime('now', :window)
             AND (:author IS NULL OR author = :author)
           GROUP BY author
           ORDER BY pr_count DESC
           LIMIT :limit""",
        default_days=30,
        default_limit=10,
    ),
    "security_findings": SafeQuery(
        """SELECT rf.severity, rf.category, COUNT(*) AS count
           FROM review_findings rf
           JOIN code_reviews cr ON rf.review_id = cr.id
           JOIN pull_requests pr ON cr.pull_request_id = pr.id
           WHERE cr.created_at > datetime('now', :window)
             AND LOWER(rf.category) LIKE '%security%'
             AND (:author IS NULL OR pr.author = :author)
           GROUP BY rf.severity, rf.category
           ORDER BY count DESC
           LIMIT :limit""",
        default_days=30,
        default_limit=MAX_LIMIT,
    ),
    "quality_trends": SafeQuery(
        """SELECT DATE(cr.created_at) AS date,
                  AVG(cr.overall_score) AS avg_score,
                  COUNT(*) AS review_count
           FROM code_reviews cr
           JOIN pull_requests pr ON cr.pull_request_id = pr.id
           WHERE cr.created_at > datetime('now', :window)
             AND (:author IS NULL OR pr.author = :author)
           GROUP BY DATE(cr.created_at)
           ORDER BY date DESC
           LIMIT :limit""",
        default_days=30,
        default_limit=MAX_LIMIT,
    ),
    "file_hotspots": SafeQuery(
        """SELECT rf.file_path, COUNT(*) AS issue_count,
                  AVG(CASE UPPER(rf.severity)
                          WHEN 'CRITICAL' THEN 4
                          WHEN 'HIGH' THEN 3
                          WHEN 'MEDIUM' THEN 2
                          ELSE 1 END) AS severity_score
           FROM review_findings rf
           JOIN code_reviews cr ON rf.review_id = cr.id
           JOIN pull_requests pr ON cr.pull_request_id = pr.id
           WHERE cr.created_at > datetime('now', :window)
             AND (:author IS NULL OR pr.author = :author)
           GROUP BY rf.file_path
           HAVING COUNT(*) > 1
           ORDER BY issue_count DESC, severity_score DESC
           LIMIT :limit""",
        default_days=30,
        default_limit=15,
    ),
}


def _bounded(value: Any, default: int, maximum: int) -> int:
    if value is None:
        return default
    return max(1, min(maximum, int(value)))


class DatabaseTool(Tool):
    """Runs one of SAFE_QUERIES. Arbitrary SQL is never accepted.

    Opens the store read-only per call when given a path; a shared connection
    may be injected instead.
    """

    name = "database"
    description = (
        "Query metrics, statistics, and historical data about code reviews, pull "
        "requests, and quality trends. Only predefined safe queries are allowed."
    )
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Predefined query name to execute",
                "enum": list(SAFE_QUERIES),
            },
            "parameters": {
                "type": "object",
                "description": "Query parameters",
                "properties": {
                    "limit": {"type": "integer", "description": "Result limit"},
                    "days": {"type": "integer", "description": "Number of days to look back"},
                    "author": {"type": "string", "description": "Filter by author"},
                },
            },
        },
        "required": ["query"],
    }

    def __init__(
        self,
        db_path: str | None = None,
        *,
        connection: aiosqlite.Connection | None = None,
    ) -> None:
        self.db_path = db_path
        self._connection = connection

    async def invoke(self, parameters: dict[str, Any]) -> ToolResult:
        query_name = parameters["query"]
        query = SAFE_QUERIES.get(query_name)
        if query is None:
            return ToolResult.failure(
                f"Unknown query: {query_name}. Available queries: {', '.join(SAFE_QUERIES)}"
            )
        options: dict[str, Any] = parameters.get("parameters") or {}
        days = _bounded(options.get("days"), query.default_days, MAX_DAYS)
        bindings = {
            "window": f"-{days} days",
            "limit": _bounded(options.get("limit"), query.default_limit, MAX_LIMIT),
            "author": options.get("author"),
        }

        if self._connection is not None:
            rows = await self._fetch(self._connection, query.sql, bindings)
        elif self.db_path is not None:
            async with aiosqlite.connect(f"file:{self.db_path}?mode=ro", uri=True) as db:
                rows = await self._fetch(db, query.sql, bindings)
        else:
            return ToolResult.failure("Review data store is not configured")

        metadata: dict[str, Any] = {
            "query": query_name,
            "result_count": len(rows),
            "days": days,
        }
        if any(str(row.get("severity", "")).lower() == "critical" for row in rows):
            metadata["severity"] = "critical"
        return ToolResult.ok(rows, mime_type="application/json", metadata=metadata)

    @staticmethod
    async def _fetch(
        db: aiosqlite.Connection,
        sql: str,
        bindings: dict[str, Any],
    ) -> list[dict[str, Any]]:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(sql, bindings)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
