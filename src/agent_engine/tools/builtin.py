"""Built-in tool implementations.

Tools:
- `search`: web search through Brave, or hybrid search over the caller's
  organization documents.
- `database-query`: read-only SELECT against whitelisted tables, scoped to
  the caller's organization.
- `file-read` / `file-write`: files under the organization's storage bucket.
- `email-send`: outbound mail through a pluggable transport.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
import re
import sqlite3
from pathlib import Path
from typing import Any, Protocol

import httpx

from agent_engine.config import Settings
from agent_engine.obs.logging import get_logger
from agent_engine.tools.registry import (
    RateLimit,
    Tool,
    ToolExecutionContext,
    ToolParameter,
    ToolRegistration,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)
from agent_engine.types import HybridSearchResult

logger = get_logger(__name__)

PER_MINUTE = 60_000
MAX_FILE_SIZE = 10 * 1024 * 1024
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
RESEND_URL = "https://api.resend.com/emails"

ALLOWED_TABLES = ("documents", "agent_sessions", "messages", "api_keys", "usage_tracking")
FORBIDDEN_KEYWORDS = (
    "drop",
    "delete",
    "insert",
    "update",
    "truncate",
    "alter",
    "create",
    "grant",
    "revoke",
    "attach",
    "pragma",
)
_TABLE_REF = re.compile(r"""\b(?:from|join)\s+([\w."`\[\]]+)""")
_QUOTES = str.maketrans("", "", "\"`[]")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_TABLE_DDL = {
    "documents": "id TEXT PRIMARY KEY, organization_id TEXT NOT NULL, name TEXT, "
    "status TEXT, created_at TEXT",
    "agent_sessions": "id TEXT PRIMARY KEY, organization_id TEXT NOT NULL, user_id TEXT, "
    "title TEXT, created_at TEXT",
    "messages": "id TEXT PRIMARY KEY, organization_id TEXT NOT NULL, session_id TEXT, "
    "role TEXT, content TEXT, created_at TEXT",
    "api_keys": "id TEXT PRIMARY KEY, organization_id TEXT NOT NULL, name TEXT, "
    "created_at TEXT",
    "usage_tracking": "id TEXT PRIMARY KEY, organization_id TEXT NOT NULL, tokens INTEGER, "
    "cost REAL, created_at TEXT",
}


class DocumentSearcher(Protocol):
    async def search(self, query: str, scope: str, **options: Any) -> list[HybridSearchResult]:
        ...


class MailTransport(Protocol):
    async def send(self, payload: dict[str, Any]) -> str:
        """Deliver one message and return the provider message id."""


class ResendTransport:
    """Sends mail through the Resend HTTP API."""

    def __init__(self, api_key: str, client: httpx.AsyncClient | None = None) -> None:
        self._api_key = api_key
        self._client = client

    async def send(self, payload: dict[str, Any]) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if self._client is not None:
            response = await self._client.post(RESEND_URL, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(RESEND_URL, json=payload, headers=headers)
        response.raise_for_status()
        return str(response.json().get("id", ""))


def ensure_tables(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        for table, columns in _TABLE_DDL.items():
            conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({columns})")
        conn.commit()


def _organization_snapshot(db_path: Path, organization_id: str) -> sqlite3.Connection:
    """Copy one organization's rows of the allowed tables into a private database."""
    snapshot = sqlite3.connect(":memory:")
    snapshot.row_factory = sqlite3.Row
    source = sqlite3.connect(db_path)
    try:
        for table in ALLOWED_TABLES:
            cursor = source.execute(
                f"SELECT * FROM {table} WHERE organization_id = ?", (organization_id,)
            )
            columns = [column[0] for column in cursor.description]
            names = ", ".join(f'"{column}"' for column in columns)
            snapshot.execute(f"CREATE TABLE {table} ({names})")
            placeholders = ", ".join("?" for _ in columns)
            snapshot.executemany(f"INSERT INTO {table} VALUES ({placeholders})", cursor)
        snapshot.commit()
    except sqlite3.Error:
        snapshot.close()
        raise
    finally:
        source.close()
    return snapshot


def _authorize_read(
    action: int, table: str | None, column: str | None, database: str | None, source: str | None
) -> int:
    if action in (sqlite3.SQLITE_SELECT, sqlite3.SQLITE_FUNCTION):
        return sqlite3.SQLITE_OK
    if action == sqlite3.SQLITE_READ and database == "main" and table in ALLOWED_TABLES:
        return sqlite3.SQLITE_OK
    return sqlite3.SQLITE_DENY


def _bucket(root: Path, organization_id: str) -> Path:
    return root / f"org-{organization_id}"


def _safe_relative(path: str) -> bool:
    return bool(path) and ".." not in path and not path.startswith("/")


def _fail(error: str) -> ToolResult:
    return ToolResult(success=False, error=error)


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Settings,
    *,
    document_searcher: DocumentSearcher | None = None,
    mail_transport: MailTransport | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    """Register the default tool set with its per-minute rate limits."""

    storage_root = Path(settings.storage_root)
    db_path = Path(settings.database_path)
    ensure_tables(db_path)
    if mail_transport is None and settings.mail_api_key:
        mail_transport = ResendTransport(settings.mail_api_key, http_client)

    async def _web_search(query: str, limit: int) -> ToolResult:
        if not settings.web_search_api_key:
            return _fail("Web search API key not configured. Web search unavailable.")
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": settings.web_search_api_key,
        }
        params = {"q": query, "count": limit}
        try:
            if http_client is not None:
                response = await http_client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    response = await client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return _fail(f"Web search failed: {exc}")
        raw = response.json().get("web", {}).get("results", [])[:limit]
        results = [
            {
                "title": item.get("title"),
                "url": item.get("url"),
                "description": item.get("description"),
                "age": item.get("age"),
            }
            for item in raw
        ]
        return ToolResult(
            success=True,
            data={"query": query, "results": results, "count": len(results)},
            metadata={"searchType": "web", "provider": "brave"},
        )

    async def _document_search(
        query: str, limit: int, context: ToolExecutionContext
    ) -> ToolResult:
        if document_searcher is None:
            return _fail("Document search unavailable: no knowledge base configured")
        hits = await document_searcher.search(query, context.organization_id)
        results = [
            {
                "id": hit.id,
                "documentId": hit.document_id,
                "chunkIndex": hit.chunk_index,
                "content": hit.content,
                "score": hit.score,
                "source": hit.source,
            }
            for hit in hits[:limit]
        ]
        return ToolResult(
            success=True,
            data={"query": query, "results": results, "count": len(results)},
            metadata={"searchType": "documents", "organizationId": context.organization_id},
        )

    async def _search(args: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        limit = max(1, int(args.get("limit", 10)))
        if args.get("searchType", "web") == "web":
            return await _web_search(args["query"], limit)
        return await _document_search(args["query"], limit, context)

    def _run_query(query: str, params: list[Any], organization_id: str) -> list[dict[str, Any]]:
        snapshot = _organization_snapshot(db_path, organization_id)
        try:
            snapshot.execute("PRAGMA query_only = ON")
            snapshot.set_authorizer(_authorize_read)
            rows = snapshot.execute(query, params).fetchall()
        finally:
            snapshot.close()
        return [dict(row) for row in rows]

    async def _database_query(args: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        query: str = args["query"]
        params = list(args.get("params") or [])
        normalized = query.strip().lower()
        if not normalized.startswith("select"):
            return _fail("Only SELECT queries are allowed")
        for keyword in FORBIDDEN_KEYWORDS:
            if re.search(rf"\b{keyword}\b", normalized):
                return _fail(f"Query contains forbidden keyword: {keyword}")
        tables = [ref.translate(_QUOTES) for ref in _TABLE_REF.findall(normalized)]
        for table in tables:
            if table not in ALLOWED_TABLES:
                return _fail(f'Access to table "{table}" is not allowed')
        try:
            rows = await asyncio.to_thread(_run_query, query, params, context.organization_id)
        except sqlite3.Error as exc:
            return _fail(f"Database error: {exc}")
        return ToolResult(
            success=True,
            data={"results": rows, "rowCount": len(rows)},
            metadata={
                "organizationId": context.organization_id,
                "table": tables[0] if tables else None,
            },
        )

    async def _file_read(args: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        path: str = args["path"]
        encoding = args.get("encoding", "utf-8")
        if not _safe_relative(path):
            return _fail("Invalid file path")
        bucket = _bucket(storage_root, context.organization_id)
        target = bucket / path
        if not target.is_file():
            return _fail("File not found")
        raw = await asyncio.to_thread(target.read_bytes)
        if encoding == "base64":
            content = base64.b64encode(raw).decode("ascii")
        else:
            try:
                content = raw.decode("utf-8")
            except UnicodeDecodeError:
                return _fail("File read failed: content is not valid utf-8")
        return ToolResult(
            success=True,
            data={
                "path": path,
                "content": content,
                "encoding": encoding,
                "size": len(raw),
                "type": mimetypes.guess_type(path)[0] or "application/octet-stream",
            },
            metadata={"organizationId": context.organization_id, "bucket": bucket.name},
        )

    async def _file_write(args: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        path: str = args["path"]
        content: str = args["content"]
        encoding = args.get("encoding", "utf-8")
        if not _safe_relative(path):
            return _fail("Invalid file path")
        if encoding == "base64":
            try:
                payload = base64.b64decode(content, validate=True)
            except binascii.Error:
                return _fail("File write failed: content is not valid base64")
        else:
            payload = content.encode("utf-8")
        if len(payload) > MAX_FILE_SIZE:
            return _fail(
                f"File size ({len(payload)} bytes) exceeds maximum allowed size "
                f"({MAX_FILE_SIZE} bytes)"
            )
        bucket = _bucket(storage_root, context.organization_id)
        target = bucket / path
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, payload)
        return ToolResult(
            success=True,
            data={"path": path, "size": len(payload), "bucket": bucket.name},
            metadata={"organizationId": context.organization_id, "encoding": encoding},
        )

    async def _email_send(args: dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        html = args.get("html")
        text = args.get("text")
        if not html and not text:
            return _fail("Either html or text content must be provided")
        if mail_transport is None:
            return _fail("Mail API key not configured. Email sending unavailable.")
        recipient: str = args["to"]
        if not _EMAIL.match(recipient):
            return _fail(f"Invalid email address: {recipient}")
        sender = args.get("from") or settings.mail_from
        payload: dict[str, Any] = {"from": sender, "to": [recipient], "subject": args["subject"]}
        if html:
            payload["html"] = html
        if text:
            payload["text"] = text
        try:
            message_id = await mail_transport.send(payload)
        except httpx.HTTPError as exc:
            return _fail(f"Email send failed: {exc}")
        return ToolResult(
            success=True,
            data={"id": message_id, "from": sender, "to": [recipient], "subject": args["subject"]},
            metadata={"organizationId": context.organization_id},
        )

    encoding_param = ToolParameter(
        type="string",
        description="Content encoding (utf-8 or base64)",
        default="utf-8",
        enum=["utf-8", "base64"],
    )
    builtins = [
        (
            ToolSchema(
                name="search",
                description="Search the web or internal documents for information",
                parameters={
                    "query": ToolParameter(
                        type="string", description="The search query", required=True
                    ),
                    "limit": ToolParameter(
                        type="number",
                        description="Maximum number of results to return (default: 10)",
                        default=10,
                    ),
                    "searchType": ToolParameter(
                        type="string",
                        description="Type of search to perform",
                        default="web",
                        enum=["web", "documents"],
                    ),
                },
            ),
            _search,
            20,
        ),
        (
            ToolSchema(
                name="database-query",
                description="Execute read-only database queries scoped to the organization",
                parameters={
                    "query": ToolParameter(
                        type="string",
                        description="SQL query to execute (SELECT only)",
                        required=True,
                    ),
                    "params": ToolParameter(
                        type="array", description="Query parameters for parameterized queries"
                    ),
                },
            ),
            _database_query,
            50,
        ),
        (
            ToolSchema(
                name="file-read",
                description="Read a file from organization storage",
                parameters={
                    "path": ToolParameter(
                        type="string",
                        description="Path to the file (relative to organization bucket)",
                        required=True,
                    ),
                    "encoding": encoding_param,
                },
            ),
            _file_read,
            100,
        ),
        (
            ToolSchema(
                name="file-write",
                description="Write a file to organization storage",
                parameters={
                    "path": ToolParameter(
                        type="string",
                        description="Path where the file will be saved (relative to organization bucket)",
                        required=True,
                    ),
                    "content": ToolParameter(
                        type="string", description="File content to write", required=True
                    ),
                    "encoding": encoding_param,
                },
            ),
            _file_write,
            30,
        ),
        (
            ToolSchema(
                name="email-send",
                description="Send an email",
                parameters={
                    "to": ToolParameter(
                        type="string", description="Recipient email address", required=True
                    ),
                    "subject": ToolParameter(
                        type="string", description="Email subject", required=True
                    ),
                    "html": ToolParameter(type="string", description="HTML email content"),
                    "text": ToolParameter(type="string", description="Plain text email content"),
                    "from": ToolParameter(
                        type="string", description="Sender email (defaults to configured sender)"
                    ),
                },
            ),
            _email_send,
            10,
        ),
    ]
    for schema, handler, per_minute in builtins:
        registry.register(
            schema.name,
            ToolRegistration(
                tool=Tool(schema=schema, handler=handler),
                rate_limit=RateLimit(max_calls=per_minute, window_ms=PER_MINUTE),
            ),
        )
