from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from inboxai.services.database import connect_db, fetchall, fetchone
from inboxai.services.errors import ToolExecutionError

logger = logging.getLogger(__name__)


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _function(
        "find_customer",
        "Sucht einen Kunden per Name, Firma, E-Mail oder Kundennummer. "
        "IMMER als erstes nutzen um den Kunden zu identifizieren.",
        {"search": {"type": "string", "description": "Suchbegriff (Name, Firma, E-Mail oder Kundennummer)"}},
        ["search"],
    ),
    _function(
        "find_customer_by_email",
        "Findet einen Kunden über seine exakte E-Mail-Adresse. Schneller als find_customer wenn die E-Mail bekannt ist.",
        {"email": {"type": "string", "description": "Exakte E-Mail-Adresse des Kunden"}},
        ["email"],
    ),
    _function(
        "get_customer_orders",
        "Zeigt die letzten Aufträge eines Kunden mit Versand- und Rechnungsstatus.",
        {
            "customer_id": {"type": "number", "description": "Kunden-ID aus find_customer"},
            "limit": {"type": "number", "description": "Anzahl Aufträge (default 10, max 50)"},
        },
        ["customer_id"],
    ),
    _function(
        "get_order_details",
        "Zeigt alle Details eines Auftrags: Kopfdaten + bestellte Artikel/Positionen.",
        {"order_number": {"type": "string", "description": "Auftragsnummer z.B. AU-12345"}},
        ["order_number"],
    ),
    _function(
        "get_order_shipping",
        "Zeigt Versandstatus, Trackingnummer und Versanddienstleister eines Auftrags.",
        {"order_number": {"type": "string", "description": "Auftragsnummer"}},
        ["order_number"],
    ),
    _function(
        "get_order_invoice",
        "Zeigt Rechnungsinfos: Rechnungsnummer, Zahlungsstatus, Zahlungsart.",
        {"order_number": {"type": "string", "description": "Auftragsnummer"}},
        ["order_number"],
    ),
    _function(
        "get_customer_tickets",
        "Zeigt offene Support-Tickets eines Kunden.",
        {"customer_id": {"type": "number", "description": "Kunden-ID"}},
        ["customer_id"],
    ),
    _function(
        "get_customer_full_context",
        "Lädt den kompletten Kundenkontext auf einmal: Stammdaten, Bestellstatistik, offene Tickets. "
        "Nutze dies für einen schnellen Gesamtüberblick.",
        {"email": {"type": "string", "description": "E-Mail-Adresse des Kunden"}},
        ["email"],
    ),
]

TOOL_NAMES: tuple[str, ...] = tuple(tool["function"]["name"] for tool in TOOL_DEFINITIONS)


class ToolExecutor(Protocol):
    async def execute(self, tool_name: str, args: dict[str, Any]) -> Any:
        ...


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or not str(value).strip():
        raise ToolExecutionError(f"Missing argument: {key}")
    return str(value).strip()


def _require_int(args: dict[str, Any], key: str) -> int:
    value = args.get(key)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ToolExecutionError(f"Argument {key} must be a number") from exc


def _clamp_limit(value: Any, default: int = 10) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(limit, 50))


class BusinessToolExecutor:
    """Read-only lookups against the business database (customers, orders, shipping, invoices, tickets)."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path

    async def execute(self, tool_name: str, args: dict[str, Any]) -> Any:
        handler = getattr(self, f"_tool_{tool_name}", None)
        if tool_name not in TOOL_NAMES or handler is None:
            raise ToolExecutionError(f"Unknown tool: {tool_name}")

        logger.debug("Executing tool %s with %s", tool_name, args)
        conn = await connect_db(self.db_path)
        try:
            return await handler(conn, args)
        finally:
            await conn.close()

    async def _tool_find_customer(self, conn, args: dict[str, Any]) -> list[dict[str, Any]]:
        search = _require_str(args, "search")
        pattern = f"%{search.lower()}%"
        rows = await fetchall(
            conn,
            """
            SELECT customer_id, customer_number, first_name, last_name, company, email, phone, city
            FROM customers
            WHERE lower(first_name || ' ' || last_name) LIKE ?
               OR lower(coalesce(company, '')) LIKE ?
               OR lower(coalesce(email, '')) LIKE ?
               OR customer_number = ?
            ORDER BY customer_id
            LIMIT 10
            """,
            (pattern, pattern, pattern, search),
        )
        return [dict(row) for row in rows]

    async def _tool_find_customer_by_email(self, conn, args: dict[str, Any]) -> Optional[dict[str, Any]]:
        email = _require_str(args, "email")
        row = await fetchone(
            conn,
            "SELECT * FROM customers WHERE lower(email) = lower(?)",
            (email,),
        )
        return dict(row) if row else None

    async def _tool_get_customer_orders(self, conn, args: dict[str, Any]) -> list[dict[str, Any]]:
        customer_id = _require_int(args, "customer_id")
        limit = _clamp_limit(args.get("limit"))
        rows = await fetchall(
            conn,
            """
            SELECT o.order_number, o.order_date, o.total, o.status,
                   s.status AS shipping_status, s.tracking_id,
                   i.invoice_number, i.paid
            FROM orders o
            LEFT JOIN shipments s ON s.order_number = o.order_number
            LEFT JOIN invoices i ON i.order_number = o.order_number
            WHERE o.customer_id = ?
            ORDER BY o.order_date DESC
            LIMIT ?
            """,
            (customer_id, limit),
        )
        return [dict(row) for row in rows]

    async def _tool_get_order_details(self, conn, args: dict[str, Any]) -> dict[str, Any]:
        order_number = _require_str(args, "order_number")
        header = await fetchone(conn, "SELECT * FROM orders WHERE order_number = ?", (order_number,))
        if header is None:
            return {"header": None, "positions": []}
        positions = await fetchall(
            conn,
            """
            SELECT article_number, name, quantity, unit_price
            FROM order_positions
            WHERE order_number = ?
            ORDER BY id
            """,
            (order_number,),
        )
        return {"header": dict(header), "positions": [dict(row) for row in positions]}

    async def _tool_get_order_shipping(self, conn, args: dict[str, Any]) -> list[dict[str, Any]]:
        order_number = _require_str(args, "order_number")
        rows = await fetchall(
            conn,
            """
            SELECT order_number, carrier, tracking_id, shipped_at, status
            FROM shipments
            WHERE order_number = ?
            ORDER BY id
            """,
            (order_number,),
        )
        return [dict(row) for row in rows]

    async def _tool_get_order_invoice(self, conn, args: dict[str, Any]) -> list[dict[str, Any]]:
        order_number = _require_str(args, "order_number")
        rows = await fetchall(
            conn,
            """
            SELECT invoice_number, invoice_date, amount, paid, payment_method
            FROM invoices
            WHERE order_number = ?
            """,
            (order_number,),
        )
        return [dict(row) for row in rows]

    async def _tool_get_customer_tickets(self, conn, args: dict[str, Any]) -> list[dict[str, Any]]:
        customer_id = _require_int(args, "customer_id")
        rows = await fetchall(
            conn,
            """
            SELECT id, subject, status, created_at
            FROM tickets
            WHERE customer_id = ? AND status = 'open'
            ORDER BY created_at DESC
            """,
            (customer_id,),
        )
        return [dict(row) for row in rows]

    async def _tool_get_customer_full_context(self, conn, args: dict[str, Any]) -> Optional[dict[str, Any]]:
        customer = await self._tool_find_customer_by_email(conn, args)
        if customer is None:
            return None

        stats = await fetchone(
            conn,
            """
            SELECT COUNT(*) AS order_count,
                   ROUND(COALESCE(SUM(total), 0), 2) AS revenue,
                   MAX(order_date) AS last_order_date
            FROM orders
            WHERE customer_id = ?
            """,
            (customer["customer_id"],),
        )
        open_tickets = await fetchone(
            conn,
            "SELECT COUNT(*) AS open_tickets FROM tickets WHERE customer_id = ? AND status = 'open'",
            (customer["customer_id"],),
        )
        return customer | dict(stats) | dict(open_tickets)
