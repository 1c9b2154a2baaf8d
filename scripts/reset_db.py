#!/usr/bin/env python3
from __future__ import annotations

import json
import sqlite3
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from inboxai.services.config import get_settings
from inboxai.services.database import SCHEMA

DEMO_NOW = datetime(2026, 2, 13, 9, 0, 0)

TABLES = ("tickets", "invoices", "shipments", "order_positions", "orders", "customers", "ai_usage", "emails")

CUSTOMERS: list[dict[str, Any]] = [
    {
        "customer_id": 1001,
        "customer_number": "K-10234",
        "first_name": "Max",
        "last_name": "Mustermann",
        "company": "Mustermann GmbH",
        "email": "max@mustermann.de",
        "phone": "+49 30 1234567",
        "mobile": "+49 171 2345678",
        "street": "Hauptstraße 12",
        "postal_code": "10115",
        "city": "Berlin",
        "customer_since": "2019-03-01",
        "payment_method": "Rechnung",
    },
    {
        "customer_id": 1002,
        "customer_number": "K-10871",
        "first_name": "Erika",
        "last_name": "Schneider",
        "company": None,
        "email": "erika.schneider@example.org",
        "phone": "+49 89 7654321",
        "mobile": None,
        "street": "Lindenweg 4",
        "postal_code": "80331",
        "city": "München",
        "customer_since": "2022-11-15",
        "payment_method": "PayPal",
    },
    {
        "customer_id": 1003,
        "customer_number": "K-11502",
        "first_name": "Jonas",
        "last_name": "Weber",
        "company": "Weber Haustechnik",
        "email": "info@weber-haustechnik.de",
        "phone": "+49 40 5551234",
        "mobile": "+49 160 9876543",
        "street": "Am Hafen 7",
        "postal_code": "20457",
        "city": "Hamburg",
        "customer_since": "2021-06-20",
        "payment_method": "Vorkasse",
    },
]

ORDERS: list[dict[str, Any]] = [
    {"order_number": "AU-2026-0412", "customer_id": 1001, "order_date": "2026-02-02", "total": 1249.90, "status": "shipped"},
    {"order_number": "AU-2025-1877", "customer_id": 1001, "order_date": "2025-11-18", "total": 389.00, "status": "completed"},
    {"order_number": "AU-2026-0455", "customer_id": 1002, "order_date": "2026-02-09", "total": 79.95, "status": "open"},
    {"order_number": "AU-2026-0301", "customer_id": 1003, "order_date": "2026-01-21", "total": 4310.00, "status": "shipped"},
]

POSITIONS: list[dict[str, Any]] = [
    {"order_number": "AU-2026-0412", "article_number": "ART-5501", "name": "Wärmepumpe Kompakt 8kW", "quantity": 1, "unit_price": 1149.90},
    {"order_number": "AU-2026-0412", "article_number": "ART-0099", "name": "Montageset", "quantity": 1, "unit_price": 100.00},
    {"order_number": "AU-2025-1877", "article_number": "ART-2210", "name": "Thermostat Smart", "quantity": 2, "unit_price": 194.50},
    {"order_number": "AU-2026-0455", "article_number": "ART-3105", "name": "Dichtungsset", "quantity": 3, "unit_price": 26.65},
    {"order_number": "AU-2026-0301", "article_number": "ART-7700", "name": "Pufferspeicher 500L", "quantity": 2, "unit_price": 2155.00},
]

SHIPMENTS: list[dict[str, Any]] = [
    {"order_number": "AU-2026-0412", "carrier": "DHL", "tracking_id": "00340434161234567890", "shipped_at": "2026-02-04", "status": "in_transit"},
    {"order_number": "AU-2025-1877", "carrier": "DPD", "tracking_id": "01505012345678", "shipped_at": "2025-11-19", "status": "delivered"},
    {"order_number": "AU-2026-0301", "carrier": "Spedition", "tracking_id": "SP-77812", "shipped_at": "2026-01-23", "status": "delivered"},
]

INVOICES: list[dict[str, Any]] = [
    {"invoice_number": "RE-2026-0412", "order_number": "AU-2026-0412", "invoice_date": "2026-02-04", "amount": 1249.90, "paid": 0, "payment_method": "Rechnung"},
    {"invoice_number": "RE-2025-1877", "order_number": "AU-2025-1877", "invoice_date": "2025-11-19", "amount": 389.00, "paid": 1, "payment_method": "Rechnung"},
    {"invoice_number": "RE-2026-0301", "order_number": "AU-2026-0301", "invoice_date": "2026-01-21", "amount": 4310.00, "paid": 1, "payment_method": "Vorkasse"},
]

TICKETS: list[dict[str, Any]] = [
    {"customer_id": 1001, "subject": "Rückfrage Montagetermin", "status": "open", "created_at": "2026-02-05T10:12:00Z"},
    {"customer_id": 1003, "subject": "Lieferschein fehlt", "status": "closed", "created_at": "2026-01-25T08:40:00Z"},
]

EMAILS: list[dict[str, Any]] = [
    {
        "id": "mail-001",
        "subject": "Wo bleibt meine Lieferung AU-2026-0412?",
        "from_address": "max@mustermann.de",
        "from_name": "Max Mustermann",
        "text_body": (
            "Hallo,\n\nich habe am 2. Februar die Wärmepumpe bestellt (AU-2026-0412). "
            "Laut Tracking hängt das Paket seit Tagen fest. Können Sie nachsehen?\n\n"
            "Viele Grüße\nMax Mustermann"
        ),
        "html_body": None,
        "attachments": [],
    },
    {
        "id": "mail-002",
        "subject": "Dichtung defekt",
        "from_address": "erika.schneider@example.org",
        "from_name": "Erika Schneider",
        "text_body": "Guten Tag,\n\ndie gelieferte Dichtung ist gerissen, Foto anbei.\n\nMit freundlichen Grüßen\nE. Schneider",
        "html_body": None,
        "attachments": [{"filename": "dichtung.jpg", "contentType": "image/jpeg", "size": 245760}],
    },
    {
        "id": "mail-003",
        "subject": "Rechnung RE-2026-0301",
        "from_address": "info@weber-haustechnik.de",
        "from_name": "Jonas Weber",
        "text_body": None,
        "html_body": (
            "<p>Hallo,</p><p>bitte senden Sie uns die Rechnung RE-2026-0301 erneut zu.</p>"
            '<p><img src="cid:logo123" alt="Firmenlogo"></p>'
        ),
        "attachments": [],
    },
    {
        "id": "mail-004",
        "subject": "Anfrage Angebot",
        "from_address": "neu.kunde@example.com",
        "from_name": "Paula Neumann",
        "text_body": "Hallo, ich interessiere mich für eine Wärmepumpe für ein Einfamilienhaus. Was kostet die Installation?",
        "html_body": None,
        "attachments": [],
    },
    {
        "id": "mail-005",
        "subject": "(kein Betreff)",
        "from_address": "leer@example.com",
        "from_name": None,
        "text_body": "",
        "html_body": None,
        "attachments": [],
    },
]


def now_iso(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


def db_path() -> Path:
    return get_settings().resolved_database_path


def seed_database(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)
    for table in TABLES:
        conn.execute(f"DELETE FROM {table}")

    conn.executemany(
        """
        INSERT INTO customers (
            customer_id, customer_number, first_name, last_name, company, email, phone, mobile,
            street, postal_code, city, customer_since, payment_method
        )
        VALUES (
            :customer_id, :customer_number, :first_name, :last_name, :company, :email, :phone, :mobile,
            :street, :postal_code, :city, :customer_since, :payment_method
        )
        """,
        CUSTOMERS,
    )
    conn.executemany(
        """
        INSERT INTO orders (order_number, customer_id, order_date, total, status)
        VALUES (:order_number, :customer_id, :order_date, :total, :status)
        """,
        ORDERS,
    )
    conn.executemany(
        """
        INSERT INTO order_positions (order_number, article_number, name, quantity, unit_price)
        VALUES (:order_number, :article_number, :name, :quantity, :unit_price)
        """,
        POSITIONS,
    )
    conn.executemany(
        """
        INSERT INTO shipments (order_number, carrier, tracking_id, shipped_at, status)
        VALUES (:order_number, :carrier, :tracking_id, :shipped_at, :status)
        """,
        SHIPMENTS,
    )
    conn.executemany(
        """
        INSERT INTO invoices (invoice_number, order_number, invoice_date, amount, paid, payment_method)
        VALUES (:invoice_number, :order_number, :invoice_date, :amount, :paid, :payment_method)
        """,
        INVOICES,
    )
    conn.executemany(
        """
        INSERT INTO tickets (customer_id, subject, status, created_at)
        VALUES (:customer_id, :subject, :status, :created_at)
        """,
        TICKETS,
    )

    email_rows = []
    for index, email in enumerate(EMAILS):
        email_rows.append(
            {
                **email,
                "message_id": f"<{email['id']}@demo.local>",
                "attachments": json.dumps(email["attachments"], ensure_ascii=False),
                "received_at": now_iso(DEMO_NOW - timedelta(hours=index * 3)),
            }
        )
    conn.executemany(
        """
        INSERT INTO emails (
            id, message_id, subject, from_address, from_name, text_body, html_body, attachments, received_at
        )
        VALUES (
            :id, :message_id, :subject, :from_address, :from_name, :text_body, :html_body, :attachments, :received_at
        )
        """,
        email_rows,
    )


def run_integrity_checks(conn: sqlite3.Connection) -> None:
    checks = {
        "order_customer_fk": "SELECT COUNT(*) FROM orders o LEFT JOIN customers c ON o.customer_id = c.customer_id WHERE c.customer_id IS NULL",
        "position_order_fk": "SELECT COUNT(*) FROM order_positions p LEFT JOIN orders o ON p.order_number = o.order_number WHERE o.order_number IS NULL",
        "shipment_order_fk": "SELECT COUNT(*) FROM shipments s LEFT JOIN orders o ON s.order_number = o.order_number WHERE o.order_number IS NULL",
        "invoice_order_fk": "SELECT COUNT(*) FROM invoices i LEFT JOIN orders o ON i.order_number = o.order_number WHERE o.order_number IS NULL",
        "ticket_customer_fk": "SELECT COUNT(*) FROM tickets t LEFT JOIN customers c ON t.customer_id = c.customer_id WHERE c.customer_id IS NULL",
    }

    failures = []
    for name, query in checks.items():
        count = conn.execute(query).fetchone()[0]
        if count != 0:
            failures.append(f"{name} failed ({count})")

    if failures:
        raise RuntimeError("Integrity checks failed: " + "; ".join(failures))


def main() -> None:
    database_path = db_path()
    database_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(database_path)
    conn.row_factory = sqlite3.Row

    try:
        seed_database(conn)
        run_integrity_checks(conn)
        conn.commit()
    finally:
        conn.close()

    print(f"Reset complete: {database_path}")
    print("- SQLite schema rebuilt")
    print(f"- {len(CUSTOMERS)} customers, {len(ORDERS)} orders, {len(SHIPMENTS)} shipments seeded")
    print(f"- {len(EMAILS)} inbox emails without AI data")


if __name__ == "__main__":
    main()
