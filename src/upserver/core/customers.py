"""Customer management operations."""

import re
import sqlite3

from upserver.config import get_config
from upserver.core.errors import CustomerNotFound
from upserver.core.ports import validate_port_settings
from upserver.db.models import Customer, parse_dt


def slugify(name: str) -> str:
    """Convert a name to a URL-friendly slug."""
    slug = name.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def create_customer(
    db: sqlite3.Connection,
    customer_id: str,
    name: str,
    site_folder: str,
    staging_port: int | None = None,
    staging_url: str | None = None,
    github_repo: str | None = None,
    port_range: tuple[int, int] | None = None,
) -> Customer:
    """Create a new customer.

    A fixed ``staging_port`` is validated against ``port_range`` here rather
    than at allocation time. The range defaults to the configured one.
    """
    if staging_port is not None:
        _check_fixed_port(staging_port, port_range)

    db.execute(
        """INSERT INTO customers (id, name, site_folder, staging_port, staging_url, github_repo)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (customer_id, name, site_folder, staging_port, staging_url, github_repo),
    )
    db.commit()
    return get_customer(db, customer_id)


def get_customer(db: sqlite3.Connection, customer_id: str) -> Customer | None:
    """Get a customer by ID."""
    row = db.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
    if not row:
        return None
    return _row_to_customer(row)


def require_customer(db: sqlite3.Connection, customer_id: str) -> Customer:
    customer = get_customer(db, customer_id)
    if not customer:
        raise CustomerNotFound(f"Customer not found: {customer_id}")
    return customer


def list_customers(db: sqlite3.Connection) -> list[Customer]:
    """List all customers."""
    rows = db.execute("SELECT * FROM customers ORDER BY created_at DESC, id").fetchall()
    return [_row_to_customer(r) for r in rows]


def update_customer(
    db: sqlite3.Connection,
    customer_id: str,
    port_range: tuple[int, int] | None = None,
    **kwargs,
) -> Customer | None:
    """Update customer fields."""
    allowed = {"name", "site_folder", "staging_port", "staging_url", "github_repo"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_customer(db, customer_id)

    if "staging_port" in updates:
        _check_fixed_port(updates["staging_port"], port_range)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [customer_id]
    db.execute(
        f"UPDATE customers SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_customer(db, customer_id)


def clear_staging_port(db: sqlite3.Connection, customer_id: str) -> Customer | None:
    """Drop a fixed staging port so the customer is allocated from the range."""
    db.execute(
        "UPDATE customers SET staging_port = NULL, updated_at = datetime('now') WHERE id = ?",
        (customer_id,),
    )
    db.commit()
    return get_customer(db, customer_id)


def _check_fixed_port(port: int, port_range: tuple[int, int] | None) -> None:
    if port_range is None:
        config = get_config()
        port_range = (config.port_range_start, config.port_range_end)
    validate_port_settings(port_range[0], port_range[1], port)


def _row_to_customer(row: sqlite3.Row) -> Customer:
    return Customer(
        id=row["id"],
        name=row["name"],
        site_folder=row["site_folder"],
        staging_port=row["staging_port"],
        staging_url=row["staging_url"],
        github_repo=row["github_repo"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
