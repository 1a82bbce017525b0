import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from models import Review, Stage, User

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional in local sqlite-only runs
    psycopg = None
    dict_row = None


USER_COLUMNS = (
    "user_id",
    "is_active",
    "stage",
    "current_day",
    "support_step",
    "last_morning_sent_key",
    "last_evening_sent_key",
    "awaiting_review",
    "review_postponed",
    "pending_payment_id",
    "pending_plan",
    "last_payment_id",
    "schema_version",
)


def _is_postgres(db_path: str) -> bool:
    return db_path.startswith("postgres://") or db_path.startswith("postgresql://")


def _sql(db_path: str, query: str) -> str:
    if _is_postgres(db_path):
        return query.replace("?", "%s")
    return query


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def get_conn(db_path: str):
    if _is_postgres(db_path):
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres DB_PATH")
        conn = psycopg.connect(db_path, row_factory=dict_row)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()
        return

    conn = sqlite3.connect(db_path)
    conn.row_factory = lambda cursor, row: {col[0]: row[idx] for idx, col in enumerate(cursor.description)}
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    if _is_postgres(db_path):
        user_id_type = "BIGINT"
        review_id = "id BIGSERIAL PRIMARY KEY"
    else:
        user_id_type = "INTEGER"
        review_id = "id INTEGER PRIMARY KEY AUTOINCREMENT"

    statements = [
        f"""
        CREATE TABLE IF NOT EXISTS users (
            user_id {user_id_type} PRIMARY KEY,
            is_active INTEGER NOT NULL DEFAULT 0,
            stage TEXT NOT NULL DEFAULT 'none',
            current_day INTEGER NOT NULL DEFAULT 1,
            support_step INTEGER NOT NULL DEFAULT 1,
            last_morning_sent_key TEXT,
            last_evening_sent_key TEXT,
            awaiting_review INTEGER NOT NULL DEFAULT 0,
            review_postponed INTEGER NOT NULL DEFAULT 0,
            pending_payment_id TEXT,
            pending_plan TEXT,
            last_payment_id TEXT,
            schema_version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS deliveries (
            user_id {user_id_type} NOT NULL,
            kind TEXT NOT NULL,
            send_key TEXT NOT NULL,
            created_at TEXT NOT NULL,
            sent_at TEXT,
            error TEXT,
            PRIMARY KEY (user_id, kind, send_key)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS reviews (
            {review_id},
            user_id {user_id_type} NOT NULL,
            text TEXT NOT NULL,
            stage TEXT,
            current_day INTEGER,
            created_at TEXT NOT NULL
        )
        """,
    ]
    with get_conn(db_path) as conn:
        for stmt in statements:
            conn.execute(stmt)


# Users


def get_user(db_path: str, user_id: int) -> User | None:
    with get_conn(db_path) as conn:
        row = conn.execute(_sql(db_path, "SELECT * FROM users WHERE user_id = ?"), (user_id,)).fetchone()
    if not row:
        return None
    return User.from_row(row)


def upsert_user(db_path: str, user: User) -> User:
    row = user.to_row()
    cols = ", ".join(USER_COLUMNS) + ", updated_at"
    placeholders = ", ".join("?" for _ in USER_COLUMNS) + ", ?"
    updates = ", ".join(f"{col} = excluded.{col}" for col in USER_COLUMNS if col != "user_id")
    values = [row[col] for col in USER_COLUMNS] + [_now_iso()]
    with get_conn(db_path) as conn:
        conn.execute(
            _sql(
                db_path,
                f"""
                INSERT INTO users ({cols}) VALUES ({placeholders})
                ON CONFLICT (user_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at
                """,
            ),
            values,
        )
    return user


def list_users(db_path: str) -> list[User]:
    with get_conn(db_path) as conn:
        rows = conn.execute("SELECT * FROM users ORDER BY user_id").fetchall()
    return [User.from_row(row) for row in rows]


def ensure_user(db_path: str, user_id: int) -> User:
    """Get-or-create. New records start inactive with no program."""
    with get_conn(db_path) as conn:
        conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO users (user_id, is_active, stage, updated_at)
                VALUES (?, 0, ?, ?)
                ON CONFLICT (user_id) DO NOTHING
                """,
            ),
            (user_id, Stage.NONE.value, _now_iso()),
        )
        row = conn.execute(_sql(db_path, "SELECT * FROM users WHERE user_id = ?"), (user_id,)).fetchone()
    return User.from_row(row)


# Delivery ledger


def claim_delivery(db_path: str, user_id: int, kind: str, send_key: str, retry_unsent: bool = False) -> bool:
    """Reserve (user, kind, send_key). True only for the caller that created the claim.

    With ``retry_unsent`` a claim whose send failed earlier (no ``sent_at``,
    ``error`` set) is handed out once more; clearing the error is the
    atomic step, so concurrent callers still get a single winner.
    """
    kind = getattr(kind, "value", kind)
    with get_conn(db_path) as conn:
        cur = conn.execute(
            _sql(
                db_path,
                """
                INSERT INTO deliveries (user_id, kind, send_key, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, kind, send_key) DO NOTHING
                """,
            ),
            (user_id, kind, send_key, _now_iso()),
        )
        if getattr(cur, "rowcount", 0) == 1:
            return True
        if not retry_unsent:
            return False
        cur = conn.execute(
            _sql(
                db_path,
                """
                UPDATE deliveries SET error = NULL
                WHERE user_id = ? AND kind = ? AND send_key = ?
                  AND sent_at IS NULL AND error IS NOT NULL
                """,
            ),
            (user_id, kind, send_key),
        )
        return getattr(cur, "rowcount", 0) == 1


def mark_delivery_sent(db_path: str, user_id: int, kind: str, send_key: str) -> None:
    kind = getattr(kind, "value", kind)
    with get_conn(db_path) as conn:
        conn.execute(
            _sql(
                db_path,
                """
                UPDATE deliveries SET sent_at = COALESCE(sent_at, ?), error = NULL
                WHERE user_id = ? AND kind = ? AND send_key = ?
                """,
            ),
            (_now_iso(), user_id, kind, send_key),
        )


def mark_delivery_error(db_path: str, user_id: int, kind: str, send_key: str, error_text: str) -> None:
    kind = getattr(kind, "value", kind)
    with get_conn(db_path) as conn:
        conn.execute(
            _sql(db_path, "UPDATE deliveries SET error = ? WHERE user_id = ? AND kind = ? AND send_key = ?"),
            (error_text or "error", user_id, kind, send_key),
        )


def get_delivery(db_path: str, user_id: int, kind: str, send_key: str) -> dict[str, Any] | None:
    kind = getattr(kind, "value", kind)
    with get_conn(db_path) as conn:
        return conn.execute(
            _sql(db_path, "SELECT * FROM deliveries WHERE user_id = ? AND kind = ? AND send_key = ?"),
            (user_id, kind, send_key),
        ).fetchone()


def get_delivery_stats_by_day(db_path: str, send_key: str) -> dict[str, Any]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            _sql(
                db_path,
                """
                SELECT
                    kind,
                    COUNT(*) AS total,
                    SUM(CASE WHEN sent_at IS NOT NULL THEN 1 ELSE 0 END) AS sent,
                    SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END) AS errors
                FROM deliveries
                WHERE send_key = ?
                GROUP BY kind
                """,
            ),
            (send_key,),
        ).fetchall()

    by_kind = {
        row["kind"]: {
            "total": int(row["total"] or 0),
            "sent": int(row["sent"] or 0),
            "errors": int(row["errors"] or 0),
        }
        for row in rows
    }
    return {
        "send_key": send_key,
        "by_kind": by_kind,
        "total_all": sum(s["total"] for s in by_kind.values()),
        "sent_all": sum(s["sent"] for s in by_kind.values()),
        "errors_all": sum(s["errors"] for s in by_kind.values()),
    }


# Reviews


def add_review(db_path: str, review: Review) -> int:
    stage = review.stage.value if isinstance(review.stage, Stage) else review.stage
    values = (review.user_id, (review.text or "").strip(), stage, review.current_day, _now_iso())
    with get_conn(db_path) as conn:
        if _is_postgres(db_path):
            row = conn.execute(
                _sql(
                    db_path,
                    """
                    INSERT INTO reviews (user_id, text, stage, current_day, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    RETURNING id
                    """,
                ),
                values,
            ).fetchone()
            return int(row["id"])
        cur = conn.execute(
            "INSERT INTO reviews (user_id, text, stage, current_day, created_at) VALUES (?, ?, ?, ?, ?)",
            values,
        )
        return int(cur.lastrowid)


def count_reviews(db_path: str) -> int:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT COUNT(*) AS c FROM reviews").fetchone()
    return int(row["c"] or 0)
