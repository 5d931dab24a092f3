"""Job store helpers backed by Postgres.

The tables are provisioned outside the worker; ``worker/sql/schema.sql``
documents the columns and the ``(job_id, lower(name))`` unique index the
statements below rely on.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
from psycopg2 import extras, pool

from leadfinder.core.config import get_settings, require
from leadfinder.core.errors import StorageError
from leadfinder.core.models import (
    TERMINAL_STATUSES,
    VERIFIED_CONFIDENCE,
    B2BTargeting,
    Business,
    BusinessCandidate,
    Job,
)

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 10) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=require(settings.database_url, "DATABASE_URL"),
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except psycopg2.Error as exc:
        logger.error("%s failed: %s", operation, exc)
        raise StorageError(operation, str(exc).strip()) from exc


def _execute(operation: str, sql: str, params: Dict[str, Any], *, fetch: str = "none") -> Any:
    with _storage_errors(operation):
        with get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    if fetch == "one":
                        result = cur.fetchone()
                    elif fetch == "all":
                        result = cur.fetchall()
                    else:
                        result = cur.rowcount
                conn.commit()
            except psycopg2.Error:
                conn.rollback()
                raise
    return result


# ---------- Jobs ----------

_INSERT_JOB = """
INSERT INTO jobs (
    id,
    query,
    location,
    target_count,
    status,
    progress,
    message,
    priority,
    industry_category,
    company_size_min,
    company_size_max,
    target_state,
    b2c_only,
    created_at,
    updated_at
) VALUES (
    %(id)s,
    %(query)s,
    %(location)s,
    %(target_count)s,
    %(status)s,
    %(progress)s,
    %(message)s,
    %(priority)s,
    %(industry_category)s,
    %(company_size_min)s,
    %(company_size_max)s,
    %(target_state)s,
    %(b2c_only)s,
    NOW(),
    NOW()
);
"""

# Terminal rows are never rewritten, except failed -> running on a retry.
# GREATEST keeps progress monotonic no matter which writer lands last.
_UPDATE_JOB_STATUS = """
UPDATE jobs SET
    status = %(status)s,
    progress = GREATEST(progress, %(progress)s),
    message = %(message)s,
    completed_at = CASE WHEN %(terminal)s THEN NOW() ELSE completed_at END,
    updated_at = NOW()
WHERE id = %(id)s
  AND status NOT IN ('completed', 'cancelled')
  AND NOT (status = 'failed' AND %(status)s <> 'running');
"""

_UPDATE_JOB_PROGRESS = """
UPDATE jobs SET
    progress = GREATEST(progress, %(progress)s),
    message = COALESCE(%(message)s, message),
    updated_at = NOW()
WHERE id = %(id)s AND status = 'running';
"""


def _job_from_row(row: Dict[str, Any]) -> Job:
    return Job(
        id=row["id"],
        query=row["query"],
        location=row.get("location"),
        target_count=row["target_count"],
        priority=row.get("priority") or "normal",
        status=row.get("status") or "pending",
        progress=row.get("progress") or 0,
        message=row.get("message"),
        targeting=B2BTargeting(
            industry_category=row.get("industry_category"),
            company_size_min=row.get("company_size_min"),
            company_size_max=row.get("company_size_max"),
            target_state=row.get("target_state"),
            b2c_only=bool(row.get("b2c_only", True)),
        ),
        created_at=row.get("created_at"),
        completed_at=row.get("completed_at"),
    )


def create_job(job: Job) -> None:
    params = {
        "id": job.id,
        "query": job.query,
        "location": job.location,
        "target_count": job.target_count,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "priority": job.priority,
        "industry_category": job.targeting.industry_category,
        "company_size_min": job.targeting.company_size_min,
        "company_size_max": job.targeting.company_size_max,
        "target_state": job.targeting.target_state,
        "b2c_only": job.targeting.b2c_only,
    }
    _execute("create_job", _INSERT_JOB, params)
    logger.debug("Inserted job %s", job.id)


def get_job(job_id: str) -> Optional[Job]:
    row = _execute("get_job", "SELECT * FROM jobs WHERE id = %(id)s", {"id": job_id}, fetch="one")
    return _job_from_row(row) if row else None


def update_job_status(job_id: str, status: str, progress: int, message: Optional[str]) -> bool:
    """Persist a status change; returns False when the row was terminal or missing."""
    params = {
        "id": job_id,
        "status": status,
        "progress": max(0, min(100, int(progress))),
        "message": message,
        "terminal": status in TERMINAL_STATUSES,
    }
    return _execute("update_job_status", _UPDATE_JOB_STATUS, params) > 0


def update_job_progress(job_id: str, progress: int, message: Optional[str]) -> bool:
    """Move progress forward on a running job; returns False for any other status."""
    params = {"id": job_id, "progress": max(0, min(100, int(progress))), "message": message}
    return _execute("update_job_progress", _UPDATE_JOB_PROGRESS, params) > 0


def find_stale_jobs(older_than_minutes: int) -> List[Job]:
    rows = _execute(
        "find_stale_jobs",
        """
        SELECT * FROM jobs
        WHERE status IN ('pending', 'running')
          AND updated_at < NOW() - (%(minutes)s * INTERVAL '1 minute')
        ORDER BY updated_at ASC
        """,
        {"minutes": older_than_minutes},
        fetch="all",
    )
    return [_job_from_row(row) for row in rows]


# ---------- Businesses ----------

_INSERT_BUSINESS = """
INSERT INTO businesses (
    job_id,
    name,
    website,
    email,
    email_source,
    email_confidence,
    phone,
    address,
    instagram,
    rating,
    review_count,
    years_in_business,
    source,
    employee_count,
    industry_code,
    is_b2b
) VALUES (
    %(job_id)s,
    %(name)s,
    %(website)s,
    %(email)s,
    %(email_source)s,
    %(email_confidence)s,
    %(phone)s,
    %(address)s,
    %(instagram)s,
    %(rating)s,
    %(review_count)s,
    %(years_in_business)s,
    %(source)s,
    %(employee_count)s,
    %(industry_code)s,
    %(is_b2b)s
)
ON CONFLICT (job_id, LOWER(name)) DO NOTHING
RETURNING id;
"""

_UPDATE_BUSINESS_EMAIL = """
UPDATE businesses
SET email = %(email)s,
    email_source = %(email_source)s,
    email_confidence = %(email_confidence)s
WHERE id = %(id)s AND (email IS NULL OR email_confidence < %(email_confidence)s);
"""

_BUSINESS_FIELDS = (
    "job_id",
    "name",
    "website",
    "email",
    "email_source",
    "email_confidence",
    "phone",
    "address",
    "instagram",
    "rating",
    "review_count",
    "years_in_business",
    "source",
    "employee_count",
    "industry_code",
    "is_b2b",
)


def _business_from_row(row: Dict[str, Any]) -> Business:
    return Business(
        id=row["id"],
        job_id=row["job_id"],
        name=row["name"],
        source=row.get("source") or "unknown",
        website=row.get("website"),
        phone=row.get("phone"),
        address=row.get("address"),
        rating=row.get("rating"),
        review_count=row.get("review_count"),
        employee_count=row.get("employee_count"),
        industry_code=row.get("industry_code"),
        is_b2b=bool(row.get("is_b2b")),
        email=row.get("email"),
        email_source=row.get("email_source"),
        email_confidence=float(row.get("email_confidence") or 0.0),
        years_in_business=row.get("years_in_business"),
        instagram=row.get("instagram"),
        created_at=row.get("created_at"),
    )


def add_business(job_id: str, candidate: BusinessCandidate) -> Optional[int]:
    """Insert a deduplicated business; returns its id, or None if the name already exists."""
    if not candidate.name:
        raise ValueError("name is required for add_business")
    row = candidate.to_row(job_id)
    params = {name: row.get(name) for name in _BUSINESS_FIELDS}
    inserted = _execute("add_business", _INSERT_BUSINESS, params, fetch="one")
    if not inserted:
        logger.debug("Business %s already stored for job %s", candidate.name, job_id)
        return None
    return inserted["id"]


def get_businesses(job_id: str) -> List[Business]:
    rows = _execute(
        "get_businesses",
        "SELECT * FROM businesses WHERE job_id = %(job_id)s ORDER BY email_confidence DESC, id ASC",
        {"job_id": job_id},
        fetch="all",
    )
    return [_business_from_row(row) for row in rows]


def get_businesses_since(job_id: str, last_id: int = 0) -> List[Business]:
    rows = _execute(
        "get_businesses_since",
        "SELECT * FROM businesses WHERE job_id = %(job_id)s AND id > %(last_id)s ORDER BY id ASC",
        {"job_id": job_id, "last_id": last_id},
        fetch="all",
    )
    return [_business_from_row(row) for row in rows]


def get_business_count(job_id: str) -> int:
    row = _execute(
        "get_business_count",
        "SELECT COUNT(*) AS count FROM businesses WHERE job_id = %(job_id)s",
        {"job_id": job_id},
        fetch="one",
    )
    return int(row["count"]) if row else 0


def get_email_stats(job_id: str) -> Dict[str, int]:
    row = _execute(
        "get_email_stats",
        """
        SELECT
            COUNT(*) AS total,
            COUNT(email) AS with_email,
            COUNT(*) FILTER (WHERE email_confidence >= %(verified)s) AS verified
        FROM businesses
        WHERE job_id = %(job_id)s
        """,
        {"job_id": job_id, "verified": VERIFIED_CONFIDENCE},
        fetch="one",
    )
    row = row or {}
    return {
        "total": int(row.get("total") or 0),
        "with_email": int(row.get("with_email") or 0),
        "verified": int(row.get("verified") or 0),
    }


def update_business_email(business_id: int, email: str, email_source: str, email_confidence: float) -> bool:
    params = {
        "id": business_id,
        "email": email,
        "email_source": email_source,
        "email_confidence": email_confidence,
    }
    return _execute("update_business_email", _UPDATE_BUSINESS_EMAIL, params) > 0


def ping() -> bool:
    row = _execute("ping", "SELECT 1 AS ok", {}, fetch="one")
    return bool(row and row.get("ok") == 1)
