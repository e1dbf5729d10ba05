import sqlite3
import logging
import datetime
import threading

logger = logging.getLogger("DBManager")

# Set by init_db(); the sink is a no-op until then.
DB_FILE = ""

db_lock = threading.Lock()


def enabled() -> bool:
    return bool(DB_FILE)


def get_connection():
    """SQLite connection in WAL mode so the dashboard can read while the sentry writes."""
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def init_db(path: str):
    """Points the sink at `path` and creates the tables. Idempotent."""
    global DB_FILE
    DB_FILE = path
    if not DB_FILE:
        return
    with db_lock:
        conn = get_connection()
        cursor = conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT,
                borrower TEXT,
                debt_asset TEXT,
                collateral_asset TEXT,
                expected_profit_usd REAL,
                priority_fee_wei TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT,
                message TEXT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS live_targets (
                address TEXT PRIMARY KEY,
                health_factor REAL,
                total_debt_usd REAL,
                total_collateral_usd REAL,
                status TEXT,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sentry_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle INTEGER,
                evaluated INTEGER,
                priority_count INTEGER,
                candidates INTEGER,
                exec_ready INTEGER,
                scan_time_ms REAL,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        conn.commit()
        conn.close()


def log_event(level, message):
    if not enabled():
        return
    try:
        with db_lock:
            conn = get_connection()
            conn.execute("INSERT INTO logs (level, message) VALUES (?, ?)", (level, message))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"❌ DB Log Error: {e}")


def record_execution(tx_hash, borrower, debt_asset, collateral_asset, expected_profit_usd, priority_fee_wei):
    if not enabled():
        return
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO executions (tx_hash, borrower, debt_asset, collateral_asset, expected_profit_usd, priority_fee_wei)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (tx_hash, borrower, debt_asset, collateral_asset, expected_profit_usd, str(priority_fee_wei)))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"❌ Failed to record execution {tx_hash}: {e}")


def update_live_targets(candidates):
    """
    Batch UPSERT of the cycle's candidates in one transaction.

    Args:
        candidates: iterable of classifier.Candidate
    """
    if not enabled():
        return
    now = datetime.datetime.now(datetime.timezone.utc).isoformat()
    rows = [(c.borrower, c.health_factor, c.debt_usd, c.collateral_usd, c.status, now) for c in candidates]
    if not rows:
        return
    try:
        with db_lock:
            conn = get_connection()
            conn.executemany('''
                INSERT INTO live_targets (address, health_factor, total_debt_usd, total_collateral_usd, status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    health_factor = excluded.health_factor,
                    total_debt_usd = excluded.total_debt_usd,
                    total_collateral_usd = excluded.total_collateral_usd,
                    status = excluded.status,
                    updated_at = excluded.updated_at
            ''', rows)
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"❌ update_live_targets Error: {e}")


def log_sentry_metric(cycle, evaluated, priority_count, candidates, exec_ready, scan_time_ms):
    if not enabled():
        return
    try:
        with db_lock:
            conn = get_connection()
            conn.execute('''
                INSERT INTO sentry_metrics (cycle, evaluated, priority_count, candidates, exec_ready, scan_time_ms)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (cycle, evaluated, priority_count, candidates, exec_ready, scan_time_ms))
            conn.commit()
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"❌ log_sentry_metric Error: {e}")
