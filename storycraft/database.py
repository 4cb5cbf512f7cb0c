"""
SQLite storage for StoryCraft users and credits.
Thread-local connections in WAL mode; every balance change is written to the
credit_transactions audit log in the same transaction.
"""

import sqlite3
import hashlib
import secrets
import threading
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List
from contextlib import contextmanager

from storycraft.errors import InsufficientCreditsError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CREDITS = 100

# Credits charged per operation
OPERATION_COSTS = {
    'text': 1,
    'youtube': 2,
    'image': 5,
    'video': 50,
}

TRANSACTION_TYPES = (
    'SIGNUP_BONUS',
    'PURCHASE',
    'DEDUCTION_TEXT',
    'DEDUCTION_YOUTUBE',
    'DEDUCTION_IMAGE',
    'DEDUCTION_VIDEO',
    'REFUND',
    'ADMIN_ADJUSTMENT',
)

MAX_HISTORY_LIMIT = 100
MAX_DESCRIPTION_LENGTH = 200

_local = threading.local()
_db_path: Optional[Path] = None


def configure(db_path: str):
    global _db_path
    _db_path = Path(db_path)


def get_db_connection() -> sqlite3.Connection:
    """Get thread-local database connection with WAL mode for concurrency"""
    if _db_path is None:
        raise RuntimeError('Database path not configured; call init_database() first')

    conn = getattr(_local, 'connection', None)
    if conn is not None and getattr(_local, 'path', None) != _db_path:
        conn.close()
        conn = None

    if conn is None:
        _db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(_db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA journal_mode=WAL')
        conn.execute('PRAGMA synchronous=NORMAL')
        conn.execute('PRAGMA busy_timeout=30000')
        conn.execute('PRAGMA foreign_keys=ON')
        _local.connection = conn
        _local.path = _db_path
        logger.info(f"[DB] Connected to {_db_path} (WAL mode enabled)")
    return conn


def close_connection():
    conn = getattr(_local, 'connection', None)
    if conn is not None:
        conn.close()
        _local.connection = None
        _local.path = None


@contextmanager
def get_db():
    """Context manager for database operations"""
    conn = get_db_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_database(db_path: str = None):
    """Create tables; safe to call repeatedly"""
    if db_path:
        configure(db_path)

    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                tier TEXT DEFAULT 'free',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_login TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                token_jti TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                revoked INTEGER DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_credits (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0,
                total_used INTEGER DEFAULT 0,
                total_purchased INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS credit_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                type TEXT NOT NULL,
                description TEXT,
                balance_after INTEGER,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_credit_tx_user ON credit_transactions(user_id, created_at)')

    logger.info("[OK] Database initialized")


def check_database_health() -> Dict[str, Any]:
    try:
        with get_db() as conn:
            journal_mode = conn.execute('PRAGMA journal_mode').fetchone()[0]
            user_count = conn.execute('SELECT COUNT(*) FROM users').fetchone()[0]
        return {'healthy': True, 'path': str(_db_path), 'journal_mode': journal_mode, 'user_count': user_count}
    except sqlite3.Error as e:
        logger.error(f"[DB] Health check failed: {e}")
        return {'healthy': False, 'error': str(e), 'path': str(_db_path)}


# ==============================================================================
# USER OPERATIONS
# ==============================================================================

def hash_password(password: str, salt: str = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${digest}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, _ = password_hash.partition('$')
    return secrets.compare_digest(hash_password(password, salt), password_hash)


def generate_user_id(email: str) -> str:
    return hashlib.sha256(email.lower().encode()).hexdigest()[:16]


def create_user(email: str, password: str, name: str) -> Optional[Dict[str, Any]]:
    """Create a user with the signup bonus; None if the email is taken"""
    email = email.strip().lower()
    user_id = generate_user_id(email)

    with get_db() as conn:
        try:
            conn.execute(
                'INSERT INTO users (id, email, name, password_hash) VALUES (?, ?, ?, ?)',
                (user_id, email, name, hash_password(password)),
            )
        except sqlite3.IntegrityError:
            return None
        _init_credits(conn, user_id)

    logger.info(f"[OK] User created: {email}")
    return get_user_by_id(user_id)


def authenticate_user(email: str, password: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM users WHERE email = ?', (email.strip().lower(),)).fetchone()
        if not row or not verify_password(password, row['password_hash']):
            return None
        conn.execute('UPDATE users SET last_login = CURRENT_TIMESTAMP WHERE id = ?', (row['id'],))
    return _public_user(row)


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    return _public_user(row) if row else None


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        row = conn.execute('SELECT * FROM users WHERE email = ?', (email.strip().lower(),)).fetchone()
    return _public_user(row) if row else None


def _public_user(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        'id': row['id'],
        'email': row['email'],
        'name': row['name'],
        'tier': row['tier'],
        'created_at': row['created_at'],
    }


def create_session(user_id: str, token_jti: str, expires_at: datetime):
    with get_db() as conn:
        conn.execute('INSERT OR REPLACE INTO sessions (token_jti, user_id, expires_at) VALUES (?, ?, ?)',
                     (token_jti, user_id, expires_at.isoformat()))


def revoke_session(token_jti: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute('UPDATE sessions SET revoked = 1 WHERE token_jti = ?', (token_jti,))
        return cursor.rowcount > 0


def is_session_revoked(token_jti: str) -> bool:
    with get_db() as conn:
        row = conn.execute('SELECT revoked FROM sessions WHERE token_jti = ?', (token_jti,)).fetchone()
    return bool(row and row['revoked'])


# ==============================================================================
# CREDIT OPERATIONS
# ==============================================================================

def _init_credits(conn: sqlite3.Connection, user_id: str, initial_credits: int = DEFAULT_CREDITS):
    cursor = conn.execute('INSERT OR IGNORE INTO user_credits (user_id, balance) VALUES (?, ?)',
                          (user_id, initial_credits))
    if cursor.rowcount > 0 and initial_credits:
        conn.execute('''
            INSERT INTO credit_transactions (user_id, amount, type, description, balance_after)
            VALUES (?, ?, 'SIGNUP_BONUS', 'Welcome bonus credits', ?)
        ''', (user_id, initial_credits, initial_credits))


def _balance(conn: sqlite3.Connection, user_id: str) -> int:
    row = conn.execute('SELECT balance FROM user_credits WHERE user_id = ?', (user_id,)).fetchone()
    if row is None:
        _init_credits(conn, user_id)
        return DEFAULT_CREDITS
    return row['balance']


def get_user_credits(user_id: str) -> Dict[str, Any]:
    """Balance and totals, initialising the account on first access"""
    with get_db() as conn:
        balance = _balance(conn, user_id)
        row = conn.execute('''
            SELECT c.total_used, c.total_purchased, c.updated_at, u.tier
            FROM user_credits c LEFT JOIN users u ON u.id = c.user_id
            WHERE c.user_id = ?
        ''', (user_id,)).fetchone()

    return {
        'credits': balance,
        'tier': (row['tier'] if row else None) or 'free',
        'totalUsed': row['total_used'] if row else 0,
        'totalPurchased': row['total_purchased'] if row else 0,
    }


def validate_deduction(operation: Any, amount: Any, description: Any = None):
    errors = []
    if operation not in OPERATION_COSTS:
        errors.append({'field': 'operation',
                       'message': f"Invalid operation. Must be one of: {', '.join(OPERATION_COSTS)}"})
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        errors.append({'field': 'amount', 'message': 'Amount must be a positive integer'})
    if description is not None and (not isinstance(description, str)
                                    or not 1 <= len(description) <= MAX_DESCRIPTION_LENGTH):
        errors.append({'field': 'description',
                       'message': f"Description must be 1-{MAX_DESCRIPTION_LENGTH} characters"})
    if errors:
        raise ValidationError(errors)

    expected = OPERATION_COSTS[operation]
    if amount != expected:
        raise ValidationError(
            [{'field': 'amount', 'message': f"Invalid amount for {operation} operation. Expected {expected} credits."}],
        )


def deduct_credits(user_id: str, operation: str, amount: int = None, description: str = None) -> Dict[str, Any]:
    """Charge an operation; raises InsufficientCreditsError when the balance is short"""
    amount = OPERATION_COSTS.get(operation) if amount is None else amount
    validate_deduction(operation, amount, description)

    with get_db() as conn:
        conn.execute('BEGIN IMMEDIATE')
        balance = _balance(conn, user_id)
        if balance < amount:
            raise InsufficientCreditsError(required=amount, available=balance)

        new_balance = balance - amount
        conn.execute('''
            UPDATE user_credits
            SET balance = ?, total_used = total_used + ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ?
        ''', (new_balance, amount, user_id))
        conn.execute('''
            INSERT INTO credit_transactions (user_id, amount, type, description, balance_after)
            VALUES (?, ?, ?, ?, ?)
        ''', (user_id, -amount, f"DEDUCTION_{operation.upper()}",
              description or f"{operation} processing", new_balance))

    logger.info(f"[OK] Deducted {amount} credits from {user_id} for {operation} (balance {new_balance})")
    return {
        'creditsRemaining': new_balance,
        'deducted': amount,
        'message': f"Successfully deducted {amount} credits",
    }


def add_credits(user_id: str, amount: int, description: str, transaction_type: str = 'PURCHASE') -> Dict[str, Any]:
    """Credit an account (purchase, refund or admin adjustment)"""
    if transaction_type not in TRANSACTION_TYPES or transaction_type.startswith('DEDUCTION_'):
        raise ValidationError([{'field': 'type', 'message': f"Invalid transaction type: {transaction_type}"}])
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError([{'field': 'amount', 'message': 'Amount must be a positive integer'}])

    with get_db() as conn:
        conn.execute('BEGIN IMMEDIATE')
        new_balance = _balance(conn, user_id) + amount
        purchased = amount if transaction_type == 'PURCHASE' else 0
        conn.execute('''
            UPDATE user_credits
            SET balance = ?, total_purchased = total_purchased + ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ?
        ''', (new_balance, purchased, user_id))
        conn.execute('''
            INSERT INTO credit_transactions (user_id, amount, type, description, balance_after)
            VALUES (?, ?, ?, ?, ?)
        ''', (user_id, amount, transaction_type, description, new_balance))

    return {'credits': new_balance, 'added': amount}


def get_credit_history(user_id: str, page: int = 1, limit: int = 20, transaction_type: str = None,
                       start_date: str = None, end_date: str = None,
                       include_summary: bool = False) -> Dict[str, Any]:
    """Paginated transaction log, newest first"""
    if page < 1:
        raise ValidationError([{'field': 'page', 'message': 'Page must be at least 1'}])
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        raise ValidationError([{'field': 'limit', 'message': f"Limit must be between 1 and {MAX_HISTORY_LIMIT}"}])
    if transaction_type and transaction_type not in TRANSACTION_TYPES:
        raise ValidationError([{'field': 'type', 'message': f"Invalid transaction type: {transaction_type}"}])

    where = ['user_id = ?']
    params: List[Any] = [user_id]
    if transaction_type:
        where.append('type = ?')
        params.append(transaction_type)
    if start_date:
        where.append('created_at >= ?')
        params.append(_normalize_date(start_date, end_of_day=False))
    if end_date:
        where.append('created_at <= ?')
        params.append(_normalize_date(end_date, end_of_day=True))
    clause = ' AND '.join(where)

    with get_db() as conn:
        total = conn.execute(f'SELECT COUNT(*) FROM credit_transactions WHERE {clause}', params).fetchone()[0]
        rows = conn.execute(f'''
            SELECT id, amount, type, description, balance_after, created_at
            FROM credit_transactions
            WHERE {clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()

        result = {
            'transactions': [
                {
                    'id': row['id'],
                    'amount': row['amount'],
                    'type': row['type'],
                    'description': row['description'],
                    'balanceAfter': row['balance_after'],
                    'createdAt': row['created_at'],
                }
                for row in rows
            ],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'totalPages': -(-total // limit),
            },
        }

        if include_summary:
            summary = conn.execute('''
                SELECT
                    COALESCE(SUM(CASE WHEN amount > 0 THEN amount ELSE 0 END), 0) AS earned,
                    COALESCE(SUM(CASE WHEN amount < 0 THEN -amount ELSE 0 END), 0) AS spent,
                    COALESCE(SUM(amount), 0) AS net
                FROM credit_transactions WHERE user_id = ?
            ''', (user_id,)).fetchone()
            result['summary'] = {
                'totalCreditsEarned': summary['earned'],
                'totalCreditsSpent': summary['spent'],
                'netCredits': summary['net'],
            }

    return result


def _normalize_date(value: str, end_of_day: bool) -> str:
    """Accept YYYY-MM-DD or ISO datetimes; returns SQLite's 'YYYY-MM-DD HH:MM:SS' form"""
    try:
        if 'T' in value:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)
        else:
            parsed = datetime.strptime(value, '%Y-%m-%d')
            if end_of_day:
                parsed = parsed.replace(hour=23, minute=59, second=59)
    except ValueError:
        raise ValidationError([{'field': 'endDate' if end_of_day else 'startDate',
                                'message': f"Invalid date: {value}"}])
    return parsed.strftime('%Y-%m-%d %H:%M:%S')
