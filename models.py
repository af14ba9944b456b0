import os
import re
import random
import string
import sqlite3
import logging
import threading
import time
import functools
from contextlib import contextmanager
from datetime import date, datetime

DB = os.environ.get("LIBRARY_DB", "library.db")

BORROWED = 'borrowed'
RETURNED = 'returned'
STATUSES = (BORROWED, RETURNED)

DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100

logger = logging.getLogger(__name__)


# ------------- ERRORS -------------
class LibraryError(Exception):
    """Base class for errors raised by the library stores."""
    status_code = 500
    kind = 'internal'


class ValidationError(LibraryError):
    """Malformed or missing input, detected before any write."""
    status_code = 422
    kind = 'validation'


class NotFoundError(LibraryError):
    status_code = 404
    kind = 'not_found'


class ConflictError(LibraryError):
    status_code = 409
    kind = 'conflict'


class InsufficientStockError(ConflictError):
    """A line item asks for more copies than the book has in stock."""
    kind = 'insufficient_stock'

    def __init__(self, title, available, requested):
        super().__init__(
            f"Insufficient stock for book: {title}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.title = title
        self.available = available
        self.requested = requested


class AlreadyReturnedError(ConflictError):
    kind = 'already_returned'


class DeleteBlockedError(ConflictError):
    kind = 'delete_blocked'


# ------------- CONNECTIONS -------------
def get_conn():
    """Get database connection with foreign keys enabled"""
    # Long timeout so short locks held by a concurrent writer are waited on
    # rather than immediately raising "database is locked".
    conn = sqlite3.connect(DB, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        conn.execute("PRAGMA busy_timeout = 30000;")
    except sqlite3.OperationalError:
        # If any PRAGMA fails, continue; the DB still works with defaults.
        pass
    return conn


@contextmanager
def transaction():
    """Open a write transaction that holds the database write lock.

    BEGIN IMMEDIATE takes the reserved lock up front, so two writers can
    never both read a book's stock and then both decrement it.
    """
    conn = get_conn()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize database tables"""
    conn = get_conn()
    try:
        c = conn.cursor()

        c.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                category_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                publisher TEXT,
                publication_year INTEGER,
                stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
                cover_image TEXT,
                description TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE RESTRICT
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT,
                address TEXT,
                join_date TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS borrowings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                borrow_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed',
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                CHECK (
                    (status = 'borrowed' AND return_date IS NULL)
                    OR (status = 'returned' AND return_date IS NOT NULL
                        AND return_date >= borrow_date)
                ),
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE RESTRICT
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS borrowing_details (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                borrowing_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity >= 1),
                FOREIGN KEY (borrowing_id) REFERENCES borrowings(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE RESTRICT
            )
        """)

        conn.commit()
    finally:
        conn.close()


# Retry decorator for catalog/membership writes to reduce the chance of a
# transient sqlite "database is locked" OperationalError reaching the app.
def retry_db(max_attempts=5, initial_delay=0.05, backoff=2.0):
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    msg = str(e).lower()
                    if 'locked' in msg or 'busy' in msg:
                        if attempt == max_attempts:
                            raise
                        time.sleep(delay)
                        delay *= backoff
                        continue
                    raise
        return wrapper
    return decorator


def ensure_db_indexes():
    """Create commonly-used indexes to speed up queries (idempotent)."""
    conn = get_conn()
    try:
        c = conn.cursor()
        c.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_status ON borrowings (status)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_borrow_date ON borrowings (borrow_date)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_status_date ON borrowings (status, borrow_date)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_member_id ON borrowings (member_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_details_book_borrowing ON borrowing_details (book_id, borrowing_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_details_borrowing_id ON borrowing_details (borrowing_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_books_category_id ON books (category_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books (title)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books (author)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_members_member_code ON members (member_code)")
        conn.commit()
    finally:
        conn.close()


# ------------- CACHE -------------
# Small in-memory TTL cache. Entries are (value, stored_at, ttl); writers
# swap whole entries under the lock so readers never see a partial value.
_CACHE = {}
_CACHE_TTL = 5  # seconds
_CACHE_LOCK = threading.Lock()


def cache_get(key):
    with _CACHE_LOCK:
        entry = _CACHE.get(key)
        if not entry:
            return None
        value, ts, ttl = entry
        if time.time() - ts > ttl:
            _CACHE.pop(key, None)
            return None
        return value


def cache_set(key, value, ttl=None):
    with _CACHE_LOCK:
        _CACHE[key] = (value, time.time(), _CACHE_TTL if ttl is None else ttl)


def cache_clear(prefix=None):
    with _CACHE_LOCK:
        if prefix is None:
            _CACHE.clear()
        else:
            for k in list(_CACHE.keys()):
                if k.startswith(prefix):
                    _CACHE.pop(k, None)


# ------------- VALIDATION HELPERS -------------
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_date(value, field):
    """Accept a date, a datetime or an ISO 'YYYY-MM-DD' string.

    A time part ('T...' or ' ...') after the date is dropped; any other
    trailing text is rejected.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        value = value.strip()
        if len(value) > 10 and value[10] not in ('T', ' '):
            raise ValidationError(f"{field} must be a valid date.")
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a valid date.")


def _required_text(value, field, max_length=255):
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required.")
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} may not be longer than {max_length} characters.")
    return value


def _optional_text(value, field, max_length=None):
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{field} may not be longer than {max_length} characters.")
    return value


def _int(value, field, minimum=None, maximum=None):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.")
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field} must be an integer.")
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}.")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} may not be greater than {maximum}.")
    return number


def _page_args(page, per_page):
    page = _int(page or 1, 'page', minimum=1)
    per_page = _int(per_page or DEFAULT_PER_PAGE, 'per_page', minimum=1)
    return page, min(per_page, MAX_PER_PAGE)


def _paginate(conn, query, params, page, per_page):
    """Run a SELECT with LIMIT/OFFSET and count its full result."""
    page, per_page = _page_args(page, per_page)
    total = conn.execute(f"SELECT COUNT(*) FROM ({query})", params).fetchone()[0]
    rows = conn.execute(
        query + " LIMIT ? OFFSET ?", list(params) + [per_page, (page - 1) * per_page]
    ).fetchall()
    return {
        'items': [dict(r) for r in rows],
        'total': total,
        'page': page,
        'per_page': per_page,
    }


# ------------- CATEGORIES -------------
def list_categories(page=1, per_page=DEFAULT_PER_PAGE):
    """List categories with book count, newest first"""
    conn = get_conn()
    try:
        return _paginate(conn, """
            SELECT c.*, COUNT(b.id) AS books_count
            FROM categories c
            LEFT JOIN books b ON c.id = b.category_id
            GROUP BY c.id
            ORDER BY c.created_at DESC, c.id DESC
        """, [], page, per_page)
    finally:
        conn.close()


def get_category(category_id):
    """Get category by ID with its ten newest books"""
    conn = get_conn()
    try:
        row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Category {category_id} not found.")
        category = dict(row)
        books = conn.execute("""
            SELECT id, title, author, stock FROM books
            WHERE category_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 10
        """, (category_id,)).fetchall()
        category['books'] = [dict(b) for b in books]
        return category
    finally:
        conn.close()


@retry_db()
def add_category(name, description=None):
    """Add new category"""
    name = _required_text(name, 'Name')
    description = _optional_text(description, 'Description')
    conn = get_conn()
    try:
        c = conn.cursor()
        c.execute("INSERT INTO categories (name, description) VALUES (?, ?)", (name, description))
        conn.commit()
        category_id = c.lastrowid
    finally:
        conn.close()
    return category_id


@retry_db()
def update_category(category_id, name, description=None):
    """Update category"""
    name = _required_text(name, 'Name')
    description = _optional_text(description, 'Description')
    conn = get_conn()
    try:
        c = conn.cursor()
        c.execute("UPDATE categories SET name = ?, description = ? WHERE id = ?",
                  (name, description, category_id))
        updated = c.rowcount
        conn.commit()
    finally:
        conn.close()
    if not updated:
        raise NotFoundError(f"Category {category_id} not found.")
    cache_clear('books')


@retry_db()
def delete_category(category_id):
    """Delete category unless books still reference it"""
    with transaction() as conn:
        if conn.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone() is None:
            raise NotFoundError(f"Category {category_id} not found.")
        books_count = conn.execute(
            "SELECT COUNT(*) FROM books WHERE category_id = ?", (category_id,)
        ).fetchone()[0]
        if books_count > 0:
            raise DeleteBlockedError(
                f"Cannot delete category that still has {books_count} book(s)."
            )
        conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
    cache_clear('books')


# ------------- BOOKS -------------
_IS_BORROWED_SQL = """
    EXISTS (
        SELECT 1 FROM borrowing_details d
        JOIN borrowings br ON br.id = d.borrowing_id
        WHERE d.book_id = b.id AND br.status = 'borrowed'
    )
"""


def _book_row(row):
    book = dict(row)
    book['is_borrowed'] = bool(book['is_borrowed'])
    return book


def list_books(search='', category_id=None, page=1, per_page=DEFAULT_PER_PAGE):
    """List books with optional title/author search and category filter"""
    cache_key = f"books:{search}:{category_id}:{page}:{per_page}"
    cached = cache_get(cache_key)
    if cached is not None:
        return cached

    query = f"""
        SELECT b.*, c.name AS category_name, {_IS_BORROWED_SQL} AS is_borrowed
        FROM books b
        LEFT JOIN categories c ON b.category_id = c.id
        WHERE 1=1
    """
    params = []

    if search:
        query += " AND (b.title LIKE ? OR b.author LIKE ?)"
        params.extend([f'%{search}%', f'%{search}%'])

    if category_id:
        query += " AND b.category_id = ?"
        params.append(category_id)

    query += " ORDER BY b.created_at DESC, b.id DESC"

    conn = get_conn()
    try:
        result = _paginate(conn, query, params, page, per_page)
    finally:
        conn.close()
    result['items'] = [_book_row(r) for r in result['items']]
    cache_set(cache_key, result)
    return result


def get_book(book_id):
    """Get book by ID"""
    conn = get_conn()
    try:
        row = conn.execute(f"""
            SELECT b.*, c.name AS category_name, {_IS_BORROWED_SQL} AS is_borrowed
            FROM books b
            LEFT JOIN categories c ON b.category_id = c.id
            WHERE b.id = ?
        """, (book_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        raise NotFoundError(f"Book {book_id} not found.")
    return _book_row(row)


def borrowable_books():
    """Books with at least one copy in stock, for a new borrowing"""
    conn = get_conn()
    try:
        rows = conn.execute("""
            SELECT b.id, b.title, b.author, b.stock, b.category_id, c.name AS category_name
            FROM books b
            LEFT JOIN categories c ON b.category_id = c.id
            WHERE b.stock > 0
            ORDER BY b.title
        """).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def _clean_book(conn, data):
    category_id = _int(data.get('category_id'), 'category_id')
    if conn.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone() is None:
        raise ValidationError("Selected category does not exist.")
    year = data.get('publication_year')
    return {
        'category_id': category_id,
        'title': _required_text(data.get('title'), 'Title'),
        'author': _required_text(data.get('author'), 'Author'),
        'isbn': _optional_text(data.get('isbn'), 'ISBN', 255),
        'publisher': _optional_text(data.get('publisher'), 'Publisher', 255),
        'publication_year': None if year in (None, '') else _int(year, 'publication_year', 1000, 9999),
        'stock': _int(data.get('stock'), 'stock', minimum=0),
        'cover_image': _optional_text(data.get('cover_image'), 'cover_image'),
        'description': _optional_text(data.get('description'), 'Description'),
    }


def _check_isbn(conn, isbn, book_id=None):
    if isbn is None:
        return
    row = conn.execute("SELECT id FROM books WHERE isbn = ?", (isbn,)).fetchone()
    if row is not None and row['id'] != book_id:
        raise ValidationError("The isbn has already been taken.")


@retry_db()
def add_book(data):
    """Add new book"""
    conn = get_conn()
    try:
        book = _clean_book(conn, data)
        _check_isbn(conn, book['isbn'])
        columns = ', '.join(book)
        placeholders = ', '.join('?' for _ in book)
        c = conn.cursor()
        c.execute(f"INSERT INTO books ({columns}) VALUES ({placeholders})", list(book.values()))
        conn.commit()
        book_id = c.lastrowid
    finally:
        conn.close()
    cache_clear('books')
    return book_id


@retry_db()
def update_book(book_id, data):
    """Update book"""
    conn = get_conn()
    try:
        if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
            raise NotFoundError(f"Book {book_id} not found.")
        book = _clean_book(conn, data)
        _check_isbn(conn, book['isbn'], book_id)
        assignments = ', '.join(f"{column} = ?" for column in book)
        conn.execute(f"UPDATE books SET {assignments} WHERE id = ?",
                     list(book.values()) + [book_id])
        conn.commit()
    finally:
        conn.close()
    cache_clear('books')


@retry_db()
def delete_book(book_id):
    """Delete book unless it has ever been borrowed"""
    with transaction() as conn:
        if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
            raise NotFoundError(f"Book {book_id} not found.")
        in_flight = conn.execute("""
            SELECT COUNT(*) FROM borrowing_details d
            JOIN borrowings br ON br.id = d.borrowing_id
            WHERE d.book_id = ? AND br.status = 'borrowed'
        """, (book_id,)).fetchone()[0]
        if in_flight:
            raise DeleteBlockedError("Cannot delete book that is currently borrowed.")
        # Returned borrowings keep their line items
        if conn.execute("SELECT 1 FROM borrowing_details WHERE book_id = ? LIMIT 1",
                        (book_id,)).fetchone() is not None:
            raise DeleteBlockedError("Cannot delete book that has borrowing history.")
        conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
    cache_clear('books')


# ------------- MEMBERS -------------
_ACTIVE_COUNT_SQL = """
    (SELECT COUNT(*) FROM borrowings br
     WHERE br.member_id = m.id AND br.status = 'borrowed')
"""


def generate_member_code(conn):
    """Return an unused code like MBR-20260119-4KQZ."""
    prefix = 'MBR-' + date.today().strftime('%Y%m%d') + '-'
    alphabet = string.ascii_uppercase + string.digits
    while True:
        code = prefix + ''.join(random.choices(alphabet, k=4))
        if conn.execute("SELECT 1 FROM members WHERE member_code = ?", (code,)).fetchone() is None:
            return code


def list_members(page=1, per_page=DEFAULT_PER_PAGE):
    """List members with their active borrowing count, newest first"""
    cache_key = f"members:{page}:{per_page}"
    cached = cache_get(cache_key)
    if cached is not None:
        return cached

    conn = get_conn()
    try:
        result = _paginate(conn, f"""
            SELECT m.*, {_ACTIVE_COUNT_SQL} AS active_borrowings_count
            FROM members m
            ORDER BY m.created_at DESC, m.id DESC
        """, [], page, per_page)
    finally:
        conn.close()
    cache_set(cache_key, result)
    return result


def get_member(member_id):
    """Get member by ID"""
    conn = get_conn()
    try:
        row = conn.execute(f"""
            SELECT m.*, {_ACTIVE_COUNT_SQL} AS active_borrowings_count
            FROM members m WHERE m.id = ?
        """, (member_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        raise NotFoundError(f"Member {member_id} not found.")
    return dict(row)


def _clean_member(conn, data, member_id=None):
    email = _required_text(data.get('email'), 'Email')
    if not _EMAIL_RE.match(email):
        raise ValidationError("Email must be a valid email address.")
    row = conn.execute("SELECT id FROM members WHERE email = ?", (email,)).fetchone()
    if row is not None and row['id'] != member_id:
        raise ValidationError("The email has already been taken.")
    member = {
        'name': _required_text(data.get('name'), 'Name'),
        'email': email,
        'phone': _optional_text(data.get('phone'), 'Phone', 50),
        'address': _optional_text(data.get('address'), 'Address'),
    }
    if data.get('join_date'):
        member['join_date'] = parse_date(data['join_date'], 'join_date').isoformat()
    return member


@retry_db()
def add_member(data):
    """Register a member with a generated member code"""
    conn = get_conn()
    try:
        member = _clean_member(conn, data)
        member.setdefault('join_date', date.today().isoformat())
        member['member_code'] = generate_member_code(conn)
        columns = ', '.join(member)
        placeholders = ', '.join('?' for _ in member)
        c = conn.cursor()
        c.execute(f"INSERT INTO members ({columns}) VALUES ({placeholders})", list(member.values()))
        conn.commit()
        member_id = c.lastrowid
    finally:
        conn.close()
    cache_clear('members')
    return member_id


@retry_db()
def update_member(member_id, data):
    """Update member; the member code and, if omitted, join date are kept"""
    conn = get_conn()
    try:
        if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
            raise NotFoundError(f"Member {member_id} not found.")
        member = _clean_member(conn, data, member_id)
        assignments = ', '.join(f"{column} = ?" for column in member)
        conn.execute(f"UPDATE members SET {assignments} WHERE id = ?",
                     list(member.values()) + [member_id])
        conn.commit()
    finally:
        conn.close()
    cache_clear('members')


@retry_db()
def delete_member(member_id):
    """Delete member unless they have any borrowings"""
    with transaction() as conn:
        if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
            raise NotFoundError(f"Member {member_id} not found.")
        active = conn.execute(
            "SELECT COUNT(*) FROM borrowings WHERE member_id = ? AND status = 'borrowed'",
            (member_id,)
        ).fetchone()[0]
        if active > 0:
            raise DeleteBlockedError(
                f"Cannot delete member who still has {active} active borrowing(s)."
            )
        if conn.execute("SELECT 1 FROM borrowings WHERE member_id = ? LIMIT 1",
                        (member_id,)).fetchone() is not None:
            raise DeleteBlockedError("Cannot delete member who has borrowing history.")
        conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
    cache_clear('members')


# ------------- BORROWINGS -------------
def _validate_line_items(items):
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("Please select at least one book.")
    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each book entry needs a book_id and a quantity.")
        if item.get('book_id') in (None, ''):
            raise ValidationError("Book selection is required.")
        if item.get('quantity') in (None, ''):
            raise ValidationError("Quantity is required.")
        lines.append((_int(item['book_id'], 'book_id'),
                      _int(item['quantity'], 'quantity', minimum=1)))
    return lines


def _details_for(conn, borrowing_ids):
    """Map borrowing id -> list of details with book info."""
    if not borrowing_ids:
        return {}
    placeholders = ', '.join('?' for _ in borrowing_ids)
    rows = conn.execute(f"""
        SELECT d.id, d.borrowing_id, d.book_id, d.quantity,
               b.title AS book_title, b.author AS book_author,
               c.name AS category_name
        FROM borrowing_details d
        JOIN books b ON b.id = d.book_id
        LEFT JOIN categories c ON c.id = b.category_id
        WHERE d.borrowing_id IN ({placeholders})
        ORDER BY d.id
    """, list(borrowing_ids)).fetchall()
    details = {}
    for r in rows:
        details.setdefault(r['borrowing_id'], []).append({
            'id': r['id'],
            'book_id': r['book_id'],
            'quantity': r['quantity'],
            'book': {
                'id': r['book_id'],
                'title': r['book_title'],
                'author': r['book_author'],
                'category_name': r['category_name'],
            },
        })
    return details


def _borrowing_rows(conn, rows):
    """Shape borrowing rows joined with member columns, attaching details."""
    details = _details_for(conn, [r['id'] for r in rows])
    result = []
    for r in rows:
        result.append({
            'id': r['id'],
            'member_id': r['member_id'],
            'borrow_date': r['borrow_date'],
            'return_date': r['return_date'],
            'status': r['status'],
            'member': {
                'id': r['member_id'],
                'name': r['member_name'],
                'member_code': r['member_code'],
                'email': r['member_email'],
            },
            'details': details.get(r['id'], []),
        })
    return result


_BORROWING_SELECT = """
    SELECT br.*, m.name AS member_name, m.member_code, m.email AS member_email
    FROM borrowings br
    JOIN members m ON m.id = br.member_id
"""


def get_borrowing(borrowing_id):
    """Get a borrowing with its member and line items"""
    conn = get_conn()
    try:
        row = conn.execute(_BORROWING_SELECT + " WHERE br.id = ?", (borrowing_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Borrowing {borrowing_id} not found.")
        return _borrowing_rows(conn, [row])[0]
    finally:
        conn.close()


def list_borrowings(status=None, member_id=None, page=1, per_page=DEFAULT_PER_PAGE):
    """List borrowings newest first, optionally filtered by status or member"""
    if status and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}.")
    query = _BORROWING_SELECT + " WHERE 1=1"
    params = []
    if status:
        query += " AND br.status = ?"
        params.append(status)
    if member_id:
        query += " AND br.member_id = ?"
        params.append(member_id)
    query += " ORDER BY br.borrow_date DESC, br.id DESC"

    conn = get_conn()
    try:
        result = _paginate(conn, query, params, page, per_page)
        result['items'] = _borrowing_rows(conn, result['items'])
        return result
    finally:
        conn.close()


def member_history(member_id, page=1, per_page=DEFAULT_PER_PAGE):
    """Borrowing history for one member"""
    member = get_member(member_id)
    history = list_borrowings(member_id=member['id'], page=page, per_page=per_page)
    history['member'] = member
    return history


def create_borrowing(member_id, borrow_date, items):
    """Lend one or more books to a member.

    The borrowing row, its details and every stock decrement are written in
    a single transaction. If any line item asks for more copies than the
    book has, nothing is persisted and InsufficientStockError is raised.
    Line items are applied in the order given, so the same book may appear
    twice and the second entry sees the stock left by the first.
    """
    borrow_date = parse_date(borrow_date, 'borrow_date')
    lines = _validate_line_items(items)
    member_id = _int(member_id, 'member_id')

    try:
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                raise NotFoundError("Selected member does not exist.")
            c = conn.cursor()
            c.execute(
                "INSERT INTO borrowings (member_id, borrow_date, status) VALUES (?, ?, ?)",
                (member_id, borrow_date.isoformat(), BORROWED)
            )
            borrowing_id = c.lastrowid

            for book_id, quantity in lines:
                book = conn.execute(
                    "SELECT id, title, stock FROM books WHERE id = ?", (book_id,)
                ).fetchone()
                if book is None:
                    raise NotFoundError(f"Selected book {book_id} does not exist.")
                if book['stock'] < quantity:
                    raise InsufficientStockError(book['title'], book['stock'], quantity)
                c.execute(
                    "INSERT INTO borrowing_details (borrowing_id, book_id, quantity) VALUES (?, ?, ?)",
                    (borrowing_id, book_id, quantity)
                )
                c.execute("UPDATE books SET stock = stock - ? WHERE id = ?", (quantity, book_id))
    except ConflictError as e:
        logger.warning('Borrowing for member %s rejected: %s', member_id, e)
        raise

    logger.info('Borrowing %s created for member %s (%d line items)',
                borrowing_id, member_id, len(lines))
    cache_clear('books')
    cache_clear('members')
    return get_borrowing(borrowing_id)


def return_borrowing(borrowing_id, return_date):
    """Mark a borrowing returned and put every lent copy back in stock."""
    return_date = parse_date(return_date, 'return_date')

    with transaction() as conn:
        row = conn.execute(
            "SELECT id, borrow_date, status FROM borrowings WHERE id = ?", (borrowing_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Borrowing {borrowing_id} not found.")
        if row['status'] == RETURNED:
            logger.warning('Borrowing %s already returned', borrowing_id)
            raise AlreadyReturnedError("This borrowing has already been returned.")
        if return_date < parse_date(row['borrow_date'], 'borrow_date'):
            raise ValidationError("Return date must be on or after borrow date.")

        conn.execute(
            "UPDATE borrowings SET status = ?, return_date = ? WHERE id = ?",
            (RETURNED, return_date.isoformat(), borrowing_id)
        )
        details = conn.execute(
            "SELECT book_id, quantity FROM borrowing_details WHERE borrowing_id = ?",
            (borrowing_id,)
        ).fetchall()
        for d in details:
            conn.execute("UPDATE books SET stock = stock + ? WHERE id = ?",
                         (d['quantity'], d['book_id']))

    logger.info('Borrowing %s returned on %s', borrowing_id, return_date.isoformat())
    cache_clear('books')
    cache_clear('members')
    return get_borrowing(borrowing_id)
