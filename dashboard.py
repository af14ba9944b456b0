"""
Dashboard statistics over the catalog, membership and borrowing tables.

Everything here is read-only. The full bundle is memoized in the models
cache under a single key for DASHBOARD_CACHE_TTL seconds; refreshing
computes a new bundle first and then swaps it in, so readers always see
either the previous bundle or the new one.
"""
import os
import logging
import threading
from datetime import date, datetime, timezone

import models

CACHE_KEY = 'dashboard_data'
CACHE_TTL = int(os.environ.get('DASHBOARD_CACHE_TTL', '300'))

STATUS_COLORS = {
    models.BORROWED: '#3b82f6',
    models.RETURNED: '#10b981',
}

logger = logging.getLogger(__name__)


def get_stats():
    """Headline counts for the dashboard cards."""
    conn = models.get_conn()
    try:
        def scalar(sql, params=()):
            return conn.execute(sql, params).fetchone()[0]

        return {
            'total_borrowings': scalar("SELECT COUNT(*) FROM borrowings"),
            'active_borrowings': scalar(
                "SELECT COUNT(*) FROM borrowings WHERE status = ?", (models.BORROWED,)),
            'returned_borrowings': scalar(
                "SELECT COUNT(*) FROM borrowings WHERE status = ?", (models.RETURNED,)),
            'total_books_borrowed': scalar("""
                SELECT COALESCE(SUM(d.quantity), 0)
                FROM borrowing_details d
                JOIN borrowings br ON br.id = d.borrowing_id
                WHERE br.status = ?
            """, (models.BORROWED,)),
            'total_members': scalar("SELECT COUNT(*) FROM members"),
            'active_members': scalar(
                "SELECT COUNT(DISTINCT member_id) FROM borrowings WHERE status = ?",
                (models.BORROWED,)),
            'total_books': scalar("SELECT COUNT(*) FROM books"),
            'available_books': scalar("SELECT COALESCE(SUM(stock), 0) FROM books"),
            'total_categories': scalar("SELECT COUNT(*) FROM categories"),
        }
    finally:
        conn.close()


def recent_borrowings(n=5):
    return models.list_borrowings(per_page=n)['items']


def top_borrowed_books(n=5):
    """Books ranked by copies lent out on borrowings that have been returned.

    Books with nothing returned still fill the list (with 0) when fewer
    than n books qualify.
    """
    conn = models.get_conn()
    try:
        rows = conn.execute("""
            SELECT b.id, b.title, b.author, COALESCE(r.total, 0) AS total_borrowed
            FROM books b
            LEFT JOIN (
                SELECT d.book_id, SUM(d.quantity) AS total
                FROM borrowing_details d
                JOIN borrowings br ON br.id = d.borrowing_id
                WHERE br.status = ?
                GROUP BY d.book_id
            ) r ON r.book_id = b.id
            ORDER BY total_borrowed DESC, b.id
            LIMIT ?
        """, (models.RETURNED, n)).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def _month_start(day, months_back):
    index = day.year * 12 + (day.month - 1) - months_back
    return date(index // 12, index % 12 + 1, 1)


def monthly_borrowings(months=6, today=None):
    """Borrowings per calendar month, oldest first, current month last.

    The query only returns months that have rows; every other month in the
    window is reported as 0 so the series is always `months` long.
    """
    if months < 1:
        raise models.ValidationError("months must be at least 1.")
    today = today or date.today()
    start = _month_start(today, months - 1)

    conn = models.get_conn()
    try:
        rows = conn.execute("""
            SELECT strftime('%Y-%m', borrow_date) AS month, COUNT(*) AS count
            FROM borrowings
            WHERE borrow_date >= ?
            GROUP BY month
            ORDER BY month
        """, (start.isoformat(),)).fetchall()
    finally:
        conn.close()
    counts = {r['month']: r['count'] for r in rows}

    series = []
    for back in range(months - 1, -1, -1):
        month = _month_start(today, back)
        key = month.strftime('%Y-%m')
        series.append({
            'month': month.strftime('%b %Y'),
            'key': key,
            'borrowings': counts.get(key, 0),
        })
    return series


def status_distribution():
    conn = models.get_conn()
    try:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS count FROM borrowings GROUP BY status"
        ).fetchall()
    finally:
        conn.close()
    counts = {r['status']: r['count'] for r in rows}
    return [
        {'name': status.capitalize(), 'value': counts.get(status, 0), 'color': STATUS_COLORS[status]}
        for status in models.STATUSES
    ]


def books_by_category(n=5):
    """Categories ranked by copies lent out on returned borrowings.

    Categories with nothing returned are left out.
    """
    conn = models.get_conn()
    try:
        rows = conn.execute("""
            SELECT c.id, c.name, SUM(d.quantity) AS total_borrowed
            FROM categories c
            JOIN books b ON b.category_id = c.id
            JOIN borrowing_details d ON d.book_id = b.id
            JOIN borrowings br ON br.id = d.borrowing_id
            WHERE br.status = ?
            GROUP BY c.id, c.name
            HAVING SUM(d.quantity) > 0
            ORDER BY total_borrowed DESC, c.id
            LIMIT ?
        """, (models.RETURNED, n)).fetchall()
    finally:
        conn.close()
    return [{'name': r['name'], 'value': r['total_borrowed']} for r in rows]


def compute_dashboard_data():
    """Build the full dashboard bundle straight from the database."""
    return {
        'stats': get_stats(),
        'recent_borrowings': recent_borrowings(5),
        'top_borrowed_books': top_borrowed_books(5),
        'monthly_borrowings': monthly_borrowings(6),
        'status_distribution': status_distribution(),
        'books_by_category': books_by_category(5),
        'last_updated': datetime.now(timezone.utc).isoformat(),
    }


def get_dashboard_data():
    """Cached bundle, computed on a miss."""
    data = models.cache_get(CACHE_KEY)
    if data is None:
        data = compute_dashboard_data()
        models.cache_set(CACHE_KEY, data, ttl=CACHE_TTL)
    return data


def refresh_dashboard_cache():
    """Recompute the bundle and replace the cached one."""
    data = compute_dashboard_data()
    models.cache_set(CACHE_KEY, data, ttl=CACHE_TTL)
    logger.info('Dashboard cache refreshed at %s', data['last_updated'])
    return data


class DashboardRefresher(threading.Thread):
    """Refresh the dashboard cache every `interval` seconds.

    Each tick runs the refresh on its own worker thread. A tick that fires
    while the previous refresh is still running is skipped.
    """

    def __init__(self, interval, refresh=None):
        super().__init__(name='dashboard-refresher', daemon=True)
        self.interval = interval
        self._refresh = refresh or refresh_dashboard_cache
        self._in_flight = threading.Lock()
        self._stopped = threading.Event()
        self.worker = None

    def run(self):
        while not self._stopped.wait(self.interval):
            self.tick()

    def tick(self):
        """Start a refresh unless one is already running. Returns whether it started."""
        if not self._in_flight.acquire(blocking=False):
            logger.info('Dashboard refresh still running, skipping this run')
            return False
        self.worker = threading.Thread(target=self._run_refresh, name='dashboard-refresh', daemon=True)
        self.worker.start()
        return True

    def _run_refresh(self):
        try:
            self._refresh()
        except Exception:
            logger.exception('Scheduled dashboard refresh failed')
        finally:
            self._in_flight.release()

    def stop(self):
        self._stopped.set()
