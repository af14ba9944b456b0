import os
from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
import models
import dashboard
import logging
from logging.handlers import RotatingFileHandler

# Log to a rotating file and the console so server errors can be traced
# without unbounded log growth.
handler = RotatingFileHandler(os.environ.get('LOG_FILE', 'app.log'),
                              maxBytes=5 * 1024 * 1024, backupCount=5)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s')
handler.setFormatter(formatter)
root = logging.getLogger()
root.setLevel(logging.INFO)
root.addHandler(handler)
root.addHandler(logging.StreamHandler())

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SESSION_SECRET', 'dev-secret-key')

REFRESH_INTERVAL = int(os.environ.get('DASHBOARD_REFRESH_INTERVAL', '0'))

# Initialize database
models.init_db()


def app_startup_maintenance():
    """Run lightweight DB maintenance tasks once at startup."""
    try:
        models.ensure_db_indexes()
        models.cache_clear()
    except Exception:
        logging.exception('Startup maintenance failed')


app_startup_maintenance()

refresher = None
if REFRESH_INTERVAL > 0:
    refresher = dashboard.DashboardRefresher(REFRESH_INTERVAL)
    refresher.start()


def _payload():
    """Request body as a dict, from JSON or form data."""
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise models.ValidationError('Request body must be an object.')
    return data


def _page_args():
    return {
        'page': request.args.get('page', 1),
        'per_page': request.args.get('per_page', models.DEFAULT_PER_PAGE),
    }


# ------------- DASHBOARD -------------
@app.route('/')
@app.route('/dashboard')
def index():
    return jsonify(dashboard.get_dashboard_data())


@app.route('/dashboard/refresh', methods=['POST'])
def refresh_dashboard():
    data = dashboard.refresh_dashboard_cache()
    return jsonify({'message': 'Dashboard data refreshed.', 'last_updated': data['last_updated']})


@app.cli.command('refresh-dashboard-cache')
def refresh_dashboard_cache_command():
    """Refresh dashboard data cache."""
    print('Refreshing dashboard cache...')
    dashboard.refresh_dashboard_cache()
    print('Dashboard cache refreshed successfully!')


# ------------- CATEGORIES -------------
@app.route('/categories', methods=['GET', 'POST'])
def categories():
    if request.method == 'POST':
        data = _payload()
        category_id = models.add_category(data.get('name'), data.get('description'))
        return jsonify(models.get_category(category_id)), 201
    return jsonify(models.list_categories(**_page_args()))


@app.route('/categories/<int:id>', methods=['GET', 'PUT', 'DELETE'])
def category(id):
    if request.method == 'PUT':
        data = _payload()
        models.update_category(id, data.get('name'), data.get('description'))
    elif request.method == 'DELETE':
        models.delete_category(id)
        return jsonify({'message': 'Category deleted successfully.'})
    return jsonify(models.get_category(id))


# ------------- BOOKS -------------
@app.route('/books', methods=['GET', 'POST'])
def books():
    if request.method == 'POST':
        book_id = models.add_book(_payload())
        return jsonify(models.get_book(book_id)), 201
    return jsonify(models.list_books(
        search=request.args.get('q', '').strip(),
        category_id=request.args.get('category_id', type=int),
        **_page_args()
    ))


@app.route('/books/<int:id>', methods=['GET', 'PUT', 'DELETE'])
def book(id):
    if request.method == 'PUT':
        models.update_book(id, _payload())
    elif request.method == 'DELETE':
        models.delete_book(id)
        return jsonify({'message': 'Book deleted successfully.'})
    return jsonify(models.get_book(id))


# ------------- MEMBERS -------------
@app.route('/members', methods=['GET', 'POST'])
def members():
    if request.method == 'POST':
        member_id = models.add_member(_payload())
        return jsonify(models.get_member(member_id)), 201
    return jsonify(models.list_members(**_page_args()))


@app.route('/members/<int:id>', methods=['GET', 'PUT', 'DELETE'])
def member(id):
    if request.method == 'PUT':
        models.update_member(id, _payload())
    elif request.method == 'DELETE':
        models.delete_member(id)
        return jsonify({'message': 'Member deleted successfully.'})
    return jsonify(models.get_member(id))


# ------------- BORROWINGS -------------
@app.route('/borrowings', methods=['GET', 'POST'])
def borrowings():
    if request.method == 'POST':
        data = _payload()
        if not data.get('member_id'):
            raise models.ValidationError('Please select a member.')
        if not data.get('borrow_date'):
            raise models.ValidationError('Borrow date is required.')
        borrowing = models.create_borrowing(data['member_id'], data['borrow_date'], data.get('books'))
        return jsonify(borrowing), 201
    return jsonify(models.list_borrowings(
        status=request.args.get('status') or None,
        member_id=request.args.get('member_id', type=int),
        **_page_args()
    ))


@app.route('/borrowings/available-books')
def borrowable_books():
    return jsonify(models.borrowable_books())


@app.route('/borrowings/<int:id>')
def borrowing(id):
    return jsonify(models.get_borrowing(id))


@app.route('/borrowings/<int:id>/return', methods=['POST'])
def return_borrowing(id):
    return_date = _payload().get('return_date')
    if not return_date:
        raise models.ValidationError('Return date is required.')
    return jsonify(models.return_borrowing(id, return_date))


@app.route('/borrowings/member/<int:id>/history')
def member_history(id):
    return jsonify(models.member_history(id, **_page_args()))


@app.route('/borrowings/dashboard')
def borrowings_dashboard():
    return jsonify(dashboard.compute_dashboard_data())


# ------------- ERRORS -------------
@app.errorhandler(models.LibraryError)
def handle_library_error(e):
    return jsonify({'error': e.kind, 'message': str(e)}), e.status_code


# Generic error handler to log unexpected exceptions and hide their details
@app.errorhandler(Exception)
def handle_exception(e):
    # If it's an HTTPException, let Flask handle the response
    if isinstance(e, HTTPException):
        return e

    logging.exception('Unhandled exception:')
    return jsonify({'error': 'internal', 'message': 'An internal error occurred.'}), 500


if __name__ == '__main__':
    # Disable the auto-reloader when running directly to avoid spawning a
    # second process that may concurrently access the SQLite file and cause
    # "database is locked" errors during development.
    app.run(host='0.0.0.0', port=5000, debug=True, use_reloader=False)
