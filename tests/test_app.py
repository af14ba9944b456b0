import pytest

import models
from app import app


@pytest.fixture
def client():
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def seeded(category, book, member):
    category_id = category('Fiction')
    return {
        'category_id': category_id,
        'book_id': book('Dune', stock=2, category_id=category_id),
        'member_id': member('Alice', 'alice@example.com'),
    }


def test_create_and_return_borrowing(client, seeded):
    resp = client.post('/borrowings', json={
        'member_id': seeded['member_id'],
        'borrow_date': '2026-04-01',
        'books': [{'book_id': seeded['book_id'], 'quantity': 2}],
    })
    assert resp.status_code == 201
    borrowing = resp.get_json()
    assert borrowing['status'] == 'borrowed'
    assert borrowing['member']['name'] == 'Alice'
    assert client.get(f"/books/{seeded['book_id']}").get_json()['stock'] == 0

    resp = client.post(f"/borrowings/{borrowing['id']}/return", json={'return_date': '2026-04-03'})
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'returned'
    assert client.get(f"/books/{seeded['book_id']}").get_json()['stock'] == 2

    resp = client.post(f"/borrowings/{borrowing['id']}/return", json={'return_date': '2026-04-04'})
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'already_returned'


def test_insufficient_stock_maps_to_conflict(client, seeded):
    resp = client.post('/borrowings', json={
        'member_id': seeded['member_id'],
        'borrow_date': '2026-04-01',
        'books': [{'book_id': seeded['book_id'], 'quantity': 3}],
    })
    assert resp.status_code == 409
    body = resp.get_json()
    assert body['error'] == 'insufficient_stock'
    assert body['message'] == 'Insufficient stock for book: Dune. Available: 2, Requested: 3'


@pytest.mark.parametrize('payload, message', [
    ({'borrow_date': '2026-04-01', 'books': [{'book_id': 1, 'quantity': 1}]}, 'select a member'),
    ({'member_id': 1, 'books': [{'book_id': 1, 'quantity': 1}]}, 'Borrow date is required'),
    ({'member_id': 1, 'borrow_date': '2026-04-01', 'books': []}, 'at least one book'),
])
def test_create_borrowing_validation(client, seeded, payload, message):
    resp = client.post('/borrowings', json=payload)
    assert resp.status_code == 422
    assert message in resp.get_json()['message']


def test_return_requires_date(client, seeded):
    borrowing = models.create_borrowing(seeded['member_id'], '2026-04-01',
                                        [{'book_id': seeded['book_id'], 'quantity': 1}])
    resp = client.post(f"/borrowings/{borrowing['id']}/return", json={})
    assert resp.status_code == 422


def test_unknown_records_are_404(client):
    assert client.get('/books/99').status_code == 404
    assert client.get('/members/99').status_code == 404
    assert client.get('/categories/99').status_code == 404
    assert client.get('/borrowings/99').status_code == 404
    assert client.get('/borrowings/member/99/history').status_code == 404
    assert client.get('/borrowings/99').get_json()['error'] == 'not_found'


def test_category_routes(client):
    resp = client.post('/categories', json={'name': 'Poetry', 'description': 'Verse'})
    assert resp.status_code == 201
    category_id = resp.get_json()['id']

    resp = client.put(f'/categories/{category_id}', json={'name': 'Poems'})
    assert resp.get_json()['name'] == 'Poems'

    resp = client.post('/books', json={'category_id': category_id, 'title': 'Odes', 'author': 'Keats', 'stock': 1})
    assert resp.status_code == 201
    book_id = resp.get_json()['id']

    resp = client.delete(f'/categories/{category_id}')
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'delete_blocked'

    assert client.delete(f'/books/{book_id}').status_code == 200
    assert client.delete(f'/categories/{category_id}').status_code == 200
    assert client.get('/categories').get_json()['total'] == 0


def test_book_routes(client, seeded):
    resp = client.get('/books', query_string={'q': 'dun', 'category_id': seeded['category_id']})
    assert [b['title'] for b in resp.get_json()['items']] == ['Dune']

    resp = client.put(f"/books/{seeded['book_id']}", json={
        'category_id': seeded['category_id'], 'title': 'Dune Messiah', 'author': 'Frank Herbert', 'stock': 4,
    })
    assert resp.status_code == 200
    assert resp.get_json()['stock'] == 4

    resp = client.post('/books', json={'category_id': seeded['category_id'], 'title': '', 'author': 'X', 'stock': 1})
    assert resp.status_code == 422

    assert [b['title'] for b in client.get('/borrowings/available-books').get_json()] == ['Dune Messiah']


def test_member_routes(client, seeded):
    resp = client.post('/members', json={'name': 'Bob', 'email': 'bob@example.com'})
    assert resp.status_code == 201
    created = resp.get_json()
    assert created['member_code'].startswith('MBR-')

    resp = client.put(f"/members/{created['id']}", json={'name': 'Robert', 'email': 'bob@example.com'})
    assert resp.get_json()['name'] == 'Robert'

    resp = client.post('/members', json={'name': 'Eve', 'email': 'alice@example.com'})
    assert resp.status_code == 422

    assert client.get('/members').get_json()['total'] == 2
    assert client.delete(f"/members/{created['id']}").status_code == 200


def test_member_with_active_borrowing_cannot_be_deleted(client, seeded):
    models.create_borrowing(seeded['member_id'], '2026-04-01', [{'book_id': seeded['book_id'], 'quantity': 1}])
    resp = client.delete(f"/members/{seeded['member_id']}")
    assert resp.status_code == 409
    assert 'active borrowing' in resp.get_json()['message']


def test_borrowing_listing_and_history(client, seeded):
    borrowing = models.create_borrowing(seeded['member_id'], '2026-04-01',
                                        [{'book_id': seeded['book_id'], 'quantity': 1}])
    listing = client.get('/borrowings', query_string={'status': 'borrowed'}).get_json()
    assert [b['id'] for b in listing['items']] == [borrowing['id']]

    assert client.get('/borrowings', query_string={'status': 'returned'}).get_json()['total'] == 0
    assert client.get('/borrowings', query_string={'status': 'lost'}).status_code == 422

    history = client.get(f"/borrowings/member/{seeded['member_id']}/history").get_json()
    assert history['member']['email'] == 'alice@example.com'
    assert history['total'] == 1


def test_dashboard_routes(client, seeded):
    resp = client.get('/dashboard')
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['stats']['total_books'] == 1
    assert len(data['monthly_borrowings']) == 6
    assert 'last_updated' in data

    models.create_borrowing(seeded['member_id'], '2026-04-01', [{'book_id': seeded['book_id'], 'quantity': 1}])
    assert client.get('/').get_json()['stats']['total_borrowings'] == 0
    assert client.get('/borrowings/dashboard').get_json()['stats']['total_borrowings'] == 1

    resp = client.post('/dashboard/refresh')
    assert resp.status_code == 200
    assert client.get('/dashboard').get_json()['stats']['total_borrowings'] == 1


def test_refresh_cli_command(seeded):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['refresh-dashboard-cache'])
    assert result.exit_code == 0
    assert 'refreshed successfully' in result.output
    assert models.cache_get('dashboard_data')['stats']['total_members'] == 1


def test_unexpected_errors_are_opaque(client, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError('disk on fire')

    monkeypatch.setattr(models, 'list_categories', explode)
    resp = client.get('/categories')
    assert resp.status_code == 500
    assert resp.get_json() == {'error': 'internal', 'message': 'An internal error occurred.'}


def test_book_with_returned_history_cannot_be_deleted(client, seeded):
    borrowing = models.create_borrowing(seeded['member_id'], '2026-04-01',
                                        [{'book_id': seeded['book_id'], 'quantity': 1}])
    models.return_borrowing(borrowing['id'], '2026-04-02')

    resp = client.delete(f"/books/{seeded['book_id']}")
    assert resp.status_code == 409
    assert resp.get_json()['message'] == 'Cannot delete book that has borrowing history.'
    assert client.get(f"/borrowings/{borrowing['id']}").get_json()['details'][0]['quantity'] == 1


def test_timestamp_borrow_date_over_http(client, seeded):
    resp = client.post('/borrowings', json={
        'member_id': seeded['member_id'],
        'borrow_date': '2026-04-01T09:15:00',
        'books': [{'book_id': seeded['book_id'], 'quantity': 1}],
    })
    assert resp.status_code == 201
    assert resp.get_json()['borrow_date'] == '2026-04-01'

    resp = client.post('/borrowings', json={
        'member_id': seeded['member_id'],
        'borrow_date': '2026-04-01garbage',
        'books': [{'book_id': seeded['book_id'], 'quantity': 1}],
    })
    assert resp.status_code == 422
