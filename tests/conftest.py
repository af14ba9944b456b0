import os
import tempfile
import pytest

# Point module-level defaults at throwaway files before anything imports app.
os.environ.setdefault('LIBRARY_DB', os.path.join(tempfile.gettempdir(), f'library_test_{os.getpid()}.db'))
os.environ.setdefault('LOG_FILE', os.path.join(tempfile.gettempdir(), f'library_test_{os.getpid()}.log'))

import models


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    # Every test gets its own database file
    path = str(tmp_path / 'library.db')
    monkeypatch.setattr(models, 'DB', path)
    models.init_db()
    models.ensure_db_indexes()
    models.cache_clear()
    yield path
    models.cache_clear()


@pytest.fixture
def category():
    def make(name='Fiction', description=None):
        return models.add_category(name, description)
    return make


@pytest.fixture
def book(category):
    def make(title='Test Book', stock=5, category_id=None, **fields):
        data = {
            'category_id': category_id or category(),
            'title': title,
            'author': fields.pop('author', 'Author'),
            'stock': stock,
        }
        data.update(fields)
        return models.add_book(data)
    return make


@pytest.fixture
def member():
    counter = iter(range(1, 10000))

    def make(name='Test User', email=None, **fields):
        data = {'name': name, 'email': email or f'user{next(counter)}@example.com'}
        data.update(fields)
        return models.add_member(data)
    return make