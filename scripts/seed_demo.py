"""
Seed the database with demo data using the `models` API.
Run from project root: `python scripts/seed_demo.py`
"""
import os
import random
import sys
from datetime import date, timedelta

# Ensure project root is on sys.path so `import models` finds the module when running
# this script from the `scripts/` folder.
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import dashboard
import models

models.init_db()
models.ensure_db_indexes()

if models.list_books(per_page=1)['total']:
    print('Database already has books, nothing to seed.')
    raise SystemExit(0)

print('Seeding demo data...')

categories = [
    ('Fiction', 'Novels and short stories'),
    ('Science', 'Popular and academic science'),
    ('History', None),
    ('Children', 'Picture books and young readers'),
    ('Technology', None),
]
books = [
    ('Pride and Prejudice', 'Jane Austen', 'Fiction', '9780141439518', 1813),
    ('Adventures of Huckleberry Finn', 'Mark Twain', 'Fiction', '9780486280615', 1884),
    ('Foundation', 'Isaac Asimov', 'Fiction', '9780553293357', 1951),
    ('Nineteen Eighty-Four', 'George Orwell', 'Fiction', '9780451524935', 1949),
    ('Cosmos', 'Carl Sagan', 'Science', '9780345539434', 1980),
    ('A Brief History of Time', 'Stephen Hawking', 'Science', '9780553380163', 1988),
    ('The Selfish Gene', 'Richard Dawkins', 'Science', None, 1976),
    ('Sapiens', 'Yuval Noah Harari', 'History', '9780062316097', 2011),
    ('The Guns of August', 'Barbara Tuchman', 'History', None, 1962),
    ('The Hobbit', 'J.R.R. Tolkien', 'Children', '9780547928227', 1937),
    ('Matilda', 'Roald Dahl', 'Children', None, 1988),
    ('The Pragmatic Programmer', 'Andrew Hunt', 'Technology', '9780135957059', 1999),
]
members = [
    ('Alice Johnson', 'alice@example.com', '555-0100'),
    ('Bob Smith', 'bob@example.com', '555-0101'),
    ('Carol Lee', 'carol@example.com', '555-0102'),
    ('David Kim', 'david@example.com', '555-0103'),
    ('Eve Chen', 'eve@example.com', '555-0104'),
    ('Frank Wright', 'frank@example.com', None),
    ('Grace Park', 'grace@example.com', '555-0106'),
    ('Hank Rivera', 'hank@example.com', None),
]

today = date.today()

category_ids = {name: models.add_category(name, description) for name, description in categories}

book_ids = []
for title, author, category, isbn, year in books:
    book_ids.append(models.add_book({
        'category_id': category_ids[category],
        'title': title,
        'author': author,
        'isbn': isbn,
        'publication_year': year,
        'stock': random.randint(2, 8),
    }))

member_ids = []
for name, email, phone in members:
    member_ids.append(models.add_member({
        'name': name,
        'email': email,
        'phone': phone,
        'join_date': (today - timedelta(days=random.randint(200, 400))).isoformat(),
    }))

# Returned borrowings spread over the last six months, then a few still out
created = returned = 0
for _ in range(30):
    borrow_date = today - timedelta(days=random.randint(7, 180))
    items = [{'book_id': book_id, 'quantity': random.randint(1, 2)}
             for book_id in random.sample(book_ids, random.randint(1, 3))]
    try:
        borrowing = models.create_borrowing(random.choice(member_ids), borrow_date, items)
    except models.InsufficientStockError as e:
        print('skipped:', e)
        continue
    created += 1
    return_date = borrow_date + timedelta(days=random.randint(1, 6))
    models.return_borrowing(borrowing['id'], return_date)
    returned += 1

for _ in range(6):
    borrow_date = today - timedelta(days=random.randint(0, 14))
    items = [{'book_id': random.choice(book_ids), 'quantity': 1}]
    try:
        models.create_borrowing(random.choice(member_ids), borrow_date, items)
        created += 1
    except models.InsufficientStockError as e:
        print('skipped:', e)

dashboard.refresh_dashboard_cache()
stats = dashboard.get_stats()

print('\nSeed summary:')
print('categories:', stats['total_categories'])
print('books:', stats['total_books'])
print('members:', stats['total_members'])
print('borrowings:', created, f'({returned} returned)')
print('copies on shelf:', stats['available_books'])
print('\nDone')
