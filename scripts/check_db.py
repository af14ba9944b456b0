"""
Print row counts for the library tables plus a quick stock sanity check.
"""
import os
import sqlite3

DB = os.environ.get('LIBRARY_DB', 'library.db')
if not os.path.exists(DB):
    print('NO_DB')
    raise SystemExit(1)

conn = sqlite3.connect(DB)
c = conn.cursor()
tables = [r[0] for r in c.execute("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name").fetchall()]
print('tables:', tables)
for t in tables:
    print(f"{t}: {c.execute(f'SELECT COUNT(*) FROM {t}').fetchone()[0]}")

out = c.execute("""
    SELECT COALESCE(SUM(bd.quantity), 0) FROM borrowing_details bd
    JOIN borrowings b ON b.id = bd.borrowing_id WHERE b.status = 'borrowed'
""").fetchone()[0]
print('copies on loan:', out)
negative = c.execute("SELECT COUNT(*) FROM books WHERE stock < 0").fetchone()[0]
if negative:
    print('BOOKS WITH NEGATIVE STOCK:', negative)
conn.close()
