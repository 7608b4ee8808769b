"""
Add and fill the folded name columns on stock lots and ledger entries.

Databases created before lookups moved to stored keys lack
`classification_key` / `name_key` on `inventory_lots` and
`medicine_transactions` (plus `form_key` on the ledger). SQLite's lower()
only folds ASCII, so the keys are computed here with the same folding the
services use. Run from the repo root: python -m scripts.backfill_match_keys
"""

import sqlite3
import os

from core.validators import match_key

# Resolve DB path relative to repo root
ROOT_DIR = os.path.dirname(os.path.dirname(__file__))
DB_PATH = os.path.join(ROOT_DIR, 'data', 'clinic.db')

KEY_COLUMNS = {
    'inventory_lots': {'classification_key': 'classification', 'name_key': 'medicine_name'},
    'medicine_transactions': {
        'classification_key': 'classification',
        'name_key': 'medicine_name',
        'form_key': 'dosage_form',
    },
}


def migrate(conn):
    c = conn.cursor()

    for table, keys in KEY_COLUMNS.items():
        c.execute(f"PRAGMA table_info('{table}')")
        cols = [r[1] for r in c.fetchall()]
        if not cols:
            print(f"Table '{table}' does not exist; skipping.")
            continue

        for key_col in keys:
            if key_col not in cols:
                c.execute(f"ALTER TABLE {table} ADD COLUMN {key_col} TEXT NOT NULL DEFAULT ''")
                print(f"Added '{key_col}' column to '{table}'.")

        sources = ", ".join(keys.values())
        rows = c.execute(f"SELECT id, {sources} FROM {table}").fetchall()
        assignments = ", ".join(f"{key_col} = ?" for key_col in keys)
        c.executemany(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [tuple(match_key(v) for v in row[1:]) + (row[0],) for row in rows],
        )
        print(f"Refreshed match keys on {len(rows)} '{table}' row(s).")

        for key_col in keys:
            if key_col != 'form_key':
                c.execute(f"CREATE INDEX IF NOT EXISTS ix_{table}_{key_col} ON {table} ({key_col})")

    conn.commit()


if __name__ == "__main__":
    conn = sqlite3.connect(DB_PATH)
    try:
        migrate(conn)
    finally:
        conn.close()
    print("Migration complete.")
