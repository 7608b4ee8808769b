"""
Backfill `status` on visit records that only carry the old `queued` flag.

Older rows were created with queued=1 and no status (or "in_progress").
Rows still flagged become "queued"; unflagged rows with a doctor note become
"completed", the rest "cancelled". Also adds the `version` column when missing.
"""

import sqlite3
import os

# Resolve DB path relative to repo root
ROOT_DIR = os.path.dirname(os.path.dirname(__file__))
DB_PATH = os.path.join(ROOT_DIR, 'data', 'clinic.db')


def migrate(conn):
    c = conn.cursor()

    c.execute("PRAGMA table_info('visit_records')")
    cols = [r[1] for r in c.fetchall()]
    print("Existing columns:", cols)

    if 'version' not in cols:
        c.execute("ALTER TABLE visit_records ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
        print("Added 'version' column to 'visit_records'.")

    open_status = "(status IS NULL OR status = '' OR status = 'in_progress')"
    c.execute(f"UPDATE visit_records SET status = 'queued' WHERE queued = 1 AND {open_status}")
    print(f"Marked {c.rowcount} flagged record(s) as queued.")

    c.execute(
        f"UPDATE visit_records SET status = 'completed' "
        f"WHERE queued = 0 AND {open_status} AND doctor_notes IS NOT NULL AND doctor_notes != ''"
    )
    print(f"Marked {c.rowcount} record(s) with doctor notes as completed.")

    c.execute(f"UPDATE visit_records SET status = 'cancelled' WHERE queued = 0 AND {open_status}")
    print(f"Marked {c.rowcount} remaining record(s) as cancelled.")

    # Terminal records must not keep the flag
    c.execute("UPDATE visit_records SET queued = 0 WHERE status IN ('completed', 'cancelled') AND queued = 1")
    print(f"Cleared the queued flag on {c.rowcount} closed record(s).")

    conn.commit()


if __name__ == "__main__":
    conn = sqlite3.connect(DB_PATH)
    try:
        migrate(conn)
    finally:
        conn.close()
    print("Migration complete.")
