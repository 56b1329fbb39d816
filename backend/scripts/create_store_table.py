import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)) + '/..')

from db import get_conn
from repo_profiles import SEED_DOCUMENT_SQL, STORE_DOCUMENT_ID, STORE_TABLE
from settings import settings

DDL = f'''
CREATE TABLE IF NOT EXISTS {STORE_TABLE} (
    id TEXT PRIMARY KEY,
    document JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now()
);
'''

print('Connecting to', settings.db_url)
with get_conn() as conn:
    with conn.cursor() as cur:
        cur.execute(DDL)
        cur.execute(SEED_DOCUMENT_SQL, (STORE_DOCUMENT_ID,))
    conn.commit()
print('DDL applied, document row seeded')
