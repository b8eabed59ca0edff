# In scripts/init_db.py
import os
import sys

from dotenv import load_dotenv
from sqlalchemy import inspect

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

load_dotenv()

from app.database import DATABASE_URL, create_db_and_tables, engine  # noqa: E402

print(f"Creating tables for {DATABASE_URL.split('@')[-1]} ...")

# --- Database Operations ---
create_db_and_tables()

tables = inspect(engine).get_table_names()
for name in tables:
    print(f"  - {name}")

print(f"\nDatabase ready with {len(tables)} tables.")
