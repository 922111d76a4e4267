from pathlib import Path

# backend/ directory, where .env and alembic.ini live
BASE_PATH = Path(__file__).resolve().parent.parent
