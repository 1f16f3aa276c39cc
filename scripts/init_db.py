"""Create the flashcards table and its indexes. Safe to run repeatedly."""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / '.env')

from cardgen.flashcards.repository import PostgresFlashcardRepository, RepositoryError  # noqa: E402

dsn = os.getenv('DATABASE_URL')
if not dsn:
    print('DATABASE_URL is not set')
    sys.exit(1)

repo = PostgresFlashcardRepository(dsn)
try:
    repo.init_schema()
    print('Schema ready')
except RepositoryError as e:
    print(f'Schema creation failed: {e}')
    sys.exit(1)
finally:
    repo.close()
