import os
import sys

import pytest

# Make `import ecos_backend` work even when pytest is not started
# from the repository root.
THIS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(THIS_DIR, ".."))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# offline model for everything created from config
os.environ["LLM_PROVIDER"] = "mock"

from ecos_backend.components.database import Database
from ecos_backend.components.scenarios import ScenarioCatalog


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ecos_test.db'}"


@pytest.fixture
def make_database(db_url):
    """Async factory: initialized Database on a fresh SQLite file (close it at the end of the test)"""
    async def _make() -> Database:
        database = Database(db_url)
        await database.initialize()
        return database
    return _make


@pytest.fixture
def seed_scenario():
    async def _seed(database, evaluation_criteria=None, knowledge_index=None):
        catalog = ScenarioCatalog(database)
        return await catalog.create_scenario(
            title="Douleur thoracique",
            description="Homme de 55 ans, douleur thoracique depuis 2 heures",
            patient_prompt="Tu es Marc, 55 ans, fumeur. Tu as une douleur dans la poitrine qui serre.",
            created_by="prof@example.org",
            evaluation_criteria=evaluation_criteria,
            knowledge_index=knowledge_index,
        )
    return _seed
