"""Root conftest.py: loads .env and points logs at test files before any tests run."""
import os

import pytest
from dotenv import load_dotenv

load_dotenv()

# Must be set before config.settings is first imported
os.environ.setdefault("ACTIVITY_LOG_PATH", "logs/test_activity.jsonl")
os.environ.setdefault("LLM_LOG_PATH", "logs/test_llm_calls.jsonl")


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the lru_cache on get_settings so monkeypatch.setenv takes effect."""
    from config.settings import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
