"""
Shared fixtures for keyval tests.
"""

import os
import shutil
import sys
import tempfile

import pytest
import pytest_asyncio

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from keyval import create_store
from keyval import default_store as default_store_module
from keyval.default_store import DefaultStoreCell


@pytest.fixture
def data_dir():
    """Temporary directory for database files."""
    path = tempfile.mkdtemp(prefix="keyval-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest_asyncio.fixture
async def store():
    """Store on a private in-memory database."""
    store = create_store(":memory:", "keyval")
    yield store
    await store.close()


@pytest_asyncio.fixture
async def default_store(monkeypatch, data_dir):
    """Replace the process-wide default store with one in a temp directory."""
    monkeypatch.setenv("KEYVAL_DATA_DIR", data_dir)
    cell = DefaultStoreCell()
    monkeypatch.setattr(default_store_module, "default_store_cell", cell)
    store = await cell.get()
    yield store
    await store.close()
