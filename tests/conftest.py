"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from zkpool.config.settings import PoolSettings  # noqa: E402
from zkpool.core.commitment import NoteCommitmentScheme  # noqa: E402
from zkpool.core.context import PoolContext  # noqa: E402
from zkpool.core.merkle_tree import MerkleAccumulator  # noqa: E402
from zkpool.storage.database import DatabaseManager  # noqa: E402
from zkpool.utils.hash import FieldHasher  # noqa: E402

SMALL_DEPTH = 4


def pytest_configure(config):
    config.addinivalue_line("markers", "benchmark: timing benchmarks under tests/performance")


@pytest.fixture
def hasher():
    """Shared SHA-256 field hasher."""
    return FieldHasher()


@pytest.fixture
def scheme(hasher):
    """Commitment scheme over the shared hasher."""
    return NoteCommitmentScheme(hasher)


@pytest.fixture
def small_tree(hasher):
    """Accumulator with 16 leaf slots."""
    return MerkleAccumulator(hasher, depth=SMALL_DEPTH)


@pytest.fixture
def temp_db(tmp_path):
    """Fixture providing a fresh SQLite database."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'test.db'}")
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at temporary artifacts."""
    return PoolSettings(
        artifacts_dir=str(tmp_path / "circuits"),
        database_url=f"sqlite:///{tmp_path / 'pool.db'}",
        prepare_retries=3,
        retry_base_seconds=0.0,
    )


@pytest.fixture
def pool(settings):
    """In-memory pool with development artifacts and a depth-8 tree."""
    return PoolContext.build(settings, depth=8, bootstrap_artifacts=True)
