"""
Pytest configuration file.

Sets up the Python path so test files can import the ecr_cleanup package from
the python/ directory without installing it.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from ecr_cleanup.retention import ImageRecord  # noqa: E402

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def make_image():
    """Factory for ImageRecords pushed `pushed` seconds after a fixed epoch"""
    counter = {"n": 0}

    def _make(pushed: int, *tags: str, repository: str = "repo", registry_id=None) -> ImageRecord:
        counter["n"] += 1
        return ImageRecord(
            repository_name=repository,
            digest=f"sha256:{counter['n']:064x}",
            pushed_at=EPOCH + timedelta(seconds=pushed),
            tags=tuple(tags),
            registry_id=registry_id,
        )

    return _make
