import pytest

from release_notifier.fakes import CountingStorage


@pytest.fixture
def storage(tmp_path):
    return CountingStorage(tmp_path / "data")
