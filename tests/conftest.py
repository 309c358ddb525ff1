import pytest

from tests.fakes import RecordingObserver


@pytest.fixture
def recorder():
    return RecordingObserver()
