import pytest

from fakes import Collector


@pytest.fixture
def collector():
    return Collector()
