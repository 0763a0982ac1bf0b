import pytest

from rollers import Roller

from stubs import CounterRoller


@pytest.fixture
def counting_factory():
    """A factory that records how many rollers it built."""

    class Factory:
        calls = 0

        def __call__(self) -> Roller:
            Factory.calls += 1
            return CounterRoller()

    return Factory()
