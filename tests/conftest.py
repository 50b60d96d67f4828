import pytest


@pytest.fixture(autouse=True)
def enable_debug():
    from blockray.utils import set_debug

    set_debug(True)
