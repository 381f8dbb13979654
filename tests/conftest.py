import pytest

from tests.telegram_fakes import FakeBotApi


@pytest.fixture
def fake_api() -> FakeBotApi:
    return FakeBotApi()
