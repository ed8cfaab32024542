import pytest
from pydantic import ValidationError

from app.core.config import CHAT_DEPARTMENTS, Settings


def test_agent_ids_are_parsed_to_list():
    settings = Settings(_env_file=None, AGENT_IDS=" 12, 34 ,,56")

    assert settings.AGENT_IDS == [12, 34, 56]


def test_empty_agent_ids():
    assert Settings(_env_file=None, AGENT_IDS="").AGENT_IDS == []


def test_agent_ids_reject_garbage():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, AGENT_IDS="12,abc")


def test_default_departments_cover_all():
    settings = Settings(_env_file=None)

    assert settings.CHAT_DEFAULT_DEPARTMENTS == list(CHAT_DEPARTMENTS)
    assert settings.CHAT_INACTIVITY_TIMEOUT_MINUTES == 0
    assert settings.BOT_TOKEN is None


def test_departments_are_normalized_and_validated():
    assert Settings(_env_file=None, CHAT_DEFAULT_DEPARTMENTS="Sales, billing").CHAT_DEFAULT_DEPARTMENTS == [
        "sales",
        "billing",
    ]

    with pytest.raises(ValidationError):
        Settings(_env_file=None, CHAT_DEFAULT_DEPARTMENTS="sales,marketing")
