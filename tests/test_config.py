import os
import pytest
from importlib import reload
import src.config
from unittest.mock import patch

@pytest.fixture(autouse=True)
def mock_load_dotenv():
    with patch("dotenv.load_dotenv") as mock:
        yield mock

@pytest.fixture
def mock_env():
    # Save the original environment variables if they exist
    keys = ("ENVIRONMENT", "MAX_FAILURE_ATTEMPTS", "DEFAULT_TAX_RATE", "SCHEDULE_TIME")
    original = {key: os.environ.get(key) for key in keys}
    yield
    # Restore them after the test
    for key, value in original.items():
        if value is not None:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)
    reload(src.config)

def test_config_defaults_to_dev_when_missing(mock_env):
    os.environ.pop("ENVIRONMENT", None)
    reload(src.config)
    assert src.config.Config.ENVIRONMENT == "dev"
    assert src.config.Config.is_dev() is True
    assert src.config.Config.is_prd() is False
    assert src.config.Config.DB_NAME.endswith("billing_dev.sqlite")

def test_config_prd_environment(mock_env):
    os.environ["ENVIRONMENT"] = "PRD"
    os.environ.pop("SCHEDULE_TIME", None)
    # Reload the module to force it to re-evaluate module level variables
    reload(src.config)
    assert src.config.Config.ENVIRONMENT == "prd"
    assert src.config.Config.is_dev() is False
    assert src.config.Config.is_prd() is True
    assert src.config.Config.DB_NAME.endswith(os.path.join("prd", "billing_prd.sqlite"))
    assert src.config.Config.get_startup_delay() == 0
    assert src.config.Config.get_schedule_time() == "00:00:00"

def test_config_fiscal_defaults(mock_env):
    os.environ.pop("MAX_FAILURE_ATTEMPTS", None)
    os.environ.pop("DEFAULT_TAX_RATE", None)
    reload(src.config)
    assert src.config.Config.MAX_FAILURE_ATTEMPTS == 5
    assert src.config.Config.DEFAULT_TAX_RATE == 6.0
    assert src.config.Config.DEFAULT_SERIES == "1"
    assert src.config.Config.FISCAL_DOCUMENT_MODEL == "55"

def test_config_reads_overrides(mock_env):
    os.environ["MAX_FAILURE_ATTEMPTS"] = "2"
    os.environ["DEFAULT_TAX_RATE"] = "5"
    os.environ["SCHEDULE_TIME"] = "03:30:00"
    reload(src.config)
    assert src.config.Config.MAX_FAILURE_ATTEMPTS == 2
    assert src.config.Config.DEFAULT_TAX_RATE == 5.0
    assert src.config.Config.get_schedule_time() == "03:30:00"
