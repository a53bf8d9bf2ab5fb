"""Tests for settings, credential loading and the secrets overlay."""

import json
import pytest
from unittest.mock import MagicMock
from botocore.exceptions import ClientError

from marketsync.config import CREDENTIAL_ENV_KEYS, Settings, load_credentials
from marketsync.errors import ConfigurationFault
from marketsync.secrets import SecretsManager

FULL_ENV = {
    "AMZ_LWA_CLIENT_ID": "client-id",
    "AMZ_LWA_CLIENT_SECRET": "client-secret",
    "AMZ_LWA_REFRESH_TOKEN": "Atzr|refresh",
    "AMZ_AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
    "AMZ_AWS_SECRET_ACCESS_KEY": "secret-key",
    "AMZ_AWS_REGION": "eu-west-1",
    "AMZ_SPAPI_ENDPOINT": "https://sellingpartnerapi-eu.amazon.com",
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in CREDENTIAL_ENV_KEYS.values():
        monkeypatch.delenv(key, raising=False)


def make_settings(**values):
    return Settings(_env_file=None, **values)


def test_load_credentials():
    """Test a full configuration builds immutable credentials."""
    credentials = load_credentials(make_settings(**FULL_ENV))

    assert credentials.lwa_client_id == "client-id"
    assert credentials.host == "sellingpartnerapi-eu.amazon.com"
    with pytest.raises(Exception):
        credentials.aws_region = "us-east-1"


def test_load_credentials_reports_every_missing_key():
    """Test all missing keys are reported together, in a fixed order."""
    partial = {k: v for k, v in FULL_ENV.items() if k not in ("AMZ_LWA_CLIENT_SECRET", "AMZ_AWS_REGION")}

    with pytest.raises(ConfigurationFault) as exc_info:
        load_credentials(make_settings(**partial))

    assert exc_info.value.missing == ["AMZ_LWA_CLIENT_SECRET", "AMZ_AWS_REGION"]
    assert "AMZ_LWA_CLIENT_SECRET, AMZ_AWS_REGION" in str(exc_info.value)


def test_overrides_fill_and_win():
    """Test overrides by field name or env key take precedence over settings."""
    partial = {k: v for k, v in FULL_ENV.items() if k != "AMZ_AWS_REGION"}

    credentials = load_credentials(
        make_settings(**partial),
        overrides={"AMZ_AWS_REGION": " us-east-1 ", "lwa_client_id": "other-client"},
    )

    assert credentials.aws_region == "us-east-1"
    assert credentials.lwa_client_id == "other-client"


def test_settings_defaults():
    config = make_settings()
    assert config.report_poll_max_attempts == 12
    assert config.report_poll_initial_delay_seconds == 2.5
    assert config.order_items_concurrency == 3
    assert config.settlement_preview_rows == 200


def test_secrets_overlay_used_when_enabled(monkeypatch):
    """Test credentials come from Secrets Manager when it is enabled."""
    secret = {"lwa_client_id": "from-secret", **{k: v for k, v in FULL_ENV.items() if k != "AMZ_LWA_CLIENT_ID"}}
    boto_client = MagicMock()
    boto_client.get_secret_value.return_value = {"SecretString": json.dumps(secret)}
    monkeypatch.setattr("marketsync.secrets.secrets_manager", SecretsManager(client=boto_client))

    credentials = load_credentials(make_settings(
        SECRETS_MANAGER_ENABLED=True,
        SPAPI_SECRETS_ARN="arn:aws:secretsmanager:eu-west-1:123:secret:spapi",
    ))

    assert credentials.lwa_client_id == "from-secret"
    boto_client.get_secret_value.assert_called_once()


@pytest.mark.parametrize("code", ["ResourceNotFoundException", "AccessDeniedException"])
def test_secret_errors_are_configuration_faults(code):
    boto_client = MagicMock()
    boto_client.get_secret_value.side_effect = ClientError({"Error": {"Code": code}}, "GetSecretValue")

    with pytest.raises(ConfigurationFault):
        SecretsManager(client=boto_client).get_secret("arn:missing")


def test_secret_must_be_json():
    boto_client = MagicMock()
    boto_client.get_secret_value.return_value = {"SecretString": "not json"}

    with pytest.raises(ConfigurationFault, match="not valid JSON"):
        SecretsManager(client=boto_client).get_secret("arn:bad")
