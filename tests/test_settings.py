import pytest

from policy_agent.errors import ConfigurationError
from policy_agent.models import KEYSTORE_ALIAS, TRUSTSTORE_ALIAS
from policy_agent.settings import ENV_PREFIX, AgentSettings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in AgentSettings.model_fields:
        monkeypatch.delenv(f"{ENV_PREFIX}{name.upper()}", raising=False)


def test_defaults():
    settings = load_settings()

    assert settings.policy_url is None
    assert settings.poll_seconds == 30.0
    assert settings.usergroup_delimiter == ","
    assert settings.cache_file.endswith("policy-cache.json")


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("POLICY_AGENT_POLICY_URL", "https://authority.example/policy")
    monkeypatch.setenv("POLICY_AGENT_POLL_SECONDS", "5")
    monkeypatch.setenv("POLICY_AGENT_KEYSTORE", "/etc/agent/keystore.p12")
    monkeypatch.setenv("POLICY_AGENT_TRUSTSTORE_TYPE", " pem ")

    settings = load_settings()

    assert settings.policy_url == "https://authority.example/policy"
    assert settings.poll_seconds == 5.0
    assert settings.keystore == "/etc/agent/keystore.p12"
    assert settings.truststore_type == "pem"


def test_blank_environment_value_is_unset(monkeypatch):
    monkeypatch.setenv("POLICY_AGENT_POLICY_URL", "   ")

    assert load_settings().policy_url is None


def test_tab_delimiter_survives(monkeypatch):
    monkeypatch.setenv("POLICY_AGENT_USERGROUP_DELIMITER", "\t")

    assert load_settings().usergroup_delimiter == "\t"


def test_overrides_win(monkeypatch):
    monkeypatch.setenv("POLICY_AGENT_USERGROUP_FILE", "/from/env.csv")

    assert load_settings(usergroup_file="/from/arg.csv").usergroup_file == "/from/arg.csv"
    assert load_settings(usergroup_file=None).usergroup_file == "/from/env.csv"


@pytest.mark.parametrize(
    "name,value",
    [
        ("POLICY_AGENT_POLL_SECONDS", "0"),
        ("POLICY_AGENT_POLL_SECONDS", "-3"),
        ("POLICY_AGENT_POLL_SECONDS", "often"),
        ("POLICY_AGENT_POLL_SECONDS", "nan"),
        ("POLICY_AGENT_POLL_SECONDS", "inf"),
        ("POLICY_AGENT_HTTP_TIMEOUT", "inf"),
        ("POLICY_AGENT_HTTP_TIMEOUT", "0"),
        ("POLICY_AGENT_USERGROUP_DELIMITER", ";;"),
    ],
)
def test_invalid_values_are_configuration_errors(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        load_settings()


def test_channel_config():
    settings = AgentSettings(
        keystore="/etc/agent/keystore.p12",
        keystore_credential="jceks://file/etc/agent/cred.json",
        truststore="/etc/agent/truststore.p12",
    )

    config = settings.channel_config()

    assert config.mutual_tls
    assert config.keystore_path == "/etc/agent/keystore.p12"
    assert config.keystore_credential == "jceks://file/etc/agent/cred.json"
    assert config.keystore_alias == KEYSTORE_ALIAS
    assert config.truststore_alias == TRUSTSTORE_ALIAS
    assert not AgentSettings().channel_config().mutual_tls
