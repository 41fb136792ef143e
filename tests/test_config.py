"""Unit tests for credential loading and validation."""

import base64

import pytest

from atl_cli.core.client import ConfigurationError
from atl_cli.core.config import ENV_DOMAIN, ENV_EMAIL, ENV_TOKEN, AtlassianConfig
from atl_cli.sdk import AtlassianClient


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No Atlassian variables in the environment, and an empty working directory."""
    for name in (ENV_DOMAIN, ENV_EMAIL, ENV_TOKEN):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestLoad:
    def test_from_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv(ENV_DOMAIN, "acme.atlassian.net")
        monkeypatch.setenv(ENV_EMAIL, "dev@acme.io")
        monkeypatch.setenv(ENV_TOKEN, "secret")

        config = AtlassianConfig.load()

        assert config == AtlassianConfig("acme.atlassian.net", "dev@acme.io", "secret")

    def test_from_dotenv_in_working_directory(self, clean_env):
        (clean_env / ".env").write_text(
            f"{ENV_DOMAIN}=acme.atlassian.net\n{ENV_EMAIL}=dev@acme.io\n{ENV_TOKEN}=secret\n"
        )
        assert AtlassianConfig.load().validate().email == "dev@acme.io"

    def test_environment_wins_over_file(self, clean_env, monkeypatch):
        env_file = clean_env / "custom.env"
        env_file.write_text(f"{ENV_DOMAIN}=file.atlassian.net\n{ENV_EMAIL}=file@acme.io\n")
        monkeypatch.setenv(ENV_DOMAIN, "env.atlassian.net")

        config = AtlassianConfig.load(env_file)

        assert config.domain == "env.atlassian.net"
        assert config.email == "file@acme.io"

    def test_missing_file_is_not_an_error(self, clean_env):
        assert AtlassianConfig.load(clean_env / "nope.env") == AtlassianConfig()


class TestValidate:
    def test_missing_domain(self):
        with pytest.raises(ConfigurationError, match=ENV_DOMAIN):
            AtlassianConfig(email="a", token="b").validate()

    def test_missing_credentials_are_listed(self):
        with pytest.raises(ConfigurationError) as exc:
            AtlassianConfig(domain="acme.atlassian.net").validate()
        assert exc.value.details == {"missing": [ENV_EMAIL, ENV_TOKEN]}

    def test_valid_config_returns_itself(self):
        config = AtlassianConfig("acme.atlassian.net", "a", "b")
        assert config.validate() is config


class TestDerivedValues:
    def test_auth_is_basic_token(self):
        config = AtlassianConfig("acme.atlassian.net", "dev@acme.io", "secret")
        assert base64.b64decode(config.auth) == b"dev@acme.io:secret"

    @pytest.mark.parametrize(
        "domain",
        ["acme.atlassian.net", "acme.atlassian.net/", "https://acme.atlassian.net"],
    )
    def test_base_url(self, domain):
        assert AtlassianConfig(domain, "a", "b").base_url == "https://acme.atlassian.net"


class TestClientConstruction:
    def test_incomplete_config_fails_before_any_call(self):
        with pytest.raises(ConfigurationError):
            AtlassianClient(AtlassianConfig(domain="acme.atlassian.net", email="a"))

    def test_client_uses_config(self):
        client = AtlassianClient(AtlassianConfig("acme.atlassian.net", "a", "b"))
        assert client.api.base_url == "https://acme.atlassian.net"
        assert client.api.auth == AtlassianConfig("x", "a", "b").auth
