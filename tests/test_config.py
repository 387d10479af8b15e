import pytest

from dms_config import load_env_conf


def test_defaults():
    conf = load_env_conf(environ={})
    assert conf["port"] == 8085
    assert conf["protocol"] == "http"
    assert conf["enroller_ca_name"] == "Lamassu-DMS-Enroller"
    assert conf["ca_profile"] == "dmsenroller"
    assert conf["store_retry_interval"] == 5.0
    assert conf["service_host"]


def test_environment_overrides():
    conf = load_env_conf(environ={
        "PORT": "9443",
        "PROTOCOL": "HTTPS",
        "CERT_FILE": "/certs/enroller.crt",
        "KEY_FILE": "/certs/enroller.key",
        "MUTUAL_TLS_ENABLED": "true",
        "MUTUAL_TLS_CLIENT_CA": "/certs/clients.crt",
        "KEYCLOAK_HOSTNAME": "keycloak",
        "DEBUG_MODE": "1",
    })
    assert conf["port"] == 9443
    assert conf["protocol"] == "https"
    assert conf["mutual_tls_enabled"] is True
    assert conf["keycloak_hostname"] == "keycloak"
    assert conf["debug_mode"] is True


def test_yaml_file_below_environment(tmp_path):
    path = tmp_path / "enroller.yaml"
    path.write_text("port: 7000\nca_address: https://ca:8087\nconsul_host: consul\n", encoding="utf-8")
    conf = load_env_conf(environ={"PORT": "7001"}, path=str(path))
    assert conf["port"] == 7001
    assert conf["ca_address"] == "https://ca:8087"
    assert conf["consul_host"] == "consul"


@pytest.mark.parametrize("environ", [
    {"PROTOCOL": "ftp"},
    {"PROTOCOL": "https"},
    {"MUTUAL_TLS_ENABLED": "yes"},
    {"PORT": "eighty"},
    {"STORE_RETRY_ATTEMPTS": "0"},
])
def test_invalid_settings(environ):
    with pytest.raises(ValueError):
        load_env_conf(environ=environ)


def test_unknown_yaml_key(tmp_path):
    path = tmp_path / "enroller.yaml"
    path.write_text("postgres_db: dms\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_env_conf(environ={}, path=str(path))
