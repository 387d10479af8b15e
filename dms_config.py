import os
import socket

import yaml

DEFAULTS = {
    "port": 8085,
    "protocol": "http",
    "mutual_tls_enabled": False,
    "mutual_tls_client_ca": "",
    "mtls_proxy_headers": False,
    "database_url": "sqlite:///dms_enroller.db",
    "store_retry_attempts": 12,
    "store_retry_interval": 5.0,
    "ca_address": "",
    "ca_cert_file": "",
    "cert_file": "",
    "key_file": "",
    "ca_timeout": 20.0,
    "enroller_ca_name": "Lamassu-DMS-Enroller",
    "ca_profile": "dmsenroller",
    "keycloak_hostname": "",
    "keycloak_port": 8443,
    "keycloak_protocol": "https",
    "keycloak_realm": "lamassu",
    "keycloak_ca": "",
    "keycloak_key_ttl": 300.0,
    "consul_protocol": "https",
    "consul_host": "",
    "consul_port": 8501,
    "consul_ca": "",
    "service_host": "",
    "debug_mode": False,
}

# config key -> environment variable
ENV_VARS = {
    "port": "PORT",
    "protocol": "PROTOCOL",
    "mutual_tls_enabled": "MUTUAL_TLS_ENABLED",
    "mutual_tls_client_ca": "MUTUAL_TLS_CLIENT_CA",
    "mtls_proxy_headers": "MUTUAL_TLS_PROXY_HEADERS",
    "database_url": "DATABASE_URL",
    "store_retry_attempts": "STORE_RETRY_ATTEMPTS",
    "store_retry_interval": "STORE_RETRY_INTERVAL",
    "ca_address": "LAMASSU_CA_ADDRESS",
    "ca_cert_file": "LAMASSU_CA_CERT_FILE",
    "cert_file": "CERT_FILE",
    "key_file": "KEY_FILE",
    "ca_timeout": "LAMASSU_CA_TIMEOUT",
    "enroller_ca_name": "DMS_ENROLLER_CA",
    "ca_profile": "DMS_CA_PROFILE",
    "keycloak_hostname": "KEYCLOAK_HOSTNAME",
    "keycloak_port": "KEYCLOAK_PORT",
    "keycloak_protocol": "KEYCLOAK_PROTOCOL",
    "keycloak_realm": "KEYCLOAK_REALM",
    "keycloak_ca": "KEYCLOAK_CA",
    "keycloak_key_ttl": "KEYCLOAK_KEY_TTL",
    "consul_protocol": "CONSUL_PROTOCOL",
    "consul_host": "CONSUL_HOST",
    "consul_port": "CONSUL_PORT",
    "consul_ca": "CONSUL_CA",
    "service_host": "SERVICE_HOST",
    "debug_mode": "DEBUG_MODE",
}

_TRUE = {"1", "true", "yes", "on"}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _coerce(key, value):
    default = DEFAULTS[key]
    if isinstance(default, bool):
        return _as_bool(value)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{ENV_VARS[key]} must be an integer (got {value!r})") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{ENV_VARS[key]} must be a number (got {value!r})") from None
    return "" if value is None else str(value)


def load_env_conf(environ=None, path=None):
    """
    Build the service config: defaults, then the optional YAML file
    (`path` or DMS_CONFIG_FILE, lower-case keys), then the environment.
    """
    environ = os.environ if environ is None else environ
    conf = dict(DEFAULTS)

    path = path or environ.get("DMS_CONFIG_FILE")
    if path:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        if not isinstance(cfg, dict):
            raise ValueError(f"{path}: top level must be a mapping")
        for key, value in cfg.items():
            if key not in DEFAULTS:
                raise ValueError(f"{path}: unknown key '{key}'")
            conf[key] = _coerce(key, value)

    for key, var in ENV_VARS.items():
        if var in environ and environ[var] != "":
            conf[key] = _coerce(key, environ[var])

    conf["protocol"] = conf["protocol"].lower()
    if conf["protocol"] not in ("http", "https"):
        raise ValueError(f"PROTOCOL must be http or https (got {conf['protocol']!r})")
    if conf["protocol"] == "https" and not (conf["cert_file"] and conf["key_file"]):
        raise ValueError("PROTOCOL=https requires CERT_FILE and KEY_FILE")
    if conf["mutual_tls_enabled"] and not conf["mutual_tls_client_ca"]:
        raise ValueError("MUTUAL_TLS_ENABLED requires MUTUAL_TLS_CLIENT_CA")
    if conf["store_retry_attempts"] < 1:
        raise ValueError("STORE_RETRY_ATTEMPTS must be >= 1")
    if not conf["service_host"]:
        conf["service_host"] = socket.gethostname()
    return conf
