import base64
import datetime as dt
import time

import pytest
from cryptography import x509 as cx509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from jwcrypto import jwk, jwt
from prometheus_client import CollectorRegistry

import decoratorauth
from app import create_app
from ca_client import CACert
from decoratorauth import KeycloakVerifier
from dms_config import load_env_conf
from dms_store import DMSStore
from enroller import EnrollerService
from errors import CAClientError
from est_service import ESTService
from utils_crt import b64_encode, cert_to_pem_b64, csr_to_pem, format_serial, normalize_serial, subject_from_name

ENROLLER_CA = "Lamassu-DMS-Enroller"
DEVICE_CA = "CA-root-RSA4096"


def _name(cn):
    return cx509.Name([cx509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _self_signed(cn, key):
    now = dt.datetime.now(dt.timezone.utc)
    return (
        cx509.CertificateBuilder()
        .subject_name(_name(cn))
        .issuer_name(_name(cn))
        .public_key(key.public_key())
        .serial_number(cx509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=5))
        .not_valid_after(now + dt.timedelta(days=365))
        .add_extension(cx509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )


class FakeCAClient:
    """In-memory CA: real signatures, call log, switchable failures."""

    def __init__(self, names=(ENROLLER_CA, DEVICE_CA)):
        self.cas = {}
        for name in names:
            key = ec.generate_private_key(ec.SECP256R1())
            self.cas[name] = (key, _self_signed(name, key))
        self.issued = {}
        self.calls = []
        self.fail_sign = False
        self.fail_revoke = False
        self.fail_get = False

    def get_cas(self, profile):
        self.calls.append(("get_cas", profile))
        return [CACert(name=n, cert_base64=cert_to_pem_b64(c)) for n, (_, c) in self.cas.items()]

    def get_cert(self, ca_name, serial, profile):
        self.calls.append(("get_cert", ca_name, serial, profile))
        if self.fail_get:
            raise CAClientError("CA unavailable", status_code=503)
        cert = self.issued.get((ca_name, normalize_serial(serial)))
        if cert is None:
            raise CAClientError("certificate not found", status_code=404)
        return CACert(
            name=ca_name,
            serial_number=format_serial(cert.serial_number),
            status="issued",
            subject=subject_from_name(cert.subject),
            cert_base64=cert_to_pem_b64(cert),
        )

    def sign_certificate_request(self, ca_name, csr, profile, sign_verbatim=True):
        self.calls.append(("sign", ca_name, profile))
        if self.fail_sign:
            raise CAClientError("sign refused by CA", status_code=500)
        if ca_name not in self.cas:
            raise CAClientError(f"CA {ca_name} not found", status_code=404)
        ca_key, ca_cert = self.cas[ca_name]
        now = dt.datetime.now(dt.timezone.utc)
        builder = (
            cx509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(cx509.random_serial_number())
            .not_valid_before(now - dt.timedelta(minutes=1))
            .not_valid_after(now + dt.timedelta(days=30))
        )
        for ext in csr.extensions:
            builder = builder.add_extension(ext.value, critical=ext.critical)
        cert = builder.sign(ca_key, hashes.SHA256())
        self.issued[(ca_name, format_serial(cert.serial_number))] = cert
        return cert

    def revoke_cert(self, ca_name, serial, profile):
        self.calls.append(("revoke", ca_name, serial, profile))
        if self.fail_revoke:
            raise CAClientError("revoke refused by CA", status_code=500)

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


def make_csr(cn, key=None, sans=None, country=None):
    key = key or ec.generate_private_key(ec.SECP256R1())
    attrs = []
    if country:
        attrs.append(cx509.NameAttribute(NameOID.COUNTRY_NAME, country))
    attrs.append(cx509.NameAttribute(NameOID.COMMON_NAME, cn))
    builder = cx509.CertificateSigningRequestBuilder().subject_name(cx509.Name(attrs))
    if sans:
        builder = builder.add_extension(
            cx509.SubjectAlternativeName([cx509.DNSName(s) for s in sans]), critical=False
        )
    return builder.sign(key, hashes.SHA256()), key


def csr_b64(cn, **kwargs):
    csr, _ = make_csr(cn, **kwargs)
    return b64_encode(csr_to_pem(csr))


@pytest.fixture
def fake_ca():
    return FakeCAClient()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'dms.db'}"


@pytest.fixture
def store(db_url):
    s = DMSStore(db_url)
    s.init_schema()
    return s


@pytest.fixture
def service(store, fake_ca):
    return EnrollerService(store, fake_ca)


@pytest.fixture
def est(store, fake_ca):
    return ESTService(fake_ca, store)


# ---------------- identity provider ----------------

class TokenFactory:
    def __init__(self):
        self.key = jwk.JWK.generate(kty="RSA", size=2048)
        pem = self.key.export_to_pem().decode("ascii")
        self.public_key_b64 = "".join(l for l in pem.splitlines() if not l.startswith("-----"))

    def mint(self, username, roles=(), exp_delta=300, key=None, alg="RS256"):
        claims = {
            "preferred_username": username,
            "realm_access": {"roles": list(roles)},
            "exp": int(time.time()) + exp_delta,
        }
        tok = jwt.JWT(header={"alg": alg}, claims=claims)
        tok.make_signed_token(key or self.key)
        return tok.serialize()

    def admin(self):
        return {"Authorization": "Bearer " + self.mint("admin-user", roles=["admin"])}

    def user(self, username):
        return {"Authorization": "Bearer " + self.mint(username, roles=["operator"])}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            import requests
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._payload


@pytest.fixture
def tokens():
    return TokenFactory()


@pytest.fixture
def realm(monkeypatch, tokens):
    """Serve the realm document with the token factory's public key."""
    fetches = []

    def fake_get(url, verify=True, timeout=None):
        fetches.append(url)
        return FakeResponse({"realm": "lamassu", "public_key": tokens.public_key_b64})

    monkeypatch.setattr(decoratorauth.requests, "get", fake_get)
    return fetches


@pytest.fixture
def app(db_url, store, fake_ca, realm):
    conf = load_env_conf(environ={"DATABASE_URL": db_url, "SERVICE_HOST": "enroller.test"})
    verifier = KeycloakVerifier("https", "keycloak", 8443, "lamassu")
    application = create_app(conf, store=store, ca_client=fake_ca, verifier=verifier, registry=CollectorRegistry())
    application.testing = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()


def peer_environ(cert):
    return {"SSL_CLIENT_CERT": cert.public_bytes(serialization.Encoding.PEM).decode("ascii")}


def est_body(csr):
    return base64.b64encode(csr.public_bytes(serialization.Encoding.DER))
