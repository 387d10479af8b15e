import json
import textwrap
import threading
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import List, Optional
from urllib.parse import unquote

import requests
from cryptography import x509 as cx509
from flask import current_app, g, request
from jwcrypto import jwk as jwk_mod
from jwcrypto import jwt as jwt_mod
from jwcrypto.common import JWException

from errors import AuthError, IdentityProviderError, PeerCertificateMissingError
from utils_crt import load_certificate_bytes

ADMIN_ROLE = "admin"


@dataclass
class Identity:
    username: str
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def _wrap_public_key(b64_key: str) -> bytes:
    body = "\n".join(textwrap.wrap("".join(b64_key.split()), 64))
    return ("-----BEGIN PUBLIC KEY-----\n" + body + "\n-----END PUBLIC KEY-----\n").encode("ascii")


class KeycloakVerifier:
    """RS256 bearer tokens signed by the realm key of the identity provider.

    The realm public key is fetched from the realm endpoint and kept for
    `ttl` seconds.
    """

    def __init__(self, protocol: str, hostname: str, port, realm: str,
                 ca_file=None, ttl: float = 300, timeout: float = 5):
        self.realm_url = f"{protocol}://{hostname}:{port}/auth/realms/{realm}"
        self.verify = ca_file or True
        self.ttl = ttl
        self.timeout = timeout
        self._key = None
        self._expiry = 0.0
        self._lock = threading.Lock()

    def _fetch(self):
        try:
            r = requests.get(self.realm_url, verify=self.verify, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise IdentityProviderError(f"cannot fetch realm public key: {e}") from e
        b64_key = data.get("public_key") if isinstance(data, dict) else None
        if not b64_key:
            raise IdentityProviderError("realm document carries no public_key")
        try:
            key = jwk_mod.JWK.from_pem(_wrap_public_key(b64_key))
        except (ValueError, TypeError, JWException) as e:
            raise IdentityProviderError(f"cannot parse realm public key: {e}") from e
        if key.key_type != "RSA":
            raise IdentityProviderError("realm public key is not an RSA key")
        return key

    def public_key(self):
        with self._lock:
            now = time.time()
            if self._key is not None and now < self._expiry:
                return self._key
            self._key = self._fetch()
            self._expiry = now + self.ttl
            return self._key

    def verify_token(self, token: str) -> Identity:
        key = self.public_key()
        try:
            tok = jwt_mod.JWT(jwt=token, key=key, algs=["RS256"])
            claims = json.loads(tok.claims)
        except (JWException, ValueError, TypeError) as e:
            raise AuthError(f"invalid token: {e}") from e
        if not isinstance(claims, dict):
            raise AuthError("invalid token: claims are not an object")
        username = claims.get("preferred_username") or ""
        roles = (claims.get("realm_access") or {}).get("roles") or []
        if not isinstance(roles, list):
            roles = []
        return Identity(username=username, roles=[str(r) for r in roles])


def _bearer_token() -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("missing bearer token")
    return token.strip()


def token_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = _bearer_token()
        verifier = getattr(current_app, "verifier", None)
        if verifier is None:
            raise AuthError("token verification is not configured")
        g.identity = verifier.verify_token(token)
        return f(*args, **kwargs)
    return decorated_function


# ---------------- mTLS ----------------

def peer_certificate() -> Optional[cx509.Certificate]:
    """First peer certificate of the TLS connection, if any.

    The TLS server exposes it as SSL_CLIENT_CERT (PEM). Behind a TLS
    terminator, and only when enabled, the URL-escaped PEM is read from
    X-Ssl-Client-Cert instead.
    """
    pem = request.environ.get("SSL_CLIENT_CERT")
    if not pem and current_app.confdms.get("mtls_proxy_headers"):
        header = request.headers.get("X-Ssl-Client-Cert")
        pem = unquote(header) if header else None
    if not pem:
        return None
    if isinstance(pem, str):
        pem = pem.encode("ascii", errors="ignore")
    try:
        return load_certificate_bytes(pem)
    except ValueError as e:
        raise AuthError(f"unreadable client certificate: {e}") from e


def mtls_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        cert = peer_certificate()
        if cert is None:
            raise PeerCertificateMissingError()
        g.peer_certificate = cert
        return f(*args, **kwargs)
    return decorated_function
