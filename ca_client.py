#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from cryptography import x509 as cx509

from errors import CAClientError
from models import Subject
from utils_crt import b64_encode, csr_to_pem, load_cert_b64


@dataclass
class CACert:
    name: str = ""
    serial_number: str = ""
    status: str = ""
    subject: Subject = field(default_factory=Subject)
    cert_base64: str = ""

    @property
    def certificate(self) -> cx509.Certificate:
        return load_cert_b64(self.cert_base64)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CACert":
        return cls(
            name=data.get("name") or data.get("ca_name") or "",
            serial_number=data.get("serial_number") or "",
            status=data.get("status") or "",
            subject=Subject.from_json(data.get("subject") or {}),
            cert_base64=data.get("crt") or "",
        )


class LamassuCAClient:
    """Outbound client of the external CA.

    Every request goes through one pooled requests.Session carrying the
    service's mTLS credentials. Failures are raised as CAClientError with
    the CA's own message.
    """

    def __init__(self, address: str, ca_cert_file=None, cert_file=None, key_file=None,
                 timeout: float = 20, session: Optional[requests.Session] = None):
        self.address = (address or "").rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if ca_cert_file:
            self.session.verify = ca_cert_file
        if cert_file and key_file:
            self.session.cert = (cert_file, key_file)

    def close(self):
        self.session.close()

    def _url(self, *parts: str) -> str:
        return self.address + "/v1/" + "/".join(quote(str(p), safe="") for p in parts)

    def _request(self, method: str, url: str, **kwargs):
        try:
            with self.session.request(method, url, timeout=self.timeout, **kwargs) as r:
                if r.status_code >= 400:
                    raise CAClientError(self._error_message(r), status_code=r.status_code)
                if not r.content:
                    return None
                try:
                    return r.json()
                except ValueError:
                    raise CAClientError(f"CA returned a non-JSON body for {method} {url}") from None
        except requests.RequestException as e:
            raise CAClientError(str(e)) from e

    @staticmethod
    def _error_message(r) -> str:
        try:
            body = r.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return (r.text or r.reason or f"HTTP {r.status_code}").strip()

    # ---------------- contract ----------------

    def get_cas(self, profile: str) -> List[CACert]:
        data = self._request("GET", self._url(profile)) or []
        if not isinstance(data, list):
            raise CAClientError("unexpected CA list payload")
        return [CACert.from_json(item) for item in data]

    def get_cert(self, ca_name: str, serial: str, profile: str) -> CACert:
        data = self._request("GET", self._url(profile, ca_name, "cert", serial))
        if not isinstance(data, dict):
            raise CAClientError("unexpected certificate payload")
        return CACert.from_json(data)

    def sign_certificate_request(self, ca_name: str, csr: cx509.CertificateSigningRequest,
                                 profile: str, sign_verbatim: bool = True) -> cx509.Certificate:
        body = {"csr": b64_encode(csr_to_pem(csr)), "sign_verbatim": bool(sign_verbatim)}
        data = self._request("POST", self._url(profile, ca_name, "sign"), json=body)
        if not isinstance(data, dict) or not data.get("crt"):
            raise CAClientError("CA sign response carries no certificate")
        try:
            return load_cert_b64(data["crt"])
        except ValueError as e:
            raise CAClientError(f"CA returned an undecodable certificate: {e}") from e

    def revoke_cert(self, ca_name: str, serial: str, profile: str) -> None:
        self._request("DELETE", self._url(profile, ca_name, "cert", serial))
