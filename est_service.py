#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from typing import List, Optional, Tuple

from cryptography import x509 as cx509
from cryptography.hazmat.primitives.asymmetric import ec

from enroller import DEFAULT_PROFILE
from errors import (
    CAClientError,
    DMSNotAuthorizedError,
    PeerCertificateMissingError,
    ResourceNotFoundError,
    SubjectChangedError,
    ValidationError,
)
from logger import get_logger
from models import DMSStatus
from utils_crt import common_name, format_serial, private_key_pkcs8_der, rekey_csr, same_subject_and_san


class ESTService:
    """RFC 7030 verbs on top of the CA client.

    Chain validation of the peer certificate belongs to the TLS layer;
    here the peer certificate must be present, and for enroll and
    serverkeygen it must belong to an approved DMS authorized for `aps`.
    """

    def __init__(self, ca_client, store, profile: str = DEFAULT_PROFILE, logger=None):
        self.ca_client = ca_client
        self.store = store
        self.profile = profile
        self.logger = logger or get_logger("dms-enroller.est")

    def cacerts(self, aps: str = "") -> List[cx509.Certificate]:
        cas = self.ca_client.get_cas(self.profile)
        out = []
        for ca in cas:
            if aps and ca.name != aps:
                continue
            try:
                out.append(ca.certificate)
            except ValueError as e:
                self.logger.warning(
                    "skipping undecodable CA certificate",
                    extra={"fields": {"ca": ca.name, "err": str(e)}},
                )
        if aps and not out:
            raise ResourceNotFoundError(f"no CA certificate found for '{aps}'")
        return out

    def _authorize(self, peer_cert: Optional[cx509.Certificate], aps: str) -> None:
        if peer_cert is None:
            raise PeerCertificateMissingError()
        if not aps:
            raise ValidationError("missing APS label")
        serial = format_serial(peer_cert.serial_number)
        try:
            dms = self.store.select_by_serial_number(serial)
        except ResourceNotFoundError:
            raise DMSNotAuthorizedError("client certificate does not belong to a registered DMS") from None
        if dms.status != DMSStatus.APPROVED:
            raise DMSNotAuthorizedError(f"DMS '{dms.name}' is not approved")
        if aps not in dms.authorized_cas:
            raise DMSNotAuthorizedError(f"DMS '{dms.name}' is not authorized for CA '{aps}'")

    def _sign(self, aps: str, csr: cx509.CertificateSigningRequest) -> cx509.Certificate:
        try:
            return self.ca_client.sign_certificate_request(aps, csr, self.profile, sign_verbatim=True)
        except CAClientError as e:
            self.logger.error("error in CA client request", extra={"fields": {"ca": aps, "err": str(e)}})
            raise

    def enroll(self, csr: cx509.CertificateSigningRequest, aps: str,
               peer_cert: Optional[cx509.Certificate]) -> cx509.Certificate:
        self._authorize(peer_cert, aps)
        return self._sign(aps, csr)

    def reenroll(self, cert: Optional[cx509.Certificate], csr: cx509.CertificateSigningRequest,
                 aps: str = "") -> cx509.Certificate:
        """Renew under the CA that issued `cert`, if subject and SAN are unchanged."""
        if cert is None:
            raise PeerCertificateMissingError()
        if not same_subject_and_san(cert, csr):
            raise SubjectChangedError()
        ca_name = aps or common_name(cert.issuer)
        if not ca_name:
            raise ValidationError("cannot determine the issuing CA of the client certificate")
        return self._sign(ca_name, csr)

    def server_keygen(self, csr: cx509.CertificateSigningRequest, aps: str,
                      peer_cert: Optional[cx509.Certificate]) -> Tuple[cx509.Certificate, bytes]:
        """Fresh P-256 key replaces the CSR key; returns (certificate, PKCS#8 DER key)."""
        self._authorize(peer_cert, aps)
        key = ec.generate_private_key(ec.SECP256R1())
        crt = self._sign(aps, rekey_csr(csr, key))
        return crt, private_key_pkcs8_der(key)

    def csr_attrs(self, aps: str = "") -> bytes:
        return b""

    def tpm_enroll(self, aps: str = ""):
        raise NotImplementedError("TPM enrollment is not supported")
