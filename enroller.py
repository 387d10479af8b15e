#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from typing import List, Optional, Tuple

from cryptography import x509 as cx509

from errors import (
    CAClientError,
    EmptyDMSNameError,
    GetCertError,
    InvalidCSRError,
    InvalidDeleteOpError,
    InvalidIDError,
    InvalidRevokeOpError,
    ResourceNotFoundError,
    ValidationError,
)
from logger import get_logger
from models import DMS, DMSStatus, KeyMetadata, Subject, Transition
from utils_crt import (
    b64_encode,
    cert_to_pem_b64,
    common_name,
    csr_to_pem,
    format_serial,
    generate_csr,
    generate_private_key,
    get_public_key_info,
    load_csr_b64,
    private_key_pem_b64,
    subject_from_name,
    validate_key_metadata,
)


DEFAULT_ENROLLER_CA = "Lamassu-DMS-Enroller"
DEFAULT_PROFILE = "dmsenroller"


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise EmptyDMSNameError()
    return name.strip()


def _clean_cas(authorized_cas) -> List[str]:
    if authorized_cas is None:
        return []
    if not isinstance(authorized_cas, (list, tuple)):
        raise ValidationError("authorized_cas must be a list of CA names")
    out = []
    for ca in authorized_cas:
        if not isinstance(ca, str) or not ca.strip():
            raise ValidationError("authorized_cas entries must be non-empty strings")
        out.append(ca.strip())
    return list(dict.fromkeys(out))


class EnrollerService:
    """DMS registration, approval workflow and read paths.

    The DMS certificate itself is signed, fetched and revoked under the
    enroller CA with the enroller profile; the authorized CAs bound on
    approval are the CAs the DMS's devices may later enroll against.
    """

    def __init__(self, store, ca_client, enroller_ca_name: str = DEFAULT_ENROLLER_CA,
                 profile: str = DEFAULT_PROFILE, logger=None):
        self.store = store
        self.ca_client = ca_client
        self.enroller_ca_name = enroller_ca_name
        self.profile = profile
        self.logger = logger or get_logger("dms-enroller.service")

    def health(self) -> bool:
        return True

    # ---------------- creation ----------------

    def create_dms(self, csr_b64: str, name: str) -> DMS:
        name = _clean_name(name)
        csr = load_csr_b64(csr_b64)
        key_type, key_bits = get_public_key_info(csr)
        dms = DMS(
            id="",
            name=name,
            status=DMSStatus.PENDING_APPROVAL,
            serial_number="",
            csr_base64=csr_b64.strip(),
            key_metadata=KeyMetadata(key_type=key_type, key_bits=key_bits),
        )
        dms_id = self.store.insert(dms)
        return self.store.select_by_id(dms_id)

    def create_dms_form(self, subject: Subject, key_metadata: KeyMetadata, name: str) -> Tuple[str, DMS]:
        """Generate key + CSR server side; the key is returned here and nowhere else."""
        name = _clean_name(name)
        validate_key_metadata(key_metadata)
        key = generate_private_key(key_metadata)
        csr = generate_csr(subject, key)
        dms = self.create_dms(b64_encode(csr_to_pem(csr)), name)
        priv_key_b64 = private_key_pem_b64(key)
        del key
        return priv_key_b64, dms

    # ---------------- status transitions ----------------

    def update_dms_status(self, status, dms_id: str, authorized_cas=None) -> DMS:
        target = DMSStatus.parse(status)
        cas = _clean_cas(authorized_cas)
        current = self.store.select_by_id(dms_id)
        transition = Transition.between(current.status, target)

        if transition.is_approve:
            if not cas:
                raise ValidationError("at least one authorized CA is required to approve a DMS")
            return self._approve(current, cas)
        if transition.is_revoke:
            return self._revoke(current)
        return self.store.update_by_id(
            current.id, DMSStatus.DENIED, "", expected_status=DMSStatus.PENDING_APPROVAL
        )

    def _approve(self, dms: DMS, cas: List[str]) -> DMS:
        csr = load_csr_b64(dms.csr_base64)
        crt = self.ca_client.sign_certificate_request(
            self.enroller_ca_name, csr, self.profile, sign_verbatim=True
        )
        serial = format_serial(crt.serial_number)
        try:
            approved = self.store.approve(dms.id, serial, cas)
        except BaseException:
            self._release_orphan(dms.id, serial)
            raise
        approved.certificate_base64 = cert_to_pem_b64(crt)
        approved.subject = subject_from_name(crt.subject)
        return approved

    def _release_orphan(self, dms_id: str, serial: str) -> None:
        """The CA signed but the approval was not stored: revoke what was issued."""
        try:
            self.ca_client.revoke_cert(self.enroller_ca_name, serial, self.profile)
        except CAClientError as e:
            self.logger.error(
                "leaked certificate: signed for a DMS whose approval was not stored and could not be revoked",
                extra={"fields": {"dms_id": dms_id, "orphan_serial": serial, "ca": self.enroller_ca_name, "err": str(e)}},
            )
            return
        self.logger.warning(
            "revoked certificate signed for a DMS whose approval was not stored",
            extra={"fields": {"dms_id": dms_id, "serial": serial}},
        )

    def _revoke(self, dms: DMS) -> DMS:
        if not dms.serial_number:
            raise InvalidRevokeOpError("invalid operation, DMS has no certificate serial to revoke")
        # CA first: on failure the row stays APPROVED and the CA still trusts the cert
        self.ca_client.revoke_cert(self.enroller_ca_name, dms.serial_number, self.profile)
        try:
            return self.store.update_by_id(
                dms.id, DMSStatus.REVOKED, dms.serial_number, expected_status=DMSStatus.APPROVED
            )
        except Exception as e:
            self.logger.error(
                "certificate revoked at the CA but the DMS status write failed",
                extra={"fields": {"dms_id": dms.id, "serial": dms.serial_number, "err": str(e)}},
            )
            raise

    # ---------------- deletion ----------------

    def delete_dms(self, dms_id: str) -> None:
        dms = self.store.select_by_id(dms_id)
        if not dms.status.deletable:
            raise InvalidDeleteOpError()
        self.store.delete(dms_id, allowed_statuses=(DMSStatus.DENIED, DMSStatus.REVOKED))

    # ---------------- reads ----------------

    def get_dmss(self, username: Optional[str] = None) -> List[DMS]:
        """All DMSs; with a username, only those whose CSR CN equals it."""
        if username is not None and not username:
            return []
        items = self.store.select_all()
        if username is not None:
            items = [d for d in items if self._csr_common_name(d) == username]
        for d in items:
            self._enrich(d)
        return items

    def get_dms_by_id(self, dms_id: str) -> DMS:
        dms = self.store.select_by_id(dms_id)
        self._enrich(dms)
        return dms

    def get_dms_certificate(self, dms_id: str) -> cx509.Certificate:
        try:
            dms = self.store.select_by_id(dms_id)
        except ResourceNotFoundError:
            raise InvalidIDError() from None
        if not dms.serial_number:
            raise ResourceNotFoundError("DMS has no issued certificate")
        try:
            return self.ca_client.get_cert(self.enroller_ca_name, dms.serial_number, self.profile).certificate
        except (CAClientError, ValueError) as e:
            raise GetCertError() from e

    @staticmethod
    def _csr_common_name(dms: DMS) -> str:
        try:
            return common_name(load_csr_b64(dms.csr_base64).subject)
        except InvalidCSRError:
            return ""

    def _enrich(self, dms: DMS) -> None:
        if not dms.serial_number:
            return
        try:
            ca_cert = self.ca_client.get_cert(self.enroller_ca_name, dms.serial_number, self.profile)
            subject = ca_cert.subject
            if subject.is_empty() and ca_cert.cert_base64:
                subject = subject_from_name(ca_cert.certificate.subject)
        except (CAClientError, ValueError) as e:
            self.logger.warning(
                "could not resolve DMS certificate",
                extra={"fields": {"dms_id": dms.id, "serial": dms.serial_number, "err": str(e)}},
            )
            return
        dms.subject = subject
        dms.certificate_base64 = ca_cert.cert_base64
