#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import base64
import binascii
from typing import Iterable, List, Optional, Tuple, Union

from asn1crypto import cms as a_cms
from asn1crypto import csr as a_csr
from asn1crypto import keys as a_keys
from asn1crypto import x509 as a_x509
from cryptography import x509 as cx509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID

from errors import InvalidCSRError, ValidationError
from models import KeyMetadata, Subject


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------

def b64_encode(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """Strict standard base64; surrounding whitespace and newlines are ignored."""
    compact = "".join((data or "").split())
    return base64.b64decode(compact, validate=True)


# -----------------------------------------------------------------------------
# CSR loading and key classification
# -----------------------------------------------------------------------------

def load_csr_b64(csr_b64: str) -> cx509.CertificateSigningRequest:
    """base64 -> PEM -> PKCS#10. Any failing step is an InvalidCSRError."""
    if not isinstance(csr_b64, str) or not csr_b64.strip():
        raise InvalidCSRError()
    try:
        pem = b64_decode(csr_b64)
        csr = cx509.load_pem_x509_csr(pem)
    except (ValueError, binascii.Error, TypeError):
        raise InvalidCSRError() from None
    return csr


def load_est_csr(body: bytes) -> cx509.CertificateSigningRequest:
    """EST bodies are base64 DER (RFC 7030 4.2.1); PEM and raw DER are tolerated."""
    if not body:
        raise InvalidCSRError()
    try:
        if b"-----BEGIN" in body:
            return cx509.load_pem_x509_csr(body)
        try:
            der = base64.b64decode(b"".join(body.split()), validate=True)
        except (binascii.Error, ValueError):
            der = body
        return cx509.load_der_x509_csr(der)
    except ValueError:
        raise InvalidCSRError() from None


def csr_to_pem(csr: cx509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.PEM)


def get_public_key_info(obj) -> Tuple[str, int]:
    """Return ('RSA', modulus bits) | ('EC', curve size) | ('UNKNOWN', -1).

    Works on anything with a public_key(): CSRs and certificates.
    """
    pk = obj.public_key()
    if isinstance(pk, rsa.RSAPublicKey):
        return ("RSA", pk.key_size)
    if isinstance(pk, ec.EllipticCurvePublicKey):
        return ("EC", pk.curve.key_size)
    return ("UNKNOWN", -1)


# -----------------------------------------------------------------------------
# Server-side key and CSR generation
# -----------------------------------------------------------------------------

_EC_CURVES = {
    224: ec.SECP224R1,
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}


def validate_key_metadata(km: KeyMetadata) -> None:
    if km.key_type == "RSA":
        if km.key_bits < 2048 or km.key_bits % 1024 != 0:
            raise ValidationError(f"invalid RSA key length {km.key_bits}: must be >= 2048 and a multiple of 1024")
        return
    if km.key_type == "EC":
        if km.key_bits not in _EC_CURVES:
            raise ValidationError(f"invalid EC key length {km.key_bits}: must be one of 224, 256, 384, 521")
        return
    raise ValidationError(f"unsupported key type '{km.key_type}'")


def generate_private_key(km: KeyMetadata):
    validate_key_metadata(km)
    if km.key_type == "RSA":
        return rsa.generate_private_key(public_exponent=65537, key_size=km.key_bits)
    return ec.generate_private_key(_EC_CURVES[km.key_bits]())


# Same RDN order as a pkix subject: C, ST, L, O, OU, CN
_SUBJECT_OIDS = (
    ("c", NameOID.COUNTRY_NAME),
    ("st", NameOID.STATE_OR_PROVINCE_NAME),
    ("l", NameOID.LOCALITY_NAME),
    ("o", NameOID.ORGANIZATION_NAME),
    ("ou", NameOID.ORGANIZATIONAL_UNIT_NAME),
    ("cn", NameOID.COMMON_NAME),
)


def build_subject(subject: Subject) -> cx509.Name:
    attrs = []
    for attr, oid in _SUBJECT_OIDS:
        value = getattr(subject, attr)
        if value:
            attrs.append(cx509.NameAttribute(oid, value))
    return cx509.Name(attrs)


def subject_from_name(name: cx509.Name) -> Subject:
    values = {}
    for attr, oid in _SUBJECT_OIDS:
        found = name.get_attributes_for_oid(oid)
        values[attr] = str(found[0].value) if found else ""
    return Subject(**values)


def common_name(name: cx509.Name) -> str:
    found = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(found[0].value) if found else ""


def generate_csr(subject: Subject, key) -> cx509.CertificateSigningRequest:
    """SHA-512 with RSA, or ECDSA with SHA-512, depending on the key."""
    if subject.c and len(subject.c) != 2:
        raise ValidationError("subject.country must be a two-letter code")
    builder = cx509.CertificateSigningRequestBuilder().subject_name(build_subject(subject))
    return builder.sign(key, hashes.SHA512())


def private_key_pem_b64(key) -> str:
    """PKCS#1 'RSA PRIVATE KEY' for RSA, SEC1 'EC PRIVATE KEY' for EC."""
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64_encode(pem)


def private_key_pkcs8_der(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


# -----------------------------------------------------------------------------
# Serial numbers
# -----------------------------------------------------------------------------

def format_serial(serial: int) -> str:
    """Lower-case hex, padded to even length, byte pairs joined by '-'."""
    h = format(int(serial), "x")
    if len(h) % 2:
        h = "0" + h
    return "-".join(h[i:i + 2] for i in range(0, len(h), 2))


def parse_serial(serial) -> int:
    """Accept an int, or hex grouped with ':' / '-' (or not grouped)."""
    if isinstance(serial, int):
        return serial
    s = (serial or "").strip().replace(":", "").replace("-", "")
    if s.lower().startswith("0x"):
        s = s[2:]
    if not s:
        raise ValidationError("empty serial number")
    try:
        return int(s, 16)
    except ValueError:
        raise ValidationError(f"invalid serial number '{serial}'") from None


def normalize_serial(serial) -> str:
    return format_serial(parse_serial(serial))


# -----------------------------------------------------------------------------
# Certificate encodings
# -----------------------------------------------------------------------------

_PEM_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_END = b"-----END CERTIFICATE-----"


def is_pem_blob(data: bytes) -> bool:
    return _PEM_BEGIN in data and _PEM_END in data


def cert_to_pem_b64(cert: cx509.Certificate) -> str:
    return b64_encode(cert.public_bytes(serialization.Encoding.PEM))


def load_cert_b64(cert_b64: str) -> cx509.Certificate:
    """base64 of a PEM certificate (the CA's transport form), or base64 DER."""
    data = b64_decode(cert_b64)
    if is_pem_blob(data):
        return cx509.load_pem_x509_certificate(data)
    return cx509.load_der_x509_certificate(data)


def load_certificate_bytes(data: bytes) -> cx509.Certificate:
    if is_pem_blob(data):
        return cx509.load_pem_x509_certificate(data)
    return cx509.load_der_x509_certificate(data)


def pkcs7_certs_only(certs: Iterable[cx509.Certificate]) -> bytes:
    """Degenerate certs-only PKCS#7 SignedData, DER encoded."""
    certs = list(certs)
    if certs:
        return pkcs7.serialize_certificates(certs, serialization.Encoding.DER)
    # cryptography refuses an empty bag
    signed_data = a_cms.SignedData({
        "version": "v1",
        "digest_algorithms": [],
        "encap_content_info": {"content_type": "data"},
        "signer_infos": [],
    })
    return a_cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()


# -----------------------------------------------------------------------------
# Raw DER comparisons and CSR re-keying (asn1crypto keeps original bytes)
# -----------------------------------------------------------------------------

def _san_from_extensions(extensions) -> Optional[bytes]:
    if not extensions:
        return None
    for ext in extensions:
        if ext["extn_id"].native == "subject_alt_name":
            return ext["extn_value"].contents
    return None


def _csr_san_bytes(req: a_csr.CertificationRequest) -> Optional[bytes]:
    for attr in req["certification_request_info"]["attributes"]:
        if attr["type"].native != "extension_request":
            continue
        for extensions in attr["values"]:
            found = _san_from_extensions(extensions)
            if found is not None:
                return found
    return None


def same_subject_and_san(cert: cx509.Certificate, csr: cx509.CertificateSigningRequest) -> bool:
    """Byte equality of subject DN and of the SubjectAltName extension value.

    No canonicalization: a re-encoded but equivalent name is a mismatch.
    """
    a_cert = a_x509.Certificate.load(cert.public_bytes(serialization.Encoding.DER))
    a_req = a_csr.CertificationRequest.load(csr.public_bytes(serialization.Encoding.DER))

    cert_subject = a_cert["tbs_certificate"]["subject"].dump()
    csr_subject = a_req["certification_request_info"]["subject"].dump()
    if cert_subject != csr_subject:
        return False

    cert_san = _san_from_extensions(a_cert["tbs_certificate"]["extensions"])
    csr_san = _csr_san_bytes(a_req)
    return cert_san == csr_san


def rekey_csr(csr: cx509.CertificateSigningRequest, key: ec.EllipticCurvePrivateKey) -> cx509.CertificateSigningRequest:
    """Swap the CSR public key for `key` and re-sign (ECDSA with SHA-256).

    Subject and attributes are carried over byte for byte.
    """
    req = a_csr.CertificationRequest.load(csr.public_bytes(serialization.Encoding.DER))
    info = req["certification_request_info"]
    spki = key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    new_info = a_csr.CertificationRequestInfo({
        "version": "v1",
        "subject": info["subject"],
        "subject_pk_info": a_keys.PublicKeyInfo.load(spki),
        "attributes": info["attributes"],
    })
    tbs = new_info.dump()
    signature = key.sign(tbs, ec.ECDSA(hashes.SHA256()))
    new_req = a_csr.CertificationRequest({
        "certification_request_info": new_info,
        "signature_algorithm": {"algorithm": "sha256_ecdsa"},
        "signature": signature,
    })
    return cx509.load_der_x509_csr(new_req.dump())
