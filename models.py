#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import (
    InvalidApproveOpError,
    InvalidDenyOpError,
    InvalidOperationError,
    InvalidRevokeOpError,
    ValidationError,
)


# ---------------- Status ----------------

LEGACY_PENDING_SPELLING = "PENDIG_APPROVAL"


class DMSStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    REVOKED = "REVOKED"

    @classmethod
    def parse(cls, value) -> "DMSStatus":
        """Accept the canonical names plus the misspelt legacy pending value."""
        if isinstance(value, cls):
            return value
        raw = (value or "").strip().upper() if isinstance(value, str) else ""
        if raw == LEGACY_PENDING_SPELLING:
            return cls.PENDING_APPROVAL
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(f"unknown DMS status '{value}'") from None

    @property
    def deletable(self) -> bool:
        return self in (DMSStatus.DENIED, DMSStatus.REVOKED)


@dataclass(frozen=True)
class Transition:
    """A legal (source, target) pair of the DMS lifecycle.

    Only obtainable through between(), which refuses every pair that is
    not in the lifecycle with the matching error.
    """
    source: DMSStatus
    target: DMSStatus

    _ALLOWED = {
        (DMSStatus.PENDING_APPROVAL, DMSStatus.APPROVED),
        (DMSStatus.PENDING_APPROVAL, DMSStatus.DENIED),
        (DMSStatus.APPROVED, DMSStatus.REVOKED),
    }

    @classmethod
    def between(cls, source: DMSStatus, target: DMSStatus) -> "Transition":
        if (source, target) in cls._ALLOWED:
            return cls(source, target)
        if target == DMSStatus.APPROVED:
            raise InvalidApproveOpError()
        if target == DMSStatus.REVOKED:
            raise InvalidRevokeOpError()
        if target == DMSStatus.DENIED:
            raise InvalidDenyOpError()
        raise InvalidOperationError(f"invalid operation, cannot move DMS from {source.value} to {target.value}")

    @property
    def is_approve(self) -> bool:
        return self.target == DMSStatus.APPROVED

    @property
    def is_revoke(self) -> bool:
        return self.target == DMSStatus.REVOKED

    @property
    def is_deny(self) -> bool:
        return self.target == DMSStatus.DENIED


# ---------------- Records ----------------

_SUBJECT_JSON = {
    "common_name": "cn",
    "organization": "o",
    "organization_unit": "ou",
    "country": "c",
    "state": "st",
    "locality": "l",
}


@dataclass
class Subject:
    cn: str = ""
    o: str = ""
    ou: str = ""
    c: str = ""
    st: str = ""
    l: str = ""

    def to_json(self) -> Dict[str, str]:
        return {k: getattr(self, attr) for k, attr in _SUBJECT_JSON.items()}

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "Subject":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("subject must be an object")
        values = {}
        for key, attr in _SUBJECT_JSON.items():
            v = data.get(key) or ""
            if not isinstance(v, str):
                raise ValidationError(f"subject.{key} must be a string")
            values[attr] = v
        return cls(**values)

    def is_empty(self) -> bool:
        return not any(getattr(self, attr) for attr in _SUBJECT_JSON.values())


def key_strength(key_type: str, key_bits: int) -> str:
    if key_type == "RSA":
        if key_bits < 2048:
            return "low"
        if key_bits < 3072:
            return "medium"
        return "high"
    if key_type == "EC":
        if key_bits < 224:
            return "low"
        if key_bits < 256:
            return "medium"
        return "high"
    return "unknown"


@dataclass
class KeyMetadata:
    key_type: str = "UNKNOWN"
    key_bits: int = -1

    @property
    def strength(self) -> str:
        return key_strength(self.key_type, self.key_bits)

    def to_json(self) -> Dict[str, Any]:
        return {"type": self.key_type, "bits": self.key_bits, "strength": self.strength}

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "KeyMetadata":
        if not isinstance(data, dict):
            raise ValidationError("key_metadata must be an object")
        key_type = data.get("type")
        bits = data.get("bits")
        if not isinstance(key_type, str) or not key_type:
            raise ValidationError("key_metadata.type is required")
        if isinstance(bits, bool) or not isinstance(bits, int):
            raise ValidationError("key_metadata.bits must be an integer")
        return cls(key_type=key_type.upper(), key_bits=bits)


@dataclass
class DMS:
    id: str
    name: str
    status: DMSStatus = DMSStatus.PENDING_APPROVAL
    serial_number: str = ""
    csr_base64: str = ""
    key_metadata: KeyMetadata = field(default_factory=KeyMetadata)
    subject: Subject = field(default_factory=Subject)
    certificate_base64: str = ""
    authorized_cas: List[str] = field(default_factory=list)
    creation_ts: str = ""
    modification_ts: str = ""

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "key_metadata": self.key_metadata.to_json(),
            "subject": self.subject.to_json(),
        }
        if self.serial_number:
            out["serial_number"] = self.serial_number
        if self.csr_base64:
            out["csr"] = self.csr_base64
        if self.certificate_base64:
            out["crt"] = self.certificate_base64
        if self.authorized_cas:
            out["authorized_cas"] = list(self.authorized_cas)
        if self.creation_ts:
            out["creation_timestamp"] = self.creation_ts
        if self.modification_ts:
            out["modification_timestamp"] = self.modification_ts
        return out
