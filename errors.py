#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Error taxonomy of the enrollment service.

Service code raises these; only transport.py knows which HTTP status
each one maps to.
"""


class DMSError(Exception):
    default_message = "internal error"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.default_message


# ---------------- Input shape ----------------

class ValidationError(DMSError, ValueError):
    default_message = "validation error"


class InvalidCSRError(ValidationError):
    default_message = "unable to parse CSR, is invalid"


class InvalidIDFormatError(ValidationError):
    default_message = "invalid ID format"


class EmptyDMSNameError(ValidationError):
    default_message = "DMS name is empty"


# ---------------- State machine ----------------

class InvalidOperationError(DMSError):
    default_message = "invalid operation"


class InvalidApproveOpError(InvalidOperationError):
    default_message = "invalid operation, only pending status DMSs can be approved"


class InvalidRevokeOpError(InvalidOperationError):
    default_message = "invalid operation, only approved status DMSs can be revoked"


class InvalidDenyOpError(InvalidOperationError):
    default_message = "invalid operation, only pending status DMSs can be denied"


class InvalidDeleteOpError(InvalidOperationError):
    default_message = "invalid operation, only denied or revoked status DMSs can be deleted"


# ---------------- Lookup / conflict / media ----------------

class InvalidIDError(DMSError):
    default_message = "invalid ID, no DMS with that ID"


class ResourceNotFoundError(DMSError, LookupError):
    default_message = "resource not found"


class DuplicateResourceError(DMSError):
    default_message = "duplicate resource"


class IncorrectTypeError(DMSError):
    default_message = "unsupported media type"


# ---------------- Authentication / EST ----------------

class AuthError(DMSError):
    default_message = "unauthorized"


class PeerCertificateMissingError(AuthError):
    default_message = "peer certificates context missing"


class SubjectChangedError(DMSError):
    default_message = "subject or subject alternative name changed"


class DMSNotAuthorizedError(DMSError):
    default_message = "DMS not authorized for this CA"


# ---------------- Downstream ----------------

class GetCertError(DMSError):
    default_message = "unable to get certificate"


class CAClientError(DMSError):
    default_message = "CA client error"

    def __init__(self, message=None, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(DMSError):
    default_message = "store error"


class IdentityProviderError(DMSError):
    default_message = "identity provider error"
