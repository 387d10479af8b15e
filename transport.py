#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""HTTP encodings shared by both blueprints and the single error-to-status table."""

import base64
import json
import textwrap
import uuid
from typing import Iterable, List

from cryptography import x509 as cx509
from flask import Response

from errors import (
    AuthError,
    DMSError,
    DMSNotAuthorizedError,
    DuplicateResourceError,
    IncorrectTypeError,
    InvalidIDError,
    InvalidOperationError,
    ResourceNotFoundError,
    SubjectChangedError,
    ValidationError,
)
from middlewares import current_trace_id
from models import DMS
from utils_crt import pkcs7_certs_only

HAL_JSON = "application/hal+json"
JSON = "application/json"
PKCS7_CERTS_ONLY = "application/pkcs7-mime; smime-type=certs-only"
PKCS8 = "application/pkcs8"
PKCS10 = "application/pkcs10"

# ---------------- Errors ----------------

_STATUS_BY_ERROR = (
    (AuthError, 401),
    (ValidationError, 400),
    (InvalidOperationError, 400),
    (SubjectChangedError, 400),
    (DMSNotAuthorizedError, 403),
    (InvalidIDError, 404),
    (ResourceNotFoundError, 404),
    (DuplicateResourceError, 409),
    (IncorrectTypeError, 415),
    (NotImplementedError, 501),
)


def status_for(err: BaseException) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(err, cls):
            return status
    return 500


def public_message(err: BaseException, status: int) -> str:
    """Client errors carry their message; 5xx bodies stay generic."""
    if status < 500:
        return err.message if isinstance(err, DMSError) else str(err)
    if status == 501:
        return "not implemented"
    if isinstance(err, DMSError):
        return err.default_message
    return "internal server error"


def log_error(logger, err: BaseException, status: int, method: str, path: str) -> None:
    fields = {
        "status": status,
        "method": method,
        "path": path,
        "trace_id": current_trace_id(),
        "err": f"{type(err).__name__}: {err}",
    }
    if status >= 500:
        logger.error("request failed", extra={"fields": fields}, exc_info=err)
    else:
        logger.info("request rejected", extra={"fields": fields})


def _error_headers(err: BaseException) -> dict:
    if isinstance(err, AuthError):
        return {"WWW-Authenticate": "Bearer"}
    return {}


def json_error(err: BaseException) -> Response:
    status = status_for(err)
    resp = json_response({"error": public_message(err, status)}, status=status)
    resp.headers.update(_error_headers(err))
    return resp


def text_error(err: BaseException) -> Response:
    status = status_for(err)
    return Response(
        public_message(err, status) + "\n",
        status=status,
        content_type="text/plain; charset=utf-8",
        headers=_error_headers(err),
    )


# ---------------- JSON / HAL ----------------

def json_response(payload, status: int = 200, content_type: str = JSON) -> Response:
    return Response(json.dumps(payload), status=status, content_type=content_type)


def dms_self_href(dms_id: str) -> str:
    return f"/v1/{dms_id}"


def hal_dms(dms: DMS) -> dict:
    out = dms.to_json()
    out["_links"] = {"self": {"href": dms_self_href(dms.id)}}
    return out


def hal_dms_list(items: List[DMS]) -> dict:
    return {
        "_links": {"self": {"href": "/v1/"}},
        "_embedded": {"dms": [hal_dms(d) for d in items]},
        "total": len(items),
    }


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS, PUT, DELETE",
    "Access-Control-Allow-Headers": "Origin, Content-Type, Authorization",
}


def add_cors_headers(resp: Response) -> Response:
    for k, v in CORS_HEADERS.items():
        resp.headers[k] = v
    return resp


# ---------------- EST encodings ----------------

def _b64_lines(der: bytes) -> str:
    return "\n".join(textwrap.wrap(base64.b64encode(der).decode("ascii"), 64)) + "\n"


def est_certs_response(certs: Iterable[cx509.Certificate], status: int = 200) -> Response:
    return Response(
        _b64_lines(pkcs7_certs_only(certs)),
        status=status,
        content_type=PKCS7_CERTS_ONLY,
        headers={"Content-Transfer-Encoding": "base64"},
    )


def est_serverkeygen_response(cert: cx509.Certificate, key_der: bytes) -> Response:
    """multipart/mixed: the PKCS#8 key part, then the certs-only PKCS#7 part."""
    boundary = uuid.uuid4().hex
    parts = [
        (PKCS8, key_der),
        (PKCS7_CERTS_ONLY, pkcs7_certs_only([cert])),
    ]
    body = ""
    for content_type, der in parts:
        body += (
            f"--{boundary}\r\n"
            f"Content-Type: {content_type}\r\n"
            "Content-Transfer-Encoding: base64\r\n"
            "\r\n"
            f"{_b64_lines(der)}"
        )
    body += f"--{boundary}--\r\n"
    return Response(body, status=200, content_type=f"multipart/mixed; boundary={boundary}")


def is_media_type(content_type: str, expected: str) -> bool:
    return (content_type or "").split(";", 1)[0].strip().lower() == expected
