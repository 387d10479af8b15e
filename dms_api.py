import uuid

from flask import Blueprint, Response, current_app, g, request
from werkzeug.exceptions import HTTPException

from decoratorauth import token_required
from errors import IncorrectTypeError, InvalidIDFormatError, ValidationError
from models import KeyMetadata, Subject
from transport import (
    HAL_JSON,
    PKCS7_CERTS_ONLY,
    add_cors_headers,
    hal_dms,
    hal_dms_list,
    json_error,
    json_response,
    log_error,
    status_for,
)
from utils_crt import cert_to_pem_b64


dms_api = Blueprint("dms_api", __name__)


# --------------------------------- Helpers -----------------------------------

def _service():
    return current_app.enroller


def _json_body() -> dict:
    if not request.is_json:
        raise IncorrectTypeError()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("cannot decode JSON request")
    return body


def _check_id(dms_id: str) -> str:
    try:
        return str(uuid.UUID(dms_id))
    except ValueError:
        raise InvalidIDFormatError() from None


@dms_api.after_request
def _cors(resp):
    return add_cors_headers(resp)


@dms_api.errorhandler(Exception)
def _on_error(err):
    if isinstance(err, HTTPException):
        return add_cors_headers(err.get_response())
    log_error(current_app.dms_logger, err, status_for(err), request.method, request.path)
    return add_cors_headers(json_error(err))


# --------------------------------- Routes ------------------------------------

@dms_api.route("/v1/health", methods=["GET"])
def health():
    return json_response({"healthy": bool(_service().health())})


@dms_api.route("/v1/", methods=["GET"])
@token_required
def list_dmss():
    identity = g.identity
    username = None if identity.is_admin else identity.username
    items = _service().get_dmss(username=username)
    return json_response(hal_dms_list(items), content_type=HAL_JSON)


@dms_api.route("/v1/<name>", methods=["POST"])
@token_required
def create_dms(name):
    body = _json_body()
    csr = body.get("csr")
    if not isinstance(csr, str):
        raise ValidationError("csr must be a base64 string")
    dms = _service().create_dms(csr, name)
    return json_response(dms.to_json())


@dms_api.route("/v1/<name>/form", methods=["POST"])
@token_required
def create_dms_form(name):
    body = _json_body()
    subject = Subject.from_json(body.get("subject"))
    key_metadata = KeyMetadata.from_json(body.get("key_metadata"))
    priv_key, dms = _service().create_dms_form(subject, key_metadata, name)
    return json_response({"dms": dms.to_json(), "priv_key": priv_key})


@dms_api.route("/v1/<dms_id>", methods=["GET"])
@token_required
def get_dms(dms_id):
    dms = _service().get_dms_by_id(_check_id(dms_id))
    return json_response(hal_dms(dms), content_type=HAL_JSON)


@dms_api.route("/v1/<dms_id>", methods=["PUT"])
@token_required
def update_dms_status(dms_id):
    dms_id = _check_id(dms_id)
    body = _json_body()
    status = body.get("status")
    if not isinstance(status, str) or not status:
        raise ValidationError("status is required")
    dms = _service().update_dms_status(status, dms_id, body.get("authorized_cas"))
    return json_response(dms.to_json())


@dms_api.route("/v1/<dms_id>", methods=["DELETE"])
@token_required
def delete_dms(dms_id):
    dms_id = _check_id(dms_id)
    _service().delete_dms(dms_id)
    return json_response({"id": dms_id, "deleted": True})


@dms_api.route("/v1/<dms_id>/crt", methods=["GET"])
@token_required
def get_dms_certificate(dms_id):
    cert = _service().get_dms_certificate(_check_id(dms_id))
    return Response(
        cert_to_pem_b64(cert),
        status=200,
        content_type=PKCS7_CERTS_ONLY,
        headers={"Content-Transfer-Encoding": "base64"},
    )
