from flask import Blueprint, Response, current_app, g, request
from werkzeug.exceptions import HTTPException

from decoratorauth import mtls_required
from errors import IncorrectTypeError
from transport import (
    PKCS10,
    est_certs_response,
    est_serverkeygen_response,
    is_media_type,
    log_error,
    status_for,
    text_error,
)
from utils_crt import load_est_csr


est_api = Blueprint("est_api", __name__, url_prefix="/.well-known/est")

# RFC 7030 bodies are a few KiB; anything larger is not a CSR
MAX_EST_BYTES = 64 * 1024


def _service():
    return current_app.est


def _csr_from_request():
    if not is_media_type(request.content_type, PKCS10):
        raise IncorrectTypeError()
    return load_est_csr(request.get_data(cache=False))


@est_api.before_request
def _limit_body():
    if (request.content_length or 0) > MAX_EST_BYTES:
        return Response("Request too large", status=413, content_type="text/plain; charset=utf-8")


@est_api.errorhandler(Exception)
def _on_error(err):
    if isinstance(err, HTTPException):
        return err
    log_error(current_app.dms_logger, err, status_for(err), request.method, request.path)
    return text_error(err)


# ---------------- Endpoints ----------------

@est_api.route("/cacerts", methods=["GET"])
@est_api.route("/<aps>/cacerts", methods=["GET"])
def cacerts(aps=""):
    return est_certs_response(_service().cacerts(aps))


@est_api.route("/<aps>/simpleenroll", methods=["POST"])
@mtls_required
def simpleenroll(aps):
    csr = _csr_from_request()
    crt = _service().enroll(csr, aps, g.peer_certificate)
    return est_certs_response([crt])


@est_api.route("/simplereenroll", methods=["POST"])
@est_api.route("/<aps>/simplereenroll", methods=["POST"])
@mtls_required
def simplereenroll(aps=""):
    csr = _csr_from_request()
    crt = _service().reenroll(g.peer_certificate, csr, aps)
    return est_certs_response([crt])


@est_api.route("/<aps>/serverkeygen", methods=["POST"])
@mtls_required
def serverkeygen(aps):
    csr = _csr_from_request()
    crt, key_der = _service().server_keygen(csr, aps, g.peer_certificate)
    return est_serverkeygen_response(crt, key_der)


@est_api.route("/csrattrs", methods=["GET"])
@est_api.route("/<aps>/csrattrs", methods=["GET"])
def csrattrs(aps=""):
    body = _service().csr_attrs(aps)
    if not body:
        return Response(status=204)
    return Response(body, status=200, content_type="application/csrattrs")


@est_api.route("/<aps>/tpmenroll", methods=["POST"])
def tpmenroll(aps):
    return _service().tpm_enroll(aps)
