import json
import os

import yaml
from flask import Blueprint, Response

from transport import json_response

docs_api = Blueprint("docs_api", __name__)

_DMS_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "format": "uuid"},
        "name": {"type": "string"},
        "serial_number": {"type": "string", "example": "4a-0f-91-7c"},
        "status": {"type": "string", "enum": ["PENDING_APPROVAL", "APPROVED", "DENIED", "REVOKED"]},
        "csr": {"type": "string", "description": "base64 of the PEM CSR"},
        "crt": {"type": "string", "description": "base64 of the PEM certificate"},
        "key_metadata": {"$ref": "#/components/schemas/KeyMetadata"},
        "subject": {"$ref": "#/components/schemas/Subject"},
        "authorized_cas": {"type": "array", "items": {"type": "string"}},
        "creation_timestamp": {"type": "string"},
        "modification_timestamp": {"type": "string"},
    },
}

_SUBJECT_SCHEMA = {
    "type": "object",
    "properties": {k: {"type": "string"} for k in (
        "common_name", "organization", "organization_unit", "country", "state", "locality")},
}

_KEY_METADATA_SCHEMA = {
    "type": "object",
    "required": ["type", "bits"],
    "properties": {
        "type": {"type": "string", "enum": ["RSA", "EC"]},
        "bits": {"type": "integer"},
        "strength": {"type": "string", "enum": ["low", "medium", "high"], "readOnly": True},
    },
}


def _op(summary, responses, body=None, secured=True, params=None):
    op = {"summary": summary, "responses": responses}
    if body is not None:
        op["requestBody"] = {"required": True, "content": body}
    if params:
        op["parameters"] = params
    if secured:
        op["security"] = [{"bearer": []}]
    return op


def _path_param(name):
    return {"name": name, "in": "path", "required": True, "schema": {"type": "string"}}


def _json(ref):
    return {"application/json": {"schema": {"$ref": ref}}}


def build_openapi(version="0.1.0") -> dict:
    dms_ref = "#/components/schemas/DMS"
    err = {"description": "error", "content": _json("#/components/schemas/Error")}
    est_certs = {"description": "certs-only PKCS#7, base64", "content": {
        "application/pkcs7-mime; smime-type=certs-only": {"schema": {"type": "string"}}}}
    pkcs10 = {"application/pkcs10": {"schema": {"type": "string", "description": "base64 DER PKCS#10"}}}
    return {
        "openapi": "3.0.3",
        "info": {"title": "DMS Enroller", "version": version},
        "components": {
            "securitySchemes": {"bearer": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}},
            "schemas": {
                "DMS": _DMS_SCHEMA,
                "Subject": _SUBJECT_SCHEMA,
                "KeyMetadata": _KEY_METADATA_SCHEMA,
                "Error": {"type": "object", "properties": {"error": {"type": "string"}}},
            },
        },
        "paths": {
            "/v1/health": {"get": _op("Liveness probe", {"200": {"description": "healthy"}}, secured=False)},
            "/v1/": {"get": _op("List DMSs", {"200": {"description": "HAL list of DMSs"}, "401": err})},
            "/v1/{name}": {"post": _op(
                "Create a DMS from a base64 PEM CSR",
                {"200": {"description": "created", "content": _json(dms_ref)}, "400": err, "409": err, "415": err},
                body={"application/json": {"schema": {"type": "object", "properties": {"csr": {"type": "string"}}}}},
                params=[_path_param("name")],
            )},
            "/v1/{name}/form": {"post": _op(
                "Create a DMS with a server-generated key",
                {"200": {"description": "private key (returned once) and DMS"}, "400": err, "409": err},
                body={"application/json": {"schema": {"type": "object", "properties": {
                    "subject": {"$ref": "#/components/schemas/Subject"},
                    "key_metadata": {"$ref": "#/components/schemas/KeyMetadata"}}}}},
                params=[_path_param("name")],
            )},
            "/v1/{id}": {
                "get": _op("Read one DMS", {"200": {"description": "HAL DMS"}, "404": err},
                           params=[_path_param("id")]),
                "put": _op(
                    "Change DMS status",
                    {"200": {"description": "updated", "content": _json(dms_ref)}, "400": err, "404": err},
                    body={"application/json": {"schema": {"type": "object", "required": ["status"], "properties": {
                        "status": {"type": "string", "enum": ["APPROVED", "DENIED", "REVOKED"]},
                        "authorized_cas": {"type": "array", "items": {"type": "string"}}}}}},
                    params=[_path_param("id")],
                ),
                "delete": _op("Delete a DENIED or REVOKED DMS", {"200": {"description": "deleted"}, "400": err},
                              params=[_path_param("id")]),
            },
            "/v1/{id}/crt": {"get": _op("Issued DMS certificate (base64 PEM)",
                                        {"200": {"description": "certificate"}, "404": err},
                                        params=[_path_param("id")])},
            "/.well-known/est/cacerts": {"get": _op("EST CA certificates", {"200": est_certs}, secured=False)},
            "/.well-known/est/{aps}/cacerts": {"get": _op(
                "EST CA certificates of one CA", {"200": est_certs, "404": err}, secured=False,
                params=[_path_param("aps")])},
            "/.well-known/est/{aps}/simpleenroll": {"post": _op(
                "EST simple enroll (mTLS)", {"200": est_certs, "401": err, "403": err},
                body=pkcs10, secured=False, params=[_path_param("aps")])},
            "/.well-known/est/simplereenroll": {"post": _op(
                "EST simple re-enroll (mTLS)", {"200": est_certs, "400": err, "401": err},
                body=pkcs10, secured=False)},
            "/.well-known/est/{aps}/serverkeygen": {"post": _op(
                "EST server-side key generation (mTLS)",
                {"200": {"description": "multipart/mixed: PKCS#8 key and certs-only PKCS#7"}, "401": err},
                body=pkcs10, secured=False, params=[_path_param("aps")])},
            "/.well-known/est/{aps}/tpmenroll": {"post": _op(
                "EST TPM enrollment (not supported)", {"501": err}, secured=False, params=[_path_param("aps")])},
            "/metrics": {"get": _op("Prometheus metrics", {"200": {"description": "text exposition"}}, secured=False)},
        },
    }


def dump_openapi(directory: str) -> None:
    """Write openapiv3.json and openapiv3.yaml into `directory`."""
    document = build_openapi()
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, "openapiv3.json"), "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
    with open(os.path.join(directory, "openapiv3.yaml"), "w", encoding="utf-8") as f:
        yaml.safe_dump(document, f, sort_keys=False)


_UI = """<!DOCTYPE html>
<html>
<head>
  <title>DMS Enroller API</title>
  <link rel="stylesheet" href="https://unpkg.com/swagger-ui-dist@5/swagger-ui.css">
</head>
<body>
  <div id="swagger-ui"></div>
  <script src="https://unpkg.com/swagger-ui-dist@5/swagger-ui-bundle.js"></script>
  <script>SwaggerUIBundle({url: "/v1/docs/spec.json", dom_id: "#swagger-ui"});</script>
</body>
</html>
"""


@docs_api.route("/v1/docs/spec.json", methods=["GET"])
def openapi_json():
    return json_response(build_openapi())


@docs_api.route("/v1/docs/", methods=["GET"])
def openapi_ui():
    return Response(_UI, content_type="text/html; charset=utf-8")
