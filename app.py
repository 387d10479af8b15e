#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import signal
import ssl
import sys

import requests
from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from waitress import serve
from werkzeug.serving import run_simple

from ca_client import LamassuCAClient
from decoratorauth import KeycloakVerifier
from discovery import ConsulRegistrar
from dms_api import dms_api
from dms_config import load_env_conf
from dms_store import DMSStore
from docs import docs_api, dump_openapi
from enroller import EnrollerService
from est_api import est_api
from est_service import ESTService
from logger import get_logger, level_for
from middlewares import InstrumentingMiddleware, LoggingMiddleware, ServiceMetrics, current_trace_id


def create_app(conf=None, *, store=None, ca_client=None, verifier=None, registry=None, logger=None):
    """Assemble the Flask app; collaborators may be injected (tests do)."""
    conf = load_env_conf() if conf is None else conf
    logger = logger or get_logger("dms-enroller", level_for(conf.get("debug_mode")))

    if store is None:
        store = DMSStore(conf["database_url"])
    if ca_client is None:
        ca_client = LamassuCAClient(
            conf["ca_address"],
            ca_cert_file=conf.get("ca_cert_file") or None,
            cert_file=conf.get("cert_file") or None,
            key_file=conf.get("key_file") or None,
            timeout=conf.get("ca_timeout", 20),
        )
    if verifier is None and conf.get("keycloak_hostname"):
        verifier = KeycloakVerifier(
            conf["keycloak_protocol"],
            conf["keycloak_hostname"],
            conf["keycloak_port"],
            conf["keycloak_realm"],
            ca_file=conf.get("keycloak_ca") or None,
            ttl=conf.get("keycloak_key_ttl", 300),
        )
    if verifier is None:
        logger.warning("no identity provider configured: admin routes will answer 401")

    registry = registry or CollectorRegistry()
    metrics = ServiceMetrics(registry)

    enroller = EnrollerService(
        store,
        ca_client,
        enroller_ca_name=conf["enroller_ca_name"],
        profile=conf["ca_profile"],
        logger=logger,
    )
    est = ESTService(ca_client, store, profile=conf["ca_profile"], logger=logger)

    app = Flask(__name__)
    app.confdms = conf
    app.dms_logger = logger
    app.store = store
    app.verifier = verifier
    app.enroller = InstrumentingMiddleware(LoggingMiddleware(enroller, logger), metrics)
    app.est = InstrumentingMiddleware(LoggingMiddleware(est, logger), metrics)
    app.metrics_registry = registry

    app.register_blueprint(dms_api)
    app.register_blueprint(est_api)
    app.register_blueprint(docs_api)

    @app.before_request
    def _trace():
        current_trace_id()

    @app.route("/metrics", methods=["GET"])
    def metrics_endpoint():
        return Response(generate_latest(registry), content_type=CONTENT_TYPE_LATEST)

    return app


# ---------------- Serving ----------------

def _tls_context(conf) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(conf["cert_file"], conf["key_file"])
    if conf["mutual_tls_enabled"]:
        ctx.load_verify_locations(cafile=conf["mutual_tls_client_ca"])
        # EST routes insist on a certificate, the admin plane does not
        ctx.verify_mode = ssl.CERT_OPTIONAL
    return ctx


def _serve(app, conf):
    if conf["protocol"] == "https":
        run_simple("0.0.0.0", conf["port"], app, ssl_context=_tls_context(conf), threaded=True)
    else:
        serve(app, host="0.0.0.0", port=conf["port"])


def _stop(signum, frame):
    raise SystemExit(0)


def main(argv=None):
    parser = argparse.ArgumentParser(description="DMS enrollment service")
    parser.add_argument("--config", help="optional YAML file with default settings")
    parser.add_argument("--dump-openapi", metavar="DIR", help="write openapiv3.json/.yaml to DIR and exit")
    args = parser.parse_args(argv)

    if args.dump_openapi:
        dump_openapi(args.dump_openapi)
        return 0

    conf = load_env_conf(path=args.config)
    app = create_app(conf)
    logger = app.dms_logger

    if not app.store.wait_until_ready(conf["store_retry_attempts"], conf["store_retry_interval"], logger):
        logger.error("store unreachable, giving up", extra={"fields": {"database_url": conf["database_url"]}})
        return 1

    registrar = None
    if conf["consul_host"]:
        registrar = ConsulRegistrar(
            conf["consul_protocol"], conf["consul_host"], conf["consul_port"],
            ca_file=conf.get("consul_ca") or None, logger=logger,
        )
        try:
            registrar.register(conf["protocol"], conf["service_host"], conf["port"])
        except requests.RequestException as e:
            logger.error("consul registration failed", extra={"fields": {"err": str(e)}})
            registrar = None

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    logger.info("listening", extra={"fields": {"port": conf["port"], "protocol": conf["protocol"]}})
    try:
        _serve(app, conf)
    finally:
        if registrar is not None:
            try:
                registrar.deregister()
            except requests.RequestException as e:
                logger.error("consul deregistration failed", extra={"fields": {"err": str(e)}})
    return 0


# ---------------- Main ----------------

if __name__ == '__main__':
    sys.exit(main())
