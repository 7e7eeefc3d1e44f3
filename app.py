#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import logging
import os
from typing import Optional

from flask import Flask, Response, g, jsonify, make_response, request

from client_info import (
    ClientInfo, PublicIPError, get_client_info_summary, get_client_ip,
    get_server_public_ip, init_client_info, is_private_ip,
)

SERVICE_VERSION = "2026-10-18.r1"

app = Flask(__name__)
init_client_info(app)

logger = logging.getLogger(__name__)

# ----------------------------- Helpers -----------------------------

def _text(body: str, status: int = 200) -> Response:
    return Response(body + "\n", status=status, mimetype="text/plain")

def _current() -> Optional[ClientInfo]:
    return g.get("client_info")

@app.after_request
def _server_header(resp: Response) -> Response:
    resp.headers['Server'] = 'request-inspector'
    return resp

# ----------------------------- Endpoints -----------------------------

@app.route("/", methods=["GET"])
def root():
    info = _current()
    if info is None:
        return make_response(jsonify({"error": "Failed to get client info"}), 500)
    return make_response(jsonify({"service_version": SERVICE_VERSION, **info.to_dict()}))

@app.route('/json', methods=['GET'])
def only_json():
    return root()

@app.route('/summary', methods=['GET'])
def summary():
    info = _current()
    if info is None:
        return _text("Failed to get client info", 500)
    return _text(get_client_info_summary(info))

@app.route('/ip', methods=['GET'])
def client_ip():
    info = _current()
    ip = info.ip if info else get_client_ip(request.headers, request.remote_addr)
    return _text(ip or '')

@app.route('/private', methods=['GET'])
def private_ip():
    info = _current()
    ip = request.args.get('ip') or (info.ip if info else None)
    if not ip:
        return make_response(jsonify({"error": "no IP to classify"}), 400)
    return jsonify({"ip": ip, "private": is_private_ip(ip)})

@app.route('/server-ip', methods=['GET'])
def server_ip():
    try:
        return _text(get_server_public_ip())
    except PublicIPError as e:
        return _text(str(e), 502)

@app.route('/headers', methods=['GET'])
def headers_plain():
    lines = [f"{k}: {v}" for k, v in request.headers.items()]
    return _text("\n".join(lines))

@app.route("/healthz", methods=["GET", "HEAD"])
def healthz():
    return Response("ok", mimetype="text/plain")

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", "80"))
    logger.info("request-inspector %s listening on :%d", SERVICE_VERSION, port)
    app.run(host="0.0.0.0", port=port)
