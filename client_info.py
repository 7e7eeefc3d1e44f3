#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Per-request client information: IP, user agent, proxy/Tor hints, geo and host facts."""

from __future__ import annotations
import logging
import os
import platform
import socket
import sys
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import geoip2.database
import geoip2.errors
import psutil
import requests
import user_agents
from flask import Flask, g, request

logger = logging.getLogger(__name__)

PROXY_HEADERS = ("via", "x-forwarded-for", "forwarded", "proxy-connection")
TOR_EXIT_LIST_ZONE = "exitlist.torproject.org"
IPV4_MAPPED_PREFIX = "::ffff:"
DEFAULT_PUBLIC_IP_URL = "https://api.ipify.org"
SUMMARY_ERROR = "Error generating client info summary"
ENVIRON_KEY = "client_info"

HeaderValue = Union[str, List[str]]


class ClientInfoError(RuntimeError):
    """Raised when the client info record could not be assembled."""


class PublicIPError(RuntimeError):
    """Raised when the server's public IP could not be fetched."""


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str]
    user_agent: Optional[str]
    browser: Optional[str]
    os: Optional[str]
    device: Optional[str]
    dns_info: Tuple[Dict[str, Any], ...]
    is_proxy: bool
    is_tor: bool
    request_headers: Dict[str, HeaderValue]
    geo_location: Optional[Dict[str, Any]]
    platform: str
    cpu_arch: str
    cpu_cores: int
    total_memory: int
    free_memory: int
    network_interfaces: Dict[str, List[Dict[str, Any]]]
    timestamp: str
    timezone_offset: int
    is_https: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["dns_info"] = list(data["dns_info"])
        return data

# ----------------------------- Header access -----------------------------

def _header(headers, name: str) -> Optional[HeaderValue]:
    """Single value, list of values when repeated, or None when absent."""
    if hasattr(headers, "getlist"):
        vals = headers.getlist(name)
        if not vals: return None
        return vals[0] if len(vals) == 1 else list(vals)
    for k, v in headers.items():
        if k.lower() == name: return v
    return None

def _copy_headers(headers) -> Dict[str, HeaderValue]:
    out: Dict[str, HeaderValue] = {}
    for k in headers.keys():
        key = k.lower()
        if key in out: continue
        v = _header(headers, key)
        out[key] = list(v) if isinstance(v, (list, tuple)) else v
    return out

# ----------------------------- Request-derived facts -----------------------------

def get_client_ip(headers, remote_addr: Optional[str]) -> Optional[str]:
    try:
        xff = _header(headers, "x-forwarded-for")
        if isinstance(xff, list): xff = ", ".join(xff)
        if xff and isinstance(xff, str):
            return xff.split(",")[0].strip()
        return remote_addr or None
    except Exception:
        logger.exception("Error getting client IP")
        return None

def check_proxy(headers) -> bool:
    try:
        return any(_header(headers, h) is not None for h in PROXY_HEADERS)
    except Exception:
        logger.exception("Error checking proxy headers")
        return False

def parse_user_agent(ua_string: Optional[str]) -> Dict[str, Optional[str]]:
    empty: Dict[str, Optional[str]] = {"browser": None, "os": None, "device": None}
    if not ua_string: return empty
    try:
        ua = user_agents.parse(ua_string)
        return {
            "browser": " ".join([ua.browser.family, ua.browser.version_string]).strip(),
            "os": " ".join([ua.os.family, ua.os.version_string]).strip(),
            "device": ua.device.family,
        }
    except Exception:
        logger.exception("Error parsing user agent")
        return empty

# ----------------------------- Lookups -----------------------------

def check_tor(ip: str) -> bool:
    """Reverse-resolve ``<ip>.exitlist.torproject.org``; any answer marks a Tor exit node.

    gethostbyaddr resolves the name forward and then looks up the answer, so a
    listed node (127.0.0.2) whose PTR lookup fails reads as not Tor. This only
    approximates an exit-list membership test.
    """
    try:
        hostname = f"{ip.replace(IPV4_MAPPED_PREFIX, '')}.{TOR_EXIT_LIST_ZONE}"
        name, aliases, _ = socket.gethostbyaddr(hostname)
    except Exception as e:
        logger.warning("Error checking Tor exit node: %s", e)
        return False
    return len([n for n in [name, *aliases] if n]) > 0

def get_dns_info() -> Tuple[Dict[str, Any], ...]:
    """Every address the server's own hostname resolves to."""
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except Exception:
        logger.exception("Error getting DNS info")
        return ()
    out: List[Dict[str, Any]] = []
    seen = set()
    for family, _, _, _, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6): continue
        key = (sockaddr[0], family)
        if key in seen: continue
        seen.add(key)
        out.append({"address": sockaddr[0], "family": 4 if family == socket.AF_INET else 6})
    return tuple(out)

# Offline lookup against the MaxMind City database at GEOIP_MMDB
def lookup_geo(ip: Optional[str]) -> Optional[Dict[str, Any]]:
    mmdb = os.getenv("GEOIP_MMDB", "")
    if not ip or not mmdb: return None
    try:
        with geoip2.database.Reader(mmdb) as reader:
            city = reader.city(ip.replace(IPV4_MAPPED_PREFIX, ""))
    except geoip2.errors.AddressNotFoundError:
        return None
    except Exception:
        logger.exception("Error looking up geolocation for %s", ip)
        return None
    return {
        "country": city.country.iso_code,
        "region": city.subdivisions.most_specific.iso_code,
        "city": city.city.name,
        "timezone": city.location.time_zone,
        "location": {"lat": city.location.latitude, "lon": city.location.longitude},
    }

# ----------------------------- Host snapshot -----------------------------

def _family_label(family) -> str:
    if family == socket.AF_INET: return "IPv4"
    if family == socket.AF_INET6: return "IPv6"
    if family == psutil.AF_LINK: return "link"
    return str(family)

def _system_fallback() -> Dict[str, Any]:
    return {"platform": "unknown", "cpu_arch": "unknown", "cpu_cores": 0,
            "total_memory": 0, "free_memory": 0, "network_interfaces": {}}

def get_system_info() -> Dict[str, Any]:
    try:
        mem = psutil.virtual_memory()
        ifaces: Dict[str, List[Dict[str, Any]]] = {}
        for iface, addrs in psutil.net_if_addrs().items():
            ifaces[iface] = [{"address": a.address, "netmask": a.netmask,
                              "family": _family_label(a.family), "broadcast": a.broadcast} for a in addrs]
        return {
            "platform": sys.platform,
            "cpu_arch": platform.machine() or "unknown",
            "cpu_cores": psutil.cpu_count(logical=True) or 0,
            "total_memory": mem.total,
            "free_memory": mem.available,
            "network_interfaces": ifaces,
        }
    except Exception:
        logger.exception("Error getting system info")
        return _system_fallback()

# ----------------------------- Builder -----------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _dns_timeout() -> Optional[float]:
    raw = os.getenv("DNS_TIMEOUT_MS", "2000")
    try:
        ms = int(raw or "0")
    except ValueError:
        logger.warning("Invalid DNS_TIMEOUT_MS %r, using 2000", raw)
        ms = 2000
    return ms / 1000.0 if ms > 0 else None

def _result(fut: Future, default: Any, timeout: Optional[float], what: str) -> Any:
    try:
        return fut.result(timeout=timeout)
    except FutureTimeoutError:
        logger.warning("%s timed out after %ss", what, timeout)
        return default

def get_client_info(req) -> ClientInfo:
    """Assemble the client info record for ``req`` (a Flask/Werkzeug request).

    DNS info and the Tor check run concurrently; all other facts are computed
    inline. Raises ClientInfoError if anything escapes the individual lookups.
    """
    try:
        headers = req.headers
        ip = get_client_ip(headers, req.remote_addr)
        timeout = _dns_timeout()
        pool = ThreadPoolExecutor(max_workers=2)
        try:
            dns_fut = pool.submit(get_dns_info)
            tor_fut = pool.submit(check_tor, ip) if ip else None
            is_proxy = check_proxy(headers)
            system_info = get_system_info()
            ua_header = _header(headers, "user-agent")
            ua_string = (ua_header[0] if isinstance(ua_header, list) else ua_header) or None
            ua = parse_user_agent(ua_string)
            geo = lookup_geo(ip)
            dns_info = _result(dns_fut, (), timeout, "DNS info lookup")
            is_tor = _result(tor_fut, False, timeout, "Tor exit-list lookup") if tor_fut else False
        finally:
            pool.shutdown(wait=False)
        now = _now()
        return ClientInfo(
            ip=ip,
            user_agent=ua_string,
            browser=ua["browser"],
            os=ua["os"],
            device=ua["device"],
            dns_info=tuple(dns_info),
            is_proxy=is_proxy,
            is_tor=is_tor,
            request_headers=_copy_headers(headers),
            geo_location=geo,
            platform=system_info["platform"],
            cpu_arch=system_info["cpu_arch"],
            cpu_cores=system_info["cpu_cores"],
            total_memory=system_info["total_memory"],
            free_memory=system_info["free_memory"],
            network_interfaces=system_info["network_interfaces"],
            timestamp=now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            # minutes behind UTC, positive west of Greenwich
            timezone_offset=-int(now.astimezone().utcoffset().total_seconds() / 60),
            is_https=bool(req.is_secure),
        )
    except Exception as e:
        logger.exception("Error getting client info")
        raise ClientInfoError("Failed to get client info") from e

# ----------------------------- Utilities -----------------------------

def get_server_public_ip() -> str:
    url = os.getenv("PUBLIC_IP_URL", DEFAULT_PUBLIC_IP_URL)
    timeout = float(os.getenv("PUBLIC_IP_TIMEOUT", "10") or "10")
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.error("Error getting server public IP: %s", e)
        raise PublicIPError("Failed to get server public IP") from e
    return resp.text.strip()

def _octet(part: str) -> Optional[int]:
    if not (part.isascii() and part.isdigit()): return None
    return int(part)

def is_private_ip(ip: str) -> bool:
    try:
        parts = [_octet(p) for p in ip.split(".")]
        first = parts[0]
        second = parts[1] if len(parts) > 1 else None
        return (first == 10
                or (first == 172 and second is not None and 16 <= second <= 31)
                or (first == 192 and second == 168))
    except Exception:
        logger.exception("Error checking if IP is private")
        return False

def _js(v: Any) -> str:
    if v is None: return "null"
    if isinstance(v, bool): return "true" if v else "false"
    return str(v)

def get_client_info_summary(info: ClientInfo) -> str:
    try:
        geo = info.geo_location
        country = (geo.get("country") if geo else None) or ""
        return (f"IP: {_js(info.ip)}, User-Agent: {_js(info.user_agent)}, "
                f"Proxy: {_js(info.is_proxy)}, Tor: {_js(info.is_tor)}, Location: {country}")
    except Exception:
        logger.exception("Error getting client info summary")
        return SUMMARY_ERROR

# ----------------------------- Middleware -----------------------------

def init_client_info(app: Flask, exclude: Tuple[str, ...] = ("healthz", "static")) -> None:
    """Attach a ClientInfo to ``g.client_info`` before every request.

    Failures are logged and leave ``g.client_info`` as None; the view always runs.
    """
    @app.before_request
    def client_info_middleware():
        g.client_info = None
        if request.endpoint in exclude: return None
        try:
            info = get_client_info(request)
        except Exception as e:
            logger.error("Error in client info middleware: %s", e)
            return None
        g.client_info = info
        request.environ[ENVIRON_KEY] = info
        return None
