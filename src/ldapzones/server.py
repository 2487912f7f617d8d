"""Query pipeline and UDP listener.

Brief:
  - resolve_query_bytes() runs the pre-resolve plugin chain for one wire
    query, forwards to upstream resolvers when every plugin passes, and runs
    the post-resolve chain over the upstream reply.
  - DNSServer is a ThreadingUDPServer whose DNSUDPHandler delegates to
    resolve_query_bytes().
"""

from __future__ import annotations

import logging
import socket
import socketserver
import struct
from typing import Dict, List, Optional, Sequence, Tuple, Union

from dnslib import QTYPE, RCODE, DNSHeader, DNSRecord

from .plugins.resolve.base import BasePlugin, PluginContext, PluginDecision

logger = logging.getLogger(__name__)

Upstream = Dict[str, Union[str, int]]


def _set_response_id(wire: bytes, req_id: int) -> bytes:
    """Brief: Force the first two bytes (DNS ID) of a response to req_id."""
    if len(wire) < 2:
        return wire
    return struct.pack("!H", req_id & 0xFFFF) + bytes(wire[2:])


def _make_formerr(data: bytes) -> bytes:
    """Brief: FORMERR for an unparsable query, or b"" when no ID is present."""
    if len(data) < 2:
        return b""
    (req_id,) = struct.unpack("!H", data[:2])
    return DNSRecord(DNSHeader(id=req_id, qr=1, rcode=RCODE.FORMERR)).pack()


def _make_rcode_response(request: DNSRecord, rcode: int) -> bytes:
    reply = request.reply()
    reply.header.rcode = rcode
    return _set_response_id(reply.pack(), request.header.id)


def apply_pre_plugins(
    plugins: Sequence[BasePlugin], qname: str, qtype: int, data: bytes, ctx: PluginContext
) -> Optional[PluginDecision]:
    """
    Apply pre-resolve plugins in ascending pre_priority order.

    Inputs:
        - plugins: loaded plugin instances.
        - qname (str): Query name.
        - qtype (int): DNS RR type.
        - data (bytes): Original query wire data.
        - ctx (PluginContext): Plugin context.

    Outputs:
        - PluginDecision for deny/override, or None when every plugin passed
          (or one allowed the query through).

    Stable sort keeps configuration order for equal priorities.
    """
    for p in sorted(plugins, key=lambda p: getattr(p, "pre_priority", 100)):
        if not p.targets(ctx) or not p.targets_qtype(qtype):
            continue

        decision = p.pre_resolve(qname, qtype, data, ctx)
        if not isinstance(decision, PluginDecision):
            continue
        if decision.action == "deny":
            logger.debug("Denied %s %s by %s", qname, qtype, p.name)
            return decision
        if decision.action == "override" and decision.response is not None:
            logger.debug("Override %s type %s by %s", qname, qtype, p.name)
            return decision
        if decision.action == "allow":
            logger.debug("Allow %s %s by %s (skipping remaining pre plugins)", qname, qtype, p.name)
            break
    return None


def apply_post_plugins(
    plugins: Sequence[BasePlugin],
    request: DNSRecord,
    qname: str,
    qtype: int,
    response_wire: bytes,
    ctx: PluginContext,
) -> bytes:
    """
    Apply post-resolve plugins to an upstream reply in ascending post_priority order.

    Inputs:
        - plugins: loaded plugin instances.
        - request: parsed DNS request (used to build a deny reply).
        - qname, qtype: query name and type.
        - response_wire: reply bytes from the upstream.
        - ctx: plugin context.

    Outputs:
        - bytes: the reply to send. The first deny (NXDOMAIN) or override
          decision ends the chain.
    """
    for p in sorted(plugins, key=lambda p: getattr(p, "post_priority", 100)):
        if not p.targets(ctx) or not p.targets_qtype(qtype):
            continue

        decision = p.post_resolve(qname, qtype, response_wire, ctx)
        if not isinstance(decision, PluginDecision):
            continue
        if decision.action == "deny":
            logger.debug("Post-resolve denied %s %s by %s", qname, qtype, p.name)
            return _make_rcode_response(request, RCODE.NXDOMAIN)
        if decision.action == "override" and decision.response is not None:
            logger.debug("Post-resolve override %s %s by %s", qname, qtype, p.name)
            return decision.response
    return response_wire


def send_query_with_failover(
    request: DNSRecord, upstreams: Sequence[Upstream], timeout_ms: int
) -> Tuple[Optional[bytes], Optional[Upstream]]:
    """
    Forward a query to each upstream in order until one answers.

    Inputs:
        - request: parsed DNS request.
        - upstreams: list of {'host': str, 'port': int}.
        - timeout_ms: per-upstream timeout in milliseconds.

    Outputs:
        - (reply_wire, upstream) for the first upstream that answered, or
          (None, None) when all failed.
    """
    timeout = max(0.001, int(timeout_ms) / 1000.0)
    for up in upstreams:
        host = str(up.get("host"))
        port = int(up.get("port", 53))
        try:
            wire = request.send(host, port, timeout=timeout)
        except (OSError, socket.timeout) as exc:
            logger.debug("Upstream %s:%d failed: %s", host, port, exc)
            continue
        return wire, up
    return None, None


def resolve_query_bytes(
    data: bytes,
    client_ip: str,
    plugins: Sequence[BasePlugin] = (),
    upstreams: Sequence[Upstream] = (),
    timeout_ms: int = 2000,
) -> bytes:
    """
    Resolve one DNS query through the plugin chain and upstreams.

    Inputs:
        - data: query wire bytes.
        - client_ip: requesting client's address.
        - plugins: loaded plugins.
        - upstreams: forwarders used when no plugin answers.
        - timeout_ms: per-upstream timeout.

    Outputs:
        - bytes: response wire; FORMERR for unparsable input (b"" when no ID
          can be recovered), NXDOMAIN for deny, REFUSED when no upstreams
          are configured, SERVFAIL when all upstreams fail or the pipeline
          raises.

    Example:
        >>> q = DNSRecord.question("example.com", "A")
        >>> r = DNSRecord.parse(resolve_query_bytes(q.pack(), "127.0.0.1"))
        >>> r.header.rcode == RCODE.REFUSED
        True
    """
    try:
        request = DNSRecord.parse(data)
    except Exception as exc:
        logger.debug("Unparsable query from %s: %s", client_ip, exc)
        return _make_formerr(data)

    try:
        qname = str(request.q.qname).rstrip(".")
        qtype = int(request.q.qtype)
        ctx = PluginContext(client_ip=client_ip)

        decision = apply_pre_plugins(plugins, qname, qtype, data, ctx)
        if decision is not None:
            if decision.action == "deny":
                return _make_rcode_response(request, RCODE.NXDOMAIN)
            return _set_response_id(decision.response or b"", request.header.id)

        if not upstreams:
            logger.debug("No upstreams configured; REFUSED %s %s", qname, QTYPE.get(qtype, qtype))
            return _make_rcode_response(request, RCODE.REFUSED)

        reply, _ = send_query_with_failover(request, upstreams, timeout_ms)
        if reply is None:
            logger.warning("All upstreams failed for %s %s", qname, QTYPE.get(qtype, qtype))
            return _make_rcode_response(request, RCODE.SERVFAIL)
        reply = apply_post_plugins(plugins, request, qname, qtype, reply, ctx)
        return _set_response_id(reply, request.header.id)
    except Exception:
        logger.exception("Unhandled error resolving query from %s", client_ip)
        return _make_rcode_response(request, RCODE.SERVFAIL)


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests; one instance per datagram.

    The class attributes are set by DNSServer before serving.
    """

    plugins: List[BasePlugin] = []
    upstream_addrs: List[Upstream] = []
    timeout_ms = 2000

    def handle(self) -> None:
        data, sock = self.request
        client_ip = self.client_address[0]
        wire = resolve_query_bytes(
            data,
            client_ip,
            self.plugins,
            self.upstream_addrs,
            self.timeout_ms,
        )
        if not wire:
            return
        sock.sendto(wire, self.client_address)


class _ThreadingUDPServer(socketserver.ThreadingUDPServer):
    allow_reuse_address = True
    daemon_threads = True


class DNSServer:
    """
    Brief: UDP DNS listener running the plugin chain.

    Inputs:
      - host, port: listen address (port 0 picks a free port).
      - plugins: loaded and set-up plugins.
      - upstreams: forwarders for queries no plugin answers.
      - timeout_ms: per-upstream timeout.

    Outputs:
      - DNSServer; call serve_forever() (blocking) and stop() from another thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        plugins: Sequence[BasePlugin],
        upstreams: Sequence[Upstream] = (),
        timeout_ms: int = 2000,
    ) -> None:
        handler = type(
            "BoundDNSUDPHandler",
            (DNSUDPHandler,),
            {
                "plugins": list(plugins),
                "upstream_addrs": list(upstreams),
                "timeout_ms": int(timeout_ms),
            },
        )
        self.server = _ThreadingUDPServer((host, port), handler)

    @property
    def address(self) -> Tuple[str, int]:
        return self.server.server_address[:2]

    def serve_forever(self) -> None:
        logger.info("Listening for DNS on udp://%s:%d", *self.address)
        try:
            self.server.serve_forever()
        finally:
            self.server.server_close()

    def stop(self) -> None:
        self.server.shutdown()
