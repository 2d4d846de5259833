"""UDP and TCP DNS front end that answers queries through the resolver."""

from __future__ import annotations

import copy
import queue
import socket
import socketserver
import struct
import threading
import time

import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset

from rec53 import ip_pool as _ip_pool
from rec53.handlers import init_request
from rec53.ip_pool import IPPool
from rec53.log import logger
from rec53.metrics import Metric, get_metric
from rec53.resolver import ResolutionError, Resolver

DEFAULT_UDP_SIZE = 512
TCP_IDLE_TIMEOUT = 8.0
_POLL_INTERVAL = 0.1


def max_udp_size(request: dns.message.Message) -> int:
    """Largest UDP reply the client accepts: its EDNS0 buffer size, or 512."""
    if request.edns >= 0 and request.payload > 0:
        return int(request.payload)
    return DEFAULT_UDP_SIZE


def _wire_length(message: dns.message.Message) -> int:
    return len(message.to_wire())


def _drop_last_answer_record(reply: dns.message.Message) -> None:
    last = reply.answer[-1]
    if len(last) <= 1:
        reply.answer.pop()
    else:
        reply.answer[-1] = dns.rrset.from_rdata_list(last.name, last.ttl, list(last)[:-1])


def truncate_response(reply: dns.message.Message, max_size: int) -> dns.message.Message:
    """Shrink reply to fit max_size bytes, setting TC when anything is dropped.

    Answer records are removed from the end until the reply fits; if it still
    does not, the additional and then the answer sections are cleared. The
    authority section of a truncated reply is always cleared.
    """
    if _wire_length(reply) <= max_size:
        return reply

    reply.flags |= dns.flags.TC
    while reply.answer and _wire_length(reply) > max_size:
        _drop_last_answer_record(reply)
    if _wire_length(reply) > max_size:
        reply.additional = []
    if _wire_length(reply) > max_size:
        reply.answer = []
    reply.authority = []

    logger.debug("Response truncated: original size exceeded %d bytes", max_size)
    return reply


def _split_listen(listen: str) -> tuple[str, int, int]:
    host, sep, port = listen.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {listen!r}")
    host = host.strip("[]")
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return host, int(port), family


def _format_addr(address: tuple) -> str:
    host, port = address[:2]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _recv_exact(sock: socket.socket, size: int) -> bytes | None:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            return None
        chunks.extend(chunk)
    return bytes(chunks)


class _UDPHandler(socketserver.BaseRequestHandler):
    server: "_UDPServer"

    def handle(self) -> None:
        data, sock = self.request
        try:
            request = dns.message.from_wire(data)
        except dns.exception.DNSException as exc:
            logger.debug("dropping malformed UDP message from %s: %s", self.client_address, exc)
            return
        reply = self.server.dns_server.serve_dns(request, udp=True)
        try:
            sock.sendto(reply.to_wire(), self.client_address)
        except OSError as exc:
            logger.error("Failed to write response: %s", exc)


class _TCPHandler(socketserver.BaseRequestHandler):
    server: "_TCPServer"

    def handle(self) -> None:
        sock: socket.socket = self.request
        sock.settimeout(TCP_IDLE_TIMEOUT)
        try:
            while True:
                header = _recv_exact(sock, 2)
                if header is None:
                    return
                (length,) = struct.unpack("!H", header)
                data = _recv_exact(sock, length)
                if data is None:
                    return
                try:
                    request = dns.message.from_wire(data)
                except dns.exception.DNSException as exc:
                    logger.debug("closing TCP connection after malformed message: %s", exc)
                    return
                wire = self.server.dns_server.serve_dns(request, udp=False).to_wire()
                sock.sendall(struct.pack("!H", len(wire)) + wire)
        except OSError as exc:
            logger.debug("TCP connection from %s ended: %s", self.client_address, exc)


class _UDPServer(socketserver.ThreadingUDPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], family: int, dns_server: "DNSServer") -> None:
        self.address_family = family
        self.dns_server = dns_server
        super().__init__(address, _UDPHandler)


class _TCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], family: int, dns_server: "DNSServer") -> None:
        self.address_family = family
        self.dns_server = dns_server
        super().__init__(address, _TCPHandler)


class DNSServer:
    """Listens on UDP and TCP at the same address and answers through a resolver."""

    def __init__(
        self,
        listen: str,
        resolver: Resolver | None = None,
        metric: Metric | None = None,
        pool: IPPool | None = None,
    ) -> None:
        self.listen = listen
        self.resolver = resolver if resolver is not None else Resolver()
        self._metric = metric
        self._pool = pool
        self._active_pool: IPPool | None = None
        self._udp: _UDPServer | None = None
        self._tcp: _TCPServer | None = None
        self._threads: list[threading.Thread] = []
        self._errors: queue.Queue | None = None
        self._ready = threading.Event()
        self._udp_addr: str | None = None
        self._tcp_addr: str | None = None

    @property
    def udp_addr(self) -> str | None:
        """The bound UDP "host:port", or None before run()."""
        return self._udp_addr

    @property
    def tcp_addr(self) -> str | None:
        """The bound TCP "host:port", or None before run()."""
        return self._tcp_addr

    def _resolve_pool(self) -> IPPool:
        return self._pool if self._pool is not None else _ip_pool.global_pool

    def serve_dns(self, request: dns.message.Message, udp: bool = False) -> dns.message.Message:
        """Answer one query; the reply always carries the query's question."""
        started = time.monotonic()
        if not request.question:
            reply = dns.message.Message()
            init_request(request, reply)
            return reply

        metric = self._metric if self._metric is not None else get_metric()
        question = request.question[0]
        original = dns.rrset.RRset(question.name, question.rdclass, question.rdtype)
        metric.in_counter_add(
            "request", question.name.to_text(), dns.rdatatype.to_text(question.rdtype)
        )

        try:
            reply = self.resolver.resolve(copy.deepcopy(request), dns.message.Message())
        except ResolutionError as exc:
            logger.error("Change state error: %s", exc)
            reply = dns.message.Message()
            init_request(request, reply)
            reply.set_rcode(dns.rcode.SERVFAIL)

        if reply.question:
            reply.question[0] = original
        else:
            reply.question = [original]

        if udp:
            reply = truncate_response(reply, max_udp_size(request))

        name = original.name.to_text()
        qtype = dns.rdatatype.to_text(original.rdtype)
        code = dns.rcode.to_text(reply.rcode())
        metric.out_counter_add("response", name, qtype, code)
        elapsed_ms = float(int((time.monotonic() - started) * 1000))
        metric.latency_histogram_observe("latency", name, qtype, code, elapsed_ms)
        return reply

    def run(self) -> queue.Queue:
        """Bind both listeners and serve in the background.

        Binding errors are raised here. The returned queue receives any error
        that stops a listener, then None once both listeners have stopped.
        """
        if self._udp is not None or self._tcp is not None:
            raise RuntimeError("server is already running")
        host, port, family = _split_listen(self.listen)
        udp = _UDPServer((host, port), family, self)
        try:
            tcp = _TCPServer((host, port), family, self)
        except OSError:
            udp.server_close()
            raise
        self._udp, self._tcp = udp, tcp
        self._udp_addr = _format_addr(udp.server_address)
        self._tcp_addr = _format_addr(tcp.server_address)

        self._active_pool = self._resolve_pool()
        self._active_pool.start_probe_loop()

        errors: queue.Queue = queue.Queue()
        self._errors = errors
        self._threads = [
            threading.Thread(target=self._serve, args=(udp, "udp", errors), daemon=True),
            threading.Thread(target=self._serve, args=(tcp, "tcp", errors), daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        threading.Thread(
            target=self._close_when_stopped, args=(list(self._threads), errors), daemon=True
        ).start()
        self._ready.set()
        return errors

    @staticmethod
    def _serve(srv: socketserver.BaseServer, label: str, errors: queue.Queue) -> None:
        try:
            srv.serve_forever(poll_interval=_POLL_INTERVAL)
        except Exception as exc:
            error = RuntimeError(f"{label} listener: {exc}")
            error.__cause__ = exc
            errors.put(error)

    @staticmethod
    def _close_when_stopped(threads: list[threading.Thread], errors: queue.Queue) -> None:
        for thread in threads:
            thread.join()
        errors.put(None)

    def wait_until_ready(self) -> None:
        """Block until the listeners are bound."""
        self._ready.wait()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop both listeners and the IP pool prober; raise the first failure."""
        errors: list[Exception] = []
        for srv in (self._udp, self._tcp):
            if srv is None:
                continue
            stopper = threading.Thread(target=srv.shutdown, daemon=True)
            stopper.start()
            stopper.join(timeout)
            if stopper.is_alive():
                errors.append(TimeoutError("DNS listener did not stop in time"))
            else:
                srv.server_close()
        for thread in self._threads:
            thread.join(timeout)
        self._udp = self._tcp = None
        self._threads = []

        pool = self._active_pool if self._active_pool is not None else self._resolve_pool()
        try:
            pool.shutdown(timeout)
        except TimeoutError as exc:
            errors.append(exc)

        if errors:
            raise errors[0]