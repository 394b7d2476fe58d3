#!/usr/bin/env python3
# Gemini TLS server (PyOpenSSL) serving a static site's HTML output as gemtext

import argparse
import logging
import select
import socket
import threading
import time
from typing import Optional

from OpenSSL import SSL

from . import __version__, config
from .config import Redirect, ServerConfig
from .errors import HandshakeError, IdentityError
from .resolver import Resolver
from .session import Session
from .tls import ServerIdentity, client_identity, ssl_context

log = logging.getLogger(__name__)

SEND_CHUNK = 16384
ACCEPT_POLL_S = 0.5


class TLSStream:
    """
    Socket-like wrapper over an ``SSL.Connection`` on a non-blocking socket.

    Every operation runs against the deadline set by ``settimeout`` and
    raises ``socket.timeout`` once it passes. TLS failures surface as
    ``ConnectionError`` so callers only deal with ``OSError``.
    """

    def __init__(self, ssl_conn: SSL.Connection, sock: socket.socket):
        self.conn = ssl_conn
        self.sock = sock
        self.deadline: Optional[float] = None

    def settimeout(self, seconds: Optional[float]):
        self.deadline = None if seconds is None else time.monotonic() + seconds

    def _wait(self, readable: bool):
        remaining = None
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("timed out")
        if readable:
            ready = select.select([self.sock], [], [], remaining)[0]
        else:
            ready = select.select([], [self.sock], [], remaining)[1]
        if not ready:
            raise socket.timeout("timed out")

    def _retry(self, op, *args):
        while True:
            try:
                return op(*args)
            except SSL.WantReadError:
                self._wait(readable=True)
            except SSL.WantWriteError:
                self._wait(readable=False)

    def handshake(self):
        try:
            self._retry(self.conn.do_handshake)
        except SSL.Error as e:
            raise HandshakeError(f"TLS handshake failed: {e}") from e

    def recv(self, n: int) -> bytes:
        try:
            return self._retry(self.conn.recv, n)
        except SSL.ZeroReturnError:
            return b""
        except SSL.Error as e:
            raise ConnectionError(f"TLS read failed: {e}") from e

    def sendall(self, data: bytes):
        offset = 0
        try:
            while offset < len(data):
                offset += self._retry(self.conn.send, data[offset:offset + SEND_CHUNK])
        except SSL.Error as e:
            raise ConnectionError(f"TLS write failed: {e}") from e

    def close(self):
        try:
            self.conn.shutdown()
        except SSL.Error as e:
            log.debug("[SSL ERROR] shutdown: %s", e)
        finally:
            self.sock.close()


def bind_socket(host: str, port: int) -> socket.socket:
    # IPv6 dual-stack when listening on every interface
    if not host and socket.has_dualstack_ipv6():
        return socket.create_server(("", port), family=socket.AF_INET6, dualstack_ipv6=True)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host or "0.0.0.0", port), family=family)


class Listener:
    """
    Accepts connections and runs one session thread per connection.

    At most ``max_sessions`` sessions run at once; a connection that cannot
    get a slot within ``queue_timeout`` is closed before the handshake.
    """

    def __init__(self, cfg: ServerConfig, identity: ServerIdentity, resolver: Resolver):
        self.cfg = cfg
        self.resolver = resolver
        self.ctx = ssl_context(identity)
        self.slots = threading.BoundedSemaphore(cfg.max_sessions)
        self.sock = bind_socket(cfg.host, cfg.port)
        self.sock.settimeout(ACCEPT_POLL_S)
        self._stopping = threading.Event()

    @property
    def server_address(self):
        return self.sock.getsockname()

    def serve_forever(self):
        while not self._stopping.is_set():
            try:
                client, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stopping.is_set():
                    break
                log.warning("[ACCEPT ERROR] %s", e)
                continue

            if not self.slots.acquire(timeout=self.cfg.queue_timeout):
                log.warning("[ACCEPT ERROR] %d sessions busy, dropping %s", self.cfg.max_sessions, addr)
                client.close()
                continue
            thread = threading.Thread(target=self._run, args=(client, addr), daemon=True)
            thread.start()

    def _run(self, client: socket.socket, addr):
        try:
            self.handle(client, addr)
        except Exception:
            log.exception("[ERROR] session from %s", addr)
        finally:
            self.slots.release()
            client.close()

    def handle(self, client: socket.socket, addr):
        client.setblocking(False)
        ssl_conn = SSL.Connection(self.ctx, client)
        ssl_conn.set_accept_state()
        stream = TLSStream(ssl_conn, client)

        stream.settimeout(self.cfg.read_timeout)
        try:
            stream.handshake()
        except (HandshakeError, OSError) as e:
            log.debug("[SSL ERROR] %s: %s", addr, e)
            client.close()
            return

        identity = client_identity(ssl_conn)
        if identity is not None:
            log.debug("[CERT] %s presented %s", addr, identity.fingerprint)

        session = Session(
            stream,
            self.resolver,
            client=identity,
            peer=addr,
            read_timeout=self.cfg.read_timeout,
            write_timeout=self.cfg.write_timeout,
        )
        session.run()

    def shutdown(self):
        self._stopping.set()
        self.sock.close()


def parse_redirect(value: str) -> tuple:
    source, sep, target = value.partition("=")
    if not sep or not source or not target:
        raise argparse.ArgumentTypeError(f"expected SOURCE=TARGET, got {value!r}")
    return source, target


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gemsite",
        description="Serve a static site generator's output over the Gemini protocol.",
    )
    parser.add_argument("root", help="root of the generated site to serve")
    parser.add_argument("--host", default=config.HOST, help="address to listen on (default: all)")
    parser.add_argument("-p", "--port", type=int, default=config.PORT)
    parser.add_argument("-c", "--cert", default=config.SERV_CERT, help="TLS certificate (PEM)")
    parser.add_argument("-k", "--key", default=config.SERV_KEY, help="TLS private key (PEM)")
    parser.add_argument(
        "--hostname",
        default=config.HOSTNAME,
        help="name put in a generated certificate",
    )
    parser.add_argument(
        "--serve-host",
        action="append",
        default=[],
        metavar="HOST",
        help="only answer requests for this host (repeatable)",
    )
    parser.add_argument(
        "--require-cert",
        action="append",
        default=[],
        metavar="PREFIX",
        help="path prefix that needs a client certificate (repeatable)",
    )
    parser.add_argument(
        "--redirect",
        action="append",
        default=[],
        type=parse_redirect,
        metavar="SOURCE=TARGET",
        help="permanent redirect from a site path (repeatable)",
    )
    parser.add_argument("--no-listing", action="store_true", help="never generate directory listings")
    parser.add_argument("--max-sessions", type=int, default=config.MAX_SESSIONS)
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = ServerConfig(
        root=args.root,
        host=args.host,
        port=args.port,
        cert_file=args.cert,
        key_file=args.key,
        hostname=args.hostname,
        hostnames=tuple(args.serve_host),
        directory_listing=not args.no_listing,
        cert_required=tuple(args.require_cert),
        redirects={src: Redirect(dst, permanent=True) for src, dst in args.redirect},
        max_sessions=args.max_sessions,
    )

    try:
        identity = ServerIdentity.load_or_generate(cfg.cert_file, cfg.key_file, cfg.hostname, cfg.cert_days)
        resolver = Resolver(cfg)
        listener = Listener(cfg, identity, resolver)
    except IdentityError as e:
        raise SystemExit(f"gemsite: {e}") from e
    except OSError as e:
        raise SystemExit(f"gemsite: cannot start: {e}") from e

    host, port = listener.server_address[:2]
    log.info("[TLS] certificate sha256 %s (CN=%s)", identity.fingerprint, identity.common_name)
    log.info("Serving %s on gemini://%s:%d", resolver.root, host or "localhost", port)
    try:
        listener.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        listener.shutdown()


if __name__ == "__main__":
    main()
