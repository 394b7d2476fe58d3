import enum
import logging
from typing import Optional

from . import config
from .codec import GeminiURL, Status, parse_request, write_response
from .errors import LineTooLong, RequestError
from .resolver import Resolver, Response
from .tls import ClientIdentity

log = logging.getLogger(__name__)


class State(enum.Enum):
    AWAITING_REQUEST = "awaiting-request"
    RESOLVING = "resolving"
    RESPONDING = "responding"
    CLOSED = "closed"
    ERRORED = "errored"


TERMINAL = (State.CLOSED, State.ERRORED)


class Session:
    """
    One request/response exchange on an already handshaken TLS stream.

    ``stream`` needs ``recv(n)``, ``sendall(data)``, ``settimeout(s)`` and
    ``close()``; any ``OSError`` raised by it (timeouts included) ends the
    session in ERRORED. The stream is always closed once a terminal state
    is reached: gemini has one request per connection.
    """

    def __init__(
        self,
        stream,
        resolver: Resolver,
        client: Optional[ClientIdentity] = None,
        peer=None,
        read_timeout: Optional[float] = config.TIMEOUT_S,
        write_timeout: Optional[float] = config.WRITE_TIMEOUT_S,
    ):
        self.stream = stream
        self.resolver = resolver
        self.client = client
        self.peer = peer
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.state = State.AWAITING_REQUEST
        self.url: Optional[GeminiURL] = None
        self.response: Optional[Response] = None

    # ---------- Transitions ----------

    def _await_request(self) -> State:
        self.stream.settimeout(self.read_timeout)
        try:
            self.url = parse_request(self.stream)
        except RequestError as e:
            kind = "too long" if isinstance(e, LineTooLong) else "malformed"
            log.info("[REQ] %s request from %s: %s", kind, self.peer, e)
            self.response = (Status.BAD_REQUEST, "Bad request", None)
            return State.RESPONDING
        return State.RESOLVING

    def _resolve(self) -> State:
        result = self.resolver.resolve(self.url, self.client)
        self.response = result.response()
        log.info("[REQ] %s from %s -> %d", self.url, self.peer, self.response[0])
        return State.RESPONDING

    def _respond(self) -> State:
        status, meta, body = self.response
        self.stream.settimeout(self.write_timeout)
        write_response(self.stream, status, meta, body)
        self._close()
        return State.CLOSED

    _transitions = {
        State.AWAITING_REQUEST: _await_request,
        State.RESOLVING: _resolve,
        State.RESPONDING: _respond,
    }

    def step(self) -> State:
        """Run the transition out of the current state and return the new one."""
        if self.state in TERMINAL:
            return self.state
        try:
            self.state = self._transitions[self.state](self)
        except OSError as e:
            log.debug("[ERROR] %s in state %s: %s", self.peer, self.state.value, e)
            self.state = State.ERRORED
            self._close()
        return self.state

    def run(self) -> State:
        while self.state not in TERMINAL:
            self.step()
        return self.state

    def _close(self):
        try:
            self.stream.close()
        except OSError as e:
            log.debug("[ERROR] closing %s: %s", self.peer, e)
