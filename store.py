"""Client-side adapter for the store: sessions, procedure calls and their failures.

Every failure a caller can see is one of two exceptions: NoConnectionsError when
there is no node to talk to, or ProcedureCallError carrying an ErrorKind. Status
strings from the server are classified here, once, so nothing above this module
matches on message text.
"""

import enum
import logging
import re

from cluster import Cluster, ServerError
from simulate import Future, get_event_loop, sleep, wait_for

_logger = logging.getLogger("store")

_BUSY_WAIT = 10

TIMEOUT = ("No response received in the allotted time (set via"
           " clientConfig.setProcedureCallTimeout)")


class ErrorKind(enum.Enum):
    NO_CONNECTIONS = "no-conns"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "conn-lost"
    MASTERSHIP_CHANGE = "mastership-change"
    CONSTRAINT_VIOLATION = "constraint-violation"
    UNKNOWN = "unknown"


class StoreError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN


class NoConnectionsError(StoreError):
    kind = ErrorKind.NO_CONNECTIONS

    def __init__(self, message: str = "No connections."):
        super().__init__(message)


class ProcedureCallError(StoreError):
    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class ProtocolDefect(AssertionError):
    """The store or the test broke an invariant. Never a normal outcome."""


_STATUS_PATTERNS = [
    (re.compile(r"^No response received in the allotted time"), ErrorKind.TIMEOUT),
    (re.compile(r"^Connection to database host .+ was lost before a response"),
     ErrorKind.CONNECTION_LOST),
    (re.compile(r"^Transaction dropped due to change in mastership"),
     ErrorKind.MASTERSHIP_CHANGE),
    (re.compile(r"^Constraint violation"), ErrorKind.CONSTRAINT_VIOLATION),
]


def classify(message: str) -> ErrorKind:
    for pattern, kind in _STATUS_PATTERNS:
        if pattern.search(message):
            return kind

    return ErrorKind.UNKNOWN


class Session:
    """A connection to one node. Reconnects by itself once the node is back up."""

    def __init__(self,
                 cluster: Cluster,
                 node_id: int,
                 procedure_call_timeout: int,
                 connection_response_timeout: int):
        self.cluster = cluster
        self.node_id = node_id
        self.procedure_call_timeout = procedure_call_timeout
        self.connection_response_timeout = connection_response_timeout
        self.closed = False

    async def call(self, procedure: str, *args) -> list[dict]:
        """Run a stored procedure, return its result rows. Never retries."""
        if self.closed:
            raise NoConnectionsError("Session is closed")

        node = self.cluster.nodes[self.node_id]
        if not node.up:
            raise NoConnectionsError()

        reply = Future()
        self.cluster.client_send(node.receive_invocation,
                                 reply=reply,
                                 procedure=procedure,
                                 args=args)
        try:
            return await wait_for(reply,
                                  timeout=self.procedure_call_timeout,
                                  on_timeout=lambda: ServerError(TIMEOUT))
        except ServerError as e:
            message = str(e)
            kind = classify(message)
            _logger.debug(f"{procedure}{args} on n{self.node_id}: {kind.value} {message}")
            raise ProcedureCallError(kind=kind, message=message) from e

    def close(self) -> None:
        self.closed = True

    def __str__(self) -> str:
        return f"Session(n{self.node_id})"


async def connect(cluster: Cluster,
                  node_id: int,
                  procedure_call_timeout: int,
                  connection_response_timeout: int) -> Session:
    """Open a session to a node, waiting up to connection_response_timeout for it."""
    deadline = get_event_loop().current_ts + connection_response_timeout
    while not cluster.is_up(node_id):
        if get_event_loop().current_ts >= deadline:
            raise NoConnectionsError(f"Unable to connect to n{node_id}")
        await sleep(_BUSY_WAIT)

    _logger.debug(f"Connected to n{node_id}")
    return Session(cluster=cluster,
                   node_id=node_id,
                   procedure_call_timeout=procedure_call_timeout,
                   connection_response_timeout=connection_response_timeout)
