import logging
import socket
import socketserver
from typing import Optional

from dnslib import DNSRecord

from ..message import MalformedQueryError, make_servfail_response, parse_query
from ..resolver import ResolutionCoordinator, ResolutionError

logger = logging.getLogger("relaydns.server")


def handle_datagram(coordinator: ResolutionCoordinator, data: bytes) -> Optional[bytes]:
    """Brief: Turn one client datagram into the bytes to send back.

    Inputs:
      - coordinator: ResolutionCoordinator used to resolve the query.
      - data: raw datagram from the client.

    Outputs:
      - bytes: response wire (answer or SERVFAIL with the client's ID).
      - None: the datagram is malformed and must be dropped without reply.
    """
    try:
        request: DNSRecord = parse_query(data)
    except MalformedQueryError as e:
        logger.debug("Dropping malformed datagram: %s", e)
        return None

    try:
        return coordinator.resolve_wire(request)
    except ResolutionError:
        # Already logged by the coordinator with the transaction ID.
        return make_servfail_response(request)
    except Exception:
        logger.exception(
            "id=0x%04x unexpected error resolving %s", request.header.id, request.q.qname
        )
        return make_servfail_response(request)


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles UDP DNS requests.
    This class is instantiated by socketserver for each incoming datagram,
    each on its own thread.

    Example use:
        This handler is used internally by the DNSServer and is not
        typically instantiated directly by users.
    """

    coordinator: Optional[ResolutionCoordinator] = None

    def handle(self):
        """Resolve a single datagram and answer the client.

        Inputs:
          - None (called by socketserver for each UDP datagram).
        Outputs:
          - None; sends zero or one DNS response back to the client.
        """
        data, sock = self.request
        coordinator = type(self).coordinator
        if coordinator is None:  # pragma: no cover - DNSServer always installs one
            logger.error("No resolution coordinator installed; dropping query")
            return

        wire = handle_datagram(coordinator, data)
        if not wire:
            return
        try:
            sock.sendto(wire, self.client_address)
        except OSError as e:
            logger.warning("Failed to send response to %s: %s", self.client_address, e)


class DNSServer:
    """A threaded UDP DNS front end.

    Example use:
        >>> from relaydns.servers.udp_server import DNSServer
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 5355, coordinator)  # doctest: +SKIP
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()  # doctest: +SKIP
        >>> server.stop()  # doctest: +SKIP
    """

    def __init__(self, host: str, port: int, coordinator: ResolutionCoordinator) -> None:
        """Bind the listening socket.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks an ephemeral port).
            coordinator: ResolutionCoordinator shared by all handler threads.

        Raises:
            OSError when the socket cannot be bound.
        """
        handler_cls = type("BoundDNSUDPHandler", (DNSUDPHandler,), {})
        handler_cls.coordinator = coordinator
        server_cls = socketserver.ThreadingUDPServer
        if ":" in host:
            server_cls = type(
                "ThreadingUDP6Server", (server_cls,), {"address_family": socket.AF_INET6}
            )
        try:
            self.server = server_cls((host, port), handler_cls)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise

        # Ensure request handler threads do not block shutdown
        self.server.daemon_threads = True
        self.coordinator = coordinator
        logger.debug("DNS UDP server bound to %s:%d", *self.address)

    @property
    def address(self):
        return self.server.server_address[:2]

    def serve_forever(self) -> None:
        """Start the UDP server loop and listen for requests.

        Inputs:
          - None
        Outputs:
          - None; runs until shutdown is requested or KeyboardInterrupt occurs.
        """
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:  # pragma: no cover - interactive stop
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket.

        Inputs:
          - None
        Outputs:
          - None; best-effort shutdown suitable for use from signal handlers.
        """
        try:
            # First ask the ThreadingUDPServer loop to stop accepting requests.
            self.server.shutdown()
        except Exception:  # pragma: no cover - log-only path
            logger.exception("Error while shutting down UDP server")
        try:
            # Then close the socket so resources are released promptly.
            self.server.server_close()
        except Exception:  # pragma: no cover - log-only path
            logger.exception("Error while closing UDP server socket")
