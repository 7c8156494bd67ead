import logging
import socket
import threading
import time
from typing import Optional, Tuple

logger = logging.getLogger("relaydns.transports.udp")

# Large enough for any UDP DNS payload.
MAX_DATAGRAM = 65535


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error (anything other than a timeout).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class TransportTimeout(TimeoutError):
    """
    Brief: No datagram arrived before the receive deadline.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class UDPTransport:
    """
    Brief: Connected UDP socket to one upstream resolver.

    Inputs:
    - host: upstream resolver IP
    - port: upstream UDP port
    - source_ip: optional source address to bind

    Outputs:
    - UDPTransport instance

    Notes:
      The socket is connect()ed, so the kernel drops datagrams from any peer
      other than the upstream. Sends are serialized with a lock so a shared
      transport can be used from many handler threads. Receives are not
      locked; callers sharing one transport must filter by transaction ID.

    Example:
        >>> t = UDPTransport('127.0.0.1', 53)
        >>> t.send(b'\x00\x01')
        >>> try:
        ...     t.receive_with_deadline(time.monotonic() + 0.1)
        ... except (TransportTimeout, UDPError):
        ...     pass
        >>> t.close()
    """

    def __init__(self, host: str, port: int, *, source_ip: Optional[str] = None):
        self.host = host
        self.port = int(port)
        self._send_lock = threading.Lock()
        try:
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            self._sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                if source_ip:
                    self._sock.bind((source_ip, 0))
                self._sock.connect((host, self.port))
            except OSError:
                self._sock.close()
                raise
        except OSError as e:
            raise UDPError(f"UDP error: {e}")

    @property
    def address(self) -> Tuple[str, int]:
        return self.host, self.port

    def send(self, data: bytes) -> None:
        """
        Brief: Send one datagram to the upstream.

        Inputs:
        - data: wire bytes

        Outputs:
        - None; raises UDPError on socket failure
        """
        try:
            with self._send_lock:
                self._sock.send(data)
        except OSError as e:
            raise UDPError(f"UDP send error: {e}")

    def receive_with_deadline(self, deadline: float) -> bytes:
        """
        Brief: Wait for the next datagram until a monotonic deadline.

        Inputs:
        - deadline: absolute time.monotonic() value

        Outputs:
        - bytes: datagram payload

        Raises:
        - TransportTimeout when the deadline passes first
        - UDPError on any other socket failure
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransportTimeout("receive deadline already passed")
        try:
            self._sock.settimeout(remaining)
            return self._sock.recv(MAX_DATAGRAM)
        except socket.timeout:
            raise TransportTimeout(f"no datagram from {self.host}:{self.port}")
        except OSError as e:
            raise UDPError(f"UDP receive error: {e}")

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError:  # pragma: no cover - close on a broken socket
            logger.debug("error closing UDP transport to %s:%d", self.host, self.port)

    def __enter__(self) -> "UDPTransport":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
