"""
TCP transport for the gate link.

The Controller listens with a non-blocking SocketAcceptor; the Timer opens
a SocketConnection to a fixed address. Both sides exchange newline
terminated lines through the Connection interface, which the session link
uses exclusively so that tests can substitute in-memory connections.
"""

import logging
import select
import socket
from typing import List, Optional, Tuple

from gate_core.errors import LinkError
from gate_core.proto import LineBuffer

logger = logging.getLogger(__name__)


class Connection:
    """Line-oriented, non-blocking peer connection."""
    
    peer: str = ""
    
    @property
    def is_open(self) -> bool:
        raise NotImplementedError
    
    def send_line(self, line: str):
        """Write one encoded line. Raises LinkError if the write fails."""
        raise NotImplementedError
    
    def receive_lines(self) -> List[str]:
        """Return all complete lines available now, without blocking."""
        raise NotImplementedError
    
    def close(self):
        raise NotImplementedError


class SocketConnection(Connection):
    """Connection over a connected TCP socket."""
    
    def __init__(self, sock: socket.socket, peer: str,
                 max_line_bytes: int = 256, send_timeout_s: float = 1.0):
        """
        Wrap a connected socket.
        
        Args:
            sock: Connected TCP socket
            peer: Printable peer address
            max_line_bytes: Framing limit for incoming lines
            send_timeout_s: Upper bound on a blocking write
        """
        self.sock = sock
        self.peer = peer
        self.sock.settimeout(send_timeout_s)
        self._buffer = LineBuffer(max_line_bytes)
        self._open = True
    
    @classmethod
    def open(cls, host: str, port: int, timeout_s: float,
             max_line_bytes: int = 256) -> "SocketConnection":
        """
        Connect to a listening Controller.
        
        Raises:
            LinkError: If the connection cannot be established within timeout_s
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout_s)
        except OSError as e:
            raise LinkError(f"Connect to {host}:{port} failed: {e}", e) from e
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock, f"{host}:{port}", max_line_bytes)
    
    @property
    def is_open(self) -> bool:
        return self._open
    
    def send_line(self, line: str):
        if not self._open:
            raise LinkError(f"Send on closed connection to {self.peer}")
        try:
            self.sock.sendall(line.encode('ascii'))
        except OSError as e:
            self.close()
            raise LinkError(f"Send to {self.peer} failed: {e}", e) from e
    
    def receive_lines(self) -> List[str]:
        lines = []
        while self._open:
            try:
                readable, _, _ = select.select([self.sock], [], [], 0)
                if not readable:
                    break
                data = self.sock.recv(4096)
            except OSError as e:
                logger.warning(f"Receive from {self.peer} failed: {e}")
                self.close()
                break
            
            if not data:
                logger.info(f"Peer closed connection: {self.peer}")
                self.close()
                break
            
            lines.extend(self._buffer.feed(data))
        return lines
    
    def close(self):
        if not self._open:
            return
        self._open = False
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Close of {self.peer} failed: {e}")


class SocketAcceptor:
    """Non-blocking TCP listener handing out SocketConnections."""
    
    def __init__(self, host: str, port: int, max_line_bytes: int = 256):
        """
        Initialize acceptor.
        
        Args:
            host: Listen address
            port: Listen port (0 picks a free port)
            max_line_bytes: Framing limit passed to accepted connections
        """
        self.host = host
        self.port = port
        self.max_line_bytes = max_line_bytes
        self.server_socket: Optional[socket.socket] = None
    
    def open(self):
        """
        Bind and listen.
        
        Raises:
            LinkError: If the endpoint cannot be bound
        """
        try:
            self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(2)
            self.server_socket.setblocking(False)
        except OSError as e:
            self.close()
            raise LinkError(f"Listen on {self.host}:{self.port} failed: {e}", e) from e
        
        logger.info(f"Listening on {self.address[0]}:{self.address[1]}")
    
    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port), useful when port 0 was requested."""
        if self.server_socket is None:
            return (self.host, self.port)
        return self.server_socket.getsockname()[:2]
    
    def accept(self) -> Optional[SocketConnection]:
        """Return a newly connected peer, or None if none is pending."""
        if self.server_socket is None:
            return None
        try:
            sock, address = self.server_socket.accept()
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            logger.error(f"Accept failed: {e}")
            return None
        
        sock.setblocking(True)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        peer = f"{address[0]}:{address[1]}"
        logger.info(f"New client connection: {peer}")
        return SocketConnection(sock, peer, self.max_line_bytes)
    
    def close(self):
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                logger.debug(f"Close of listener failed: {e}")
            self.server_socket = None
