"""
Session Link: transport lifecycle, handshake and heartbeat liveness.

The Controller side (ControllerLink) accepts at most one Timer; a new
inbound connection closes and replaces the old one. The Timer side
(TimerLink) connects with fixed-interval retries. The Controller probes
with HEARTBEAT every heartbeat interval; the Timer answers HEARTBEAT_ACK
immediately and drops the link after heartbeat_timeout of silence.

Link events (CONNECTED / LOST) are surfaced from poll(), which the tick
loop calls first so that a lost link resets the owning state machine
before any sensing or state evaluation.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from gate_core.errors import LinkError
from gate_core.metrics import get_metrics
from gate_core.proto import (
    Message,
    MessageType,
    ProtocolCodec,
    HEARTBEAT,
    HEARTBEAT_ACK,
)
from .transport import Connection

logger = logging.getLogger(__name__)


def monotonic_ms() -> int:
    """Monotonic clock in integer milliseconds."""
    return int(time.monotonic() * 1000)


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LinkEvent(Enum):
    CONNECTED = "connected"
    LOST = "lost"


@dataclass
class LinkConfig:
    """
    Configuration for the session link.
    
    Attributes:
        heartbeat_interval_ms: Controller probe period
        heartbeat_timeout_ms: Timer-side silence before the link is dropped
        ack_timeout_ms: Controller-side ack silence before the link is dropped (None disables)
        reconnect_delay_ms: Pause between Timer connection rounds
        connection_timeout_ms: Upper bound on one Timer connection round
        connect_retry_delay_ms: Pause between attempts inside one round
        max_line_bytes: Framing limit for incoming lines
        lenient_stop_payload: Decode malformed STOP_TIMER payloads as 0 ms
    """
    
    heartbeat_interval_ms: int = 5000
    heartbeat_timeout_ms: int = 15000      # 3x interval as safety margin
    ack_timeout_ms: Optional[int] = 15000
    reconnect_delay_ms: int = 2000
    connection_timeout_ms: int = 15000
    connect_retry_delay_ms: int = 500
    max_line_bytes: int = 256
    lenient_stop_payload: bool = False
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.heartbeat_interval_ms > 0, "heartbeat interval must be positive"
        assert self.heartbeat_timeout_ms > self.heartbeat_interval_ms, \
            "heartbeat timeout must exceed the interval"
        assert self.ack_timeout_ms is None or self.ack_timeout_ms > self.heartbeat_interval_ms, \
            "ack timeout must exceed the interval"
        assert self.reconnect_delay_ms >= 0, "reconnect delay must be non-negative"
        assert self.connection_timeout_ms > 0, "connection timeout must be positive"


class HeartbeatMonitor:
    """Tracks the last liveness signal and decides when silence is too long."""
    
    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        self.last_seen_ms: Optional[int] = None
    
    def mark(self, now_ms: int):
        self.last_seen_ms = now_ms
    
    def clear(self):
        self.last_seen_ms = None
    
    def silence_ms(self, now_ms: int) -> int:
        if self.last_seen_ms is None:
            return 0
        return now_ms - self.last_seen_ms
    
    def expired(self, now_ms: int) -> bool:
        """True once silence has lasted timeout_ms (not earlier)."""
        return self.last_seen_ms is not None and self.silence_ms(now_ms) >= self.timeout_ms


class SessionLink:
    """
    Shared session behaviour for both node roles.
    
    Owns the single peer connection; state machines reach it only through
    send() and receive().
    """
    
    role = "link"
    
    def __init__(self, config: Optional[LinkConfig] = None, codec: Optional[ProtocolCodec] = None):
        self.config = config or LinkConfig()
        self.codec = codec or ProtocolCodec(self.config.lenient_stop_payload)
        self.metrics = get_metrics()
        
        self.state = SessionState.DISCONNECTED
        self.connection: Optional[Connection] = None
        self.last_heartbeat_sent_ms: Optional[int] = None
        self.heartbeat = HeartbeatMonitor(self.config.heartbeat_timeout_ms)
        
        self._inbox: List[Message] = []
        self._events: List[LinkEvent] = []
    
    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED
    
    @property
    def last_heartbeat_received_ms(self) -> Optional[int]:
        return self.heartbeat.last_seen_ms
    
    def send(self, message: Message) -> bool:
        """
        Encode and write one message.
        
        Returns:
            True if written; False if not connected or the write failed
            (a failed write drops the link)
        """
        if not self.is_connected:
            logger.warning(f"[{self.role}] Not connected, cannot send {message.type.value}")
            self.metrics.increment_drop('send_failed')
            return False
        try:
            self.connection.send_line(self.codec.encode(message))
        except LinkError as e:
            logger.error(f"[{self.role}] {e}")
            self.metrics.increment_drop('send_failed')
            self._drop("send failed")
            return False
        
        self.metrics.increment('messages_out')
        logger.debug(f"[{self.role}] Sent {message.type.value}")
        return True
    
    def receive(self, now_ms: int) -> List[Message]:
        """
        Drain application messages received so far.
        
        Liveness traffic is consumed here and never returned; UNKNOWN lines
        were already logged and counted by the codec and are discarded.
        """
        self._pump(now_ms)
        messages, self._inbox = self._inbox, []
        return messages
    
    def close(self):
        """Close the connection without emitting a LOST event (shutdown)."""
        self._close_connection()
        self.state = SessionState.DISCONNECTED
    
    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    
    def _take_events(self) -> List[LinkEvent]:
        events, self._events = self._events, []
        return events
    
    def _attach(self, connection: Connection, now_ms: int):
        self.connection = connection
        self.state = SessionState.CONNECTED
        self.last_heartbeat_sent_ms = now_ms
        self.heartbeat.mark(now_ms)
        self._inbox.clear()
        self.metrics.increment('link_connects')
        self._events.append(LinkEvent.CONNECTED)
    
    def _drop(self, reason: str):
        """Close the connection and queue a LOST event."""
        if self.state != SessionState.CONNECTED:
            return
        logger.warning(f"[{self.role}] Link lost: {reason}")
        self._close_connection()
        self.state = SessionState.DISCONNECTED
        self.metrics.increment('link_losses')
        self._events.append(LinkEvent.LOST)
    
    def _close_connection(self):
        if self.connection is not None:
            self.connection.close()
        self.connection = None
        self.heartbeat.clear()
        self._inbox.clear()
    
    def _pump(self, now_ms: int):
        """Read available lines, handle liveness traffic, queue the rest."""
        if not self.is_connected:
            return
        
        for line in self.connection.receive_lines():
            if not self.is_connected:
                break
            message = self.codec.decode(line)
            self.metrics.increment('messages_in')
            if message.type == MessageType.UNKNOWN:
                continue
            if message.is_liveness:
                self._on_liveness(message, now_ms)
            else:
                self._inbox.append(message)
        
        if self.is_connected and not self.connection.is_open:
            self._drop("transport closed")
    
    def _on_liveness(self, message: Message, now_ms: int):
        raise NotImplementedError


class ControllerLink(SessionLink):
    """
    Controller-side link: accepts the Timer and drives heartbeats.
    
    Usage:
        link = ControllerLink(SocketAcceptor("0.0.0.0", 8080))
        link.start()
        
        for event in link.poll(now_ms):
            ...                         # reset the controller FSM
        link.send(START_TIMER)
        messages = link.receive(now_ms)
        link.service(now_ms)            # heartbeat
    """
    
    role = "controller"
    
    def __init__(self, acceptor, config: Optional[LinkConfig] = None,
                 codec: Optional[ProtocolCodec] = None):
        """
        Initialize controller link.
        
        Args:
            acceptor: Object with open(), accept() -> Optional[Connection], close()
            config: Link configuration (uses defaults if None)
            codec: Protocol codec (built from config if None)
        """
        super().__init__(config, codec)
        self.acceptor = acceptor
        # Controller-side liveness is the last HEARTBEAT_ACK
        self.ack_timeout_enabled = self.config.ack_timeout_ms is not None
        if self.ack_timeout_enabled:
            self.heartbeat = HeartbeatMonitor(self.config.ack_timeout_ms)
    
    def start(self):
        """Open the listening endpoint."""
        self.acceptor.open()
    
    def stop(self):
        self.close()
        self.acceptor.close()
    
    def poll(self, now_ms: int) -> List[LinkEvent]:
        """
        Connection bookkeeping: accept/replace, transport loss, ack timeout.
        
        Returns:
            Events since the last poll, in order
        """
        new_connection = self.acceptor.accept()
        if new_connection is not None:
            if self.is_connected:
                logger.info(f"[{self.role}] Replacing connection {self.connection.peer} "
                            f"with {new_connection.peer}")
                self._drop("replaced by new connection")
            elif self.connection is not None:
                self._close_connection()
            self._attach(new_connection, now_ms)
            logger.info(f"[{self.role}] Timer connected: {new_connection.peer}")
        
        self._pump(now_ms)
        
        if self.is_connected and self.ack_timeout_enabled and self.heartbeat.expired(now_ms):
            self.metrics.increment('heartbeat_timeouts')
            self._drop(f"no HEARTBEAT_ACK for {self.heartbeat.silence_ms(now_ms)}ms")
        
        return self._take_events()
    
    def service(self, now_ms: int):
        """Send a heartbeat if the interval has elapsed."""
        if not self.is_connected:
            return
        if now_ms - self.last_heartbeat_sent_ms >= self.config.heartbeat_interval_ms:
            if self.send(HEARTBEAT):
                self.metrics.increment('heartbeats_sent')
            self.last_heartbeat_sent_ms = now_ms
    
    def _on_liveness(self, message: Message, now_ms: int):
        if message.type == MessageType.HEARTBEAT_ACK:
            self.heartbeat.mark(now_ms)
        else:
            logger.warning(f"[{self.role}] Unexpected {message.type.value} from Timer")
            self.metrics.increment_drop('out_of_sync')


class TimerLink(SessionLink):
    """
    Timer-side link: connects to the Controller and answers heartbeats.
    
    A connection round retries every connect_retry_delay_ms until it
    succeeds or connection_timeout_ms elapses; rounds start at most every
    reconnect_delay_ms.
    """
    
    role = "timer"
    
    def __init__(
        self,
        connector: Callable[[], Connection],
        config: Optional[LinkConfig] = None,
        codec: Optional[ProtocolCodec] = None,
        clock_ms: Callable[[], int] = monotonic_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize timer link.
        
        Args:
            connector: Opens a Connection to the Controller, raising LinkError on failure
            config: Link configuration (uses defaults if None)
            codec: Protocol codec (built from config if None)
            clock_ms: Clock used to bound a connection round
            sleep: Delay function between attempts
        """
        super().__init__(config, codec)
        self.connector = connector
        self.clock_ms = clock_ms
        self.sleep = sleep
        self.last_attempt_ms: Optional[int] = None
    
    def poll(self, now_ms: int) -> List[LinkEvent]:
        """
        Connection bookkeeping: (re)connect, transport loss, heartbeat timeout.
        
        Returns:
            Events since the last poll, in order
        """
        if not self.is_connected:
            due = (self.last_attempt_ms is None or
                   now_ms - self.last_attempt_ms >= self.config.reconnect_delay_ms)
            if due:
                self.last_attempt_ms = now_ms
                started = self.clock_ms()
                connection = self._connect_round()
                if connection is not None:
                    # A round may block; liveness starts when it ends
                    self._attach(connection, now_ms + (self.clock_ms() - started))
                    logger.info(f"[{self.role}] Connected to controller {connection.peer}")
            return self._take_events()
        
        self._pump(now_ms)
        
        if self.is_connected and self.heartbeat.expired(now_ms):
            self.metrics.increment('heartbeat_timeouts')
            self._drop(f"heartbeat timeout after {self.heartbeat.silence_ms(now_ms)}ms")
        
        return self._take_events()
    
    def _connect_round(self) -> Optional[Connection]:
        self.state = SessionState.CONNECTING
        started = self.clock_ms()
        attempts = 0
        while True:
            attempts += 1
            try:
                return self.connector()
            except LinkError as e:
                logger.debug(f"[{self.role}] Attempt {attempts}: {e}")
            if self.clock_ms() - started >= self.config.connection_timeout_ms:
                break
            self.sleep(self.config.connect_retry_delay_ms / 1000.0)
        
        logger.warning(f"[{self.role}] Controller unreachable after {attempts} attempts, "
                       f"retrying in {self.config.reconnect_delay_ms}ms")
        self.state = SessionState.DISCONNECTED
        return None
    
    def _on_liveness(self, message: Message, now_ms: int):
        if message.type == MessageType.HEARTBEAT:
            self.heartbeat.mark(now_ms)
            self.send(HEARTBEAT_ACK)
        else:
            logger.warning(f"[{self.role}] Unexpected {message.type.value} from Controller")
            self.metrics.increment_drop('out_of_sync')
