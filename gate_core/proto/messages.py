"""
Gate Link Message Schema and Codec.

Line-delimited ASCII commands exchanged between the Controller and the
Timer node. One command per line, newline terminated, surrounding
whitespace trimmed before parsing.

    START_TIMER        Controller -> Timer   begin timing cycle
    CLIENT_READY       Timer -> Controller   handshake complete
    STOP_TIMER:<ms>    Timer -> Controller   cycle result (unsigned ms)
    HEARTBEAT          Controller -> Timer   liveness probe
    HEARTBEAT_ACK      Timer -> Controller   liveness reply

Anything else decodes to UNKNOWN and causes no state change.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gate_core.errors import ProtocolError
from gate_core.metrics import get_metrics

logger = logging.getLogger(__name__)

STOP_TIMER_SEPARATOR = ":"


class MessageType(Enum):
    """Command vocabulary; values are the wire keywords."""
    START_TIMER = "START_TIMER"
    CLIENT_READY = "CLIENT_READY"
    STOP_TIMER = "STOP_TIMER"
    HEARTBEAT = "HEARTBEAT"
    HEARTBEAT_ACK = "HEARTBEAT_ACK"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Message:
    """
    One decoded protocol command.
    
    Attributes:
        type: Command type
        elapsed_ms: Result payload, only for STOP_TIMER
        raw: Original trimmed line, kept for UNKNOWN diagnostics
    """
    
    type: MessageType
    elapsed_ms: Optional[int] = None
    raw: str = ""
    
    def __post_init__(self):
        """Validate payload presence against the message type."""
        if self.type == MessageType.STOP_TIMER:
            if self.elapsed_ms is None or self.elapsed_ms < 0:
                raise ValueError(f"STOP_TIMER needs an unsigned elapsed_ms, got {self.elapsed_ms}")
        elif self.elapsed_ms is not None:
            raise ValueError(f"{self.type.value} carries no payload")
    
    @property
    def is_liveness(self) -> bool:
        """Heartbeat traffic handled by the session link itself."""
        return self.type in (MessageType.HEARTBEAT, MessageType.HEARTBEAT_ACK)


START_TIMER = Message(MessageType.START_TIMER)
CLIENT_READY = Message(MessageType.CLIENT_READY)
HEARTBEAT = Message(MessageType.HEARTBEAT)
HEARTBEAT_ACK = Message(MessageType.HEARTBEAT_ACK)


def stop_timer(elapsed_ms: int) -> Message:
    """Build a STOP_TIMER result message."""
    return Message(MessageType.STOP_TIMER, elapsed_ms=int(elapsed_ms))


def unknown(raw: str) -> Message:
    """Build an UNKNOWN message for an unrecognized line."""
    return Message(MessageType.UNKNOWN, raw=raw)


_PLAIN_COMMANDS = {
    MessageType.START_TIMER.value: START_TIMER,
    MessageType.CLIENT_READY.value: CLIENT_READY,
    MessageType.HEARTBEAT.value: HEARTBEAT,
    MessageType.HEARTBEAT_ACK.value: HEARTBEAT_ACK,
}


class ProtocolCodec:
    """
    Encode and decode gate link commands.
    
    Usage:
        codec = ProtocolCodec()
        
        line = codec.encode(stop_timer(733))   # "STOP_TIMER:733\n"
        msg = codec.decode("STOP_TIMER:733")
        assert msg.elapsed_ms == 733
    
    A STOP_TIMER line with a missing or non-numeric payload is rejected
    (decoded as UNKNOWN) unless lenient_stop_payload is set, in which case
    it decodes to elapsed_ms=0 with a warning.
    """
    
    def __init__(self, lenient_stop_payload: bool = False):
        """
        Initialize codec.
        
        Args:
            lenient_stop_payload: Map malformed STOP_TIMER payloads to 0 ms
        """
        self.lenient_stop_payload = lenient_stop_payload
        self.metrics = get_metrics()
    
    def encode(self, message: Message) -> str:
        """
        Encode a message as one newline-terminated line.
        
        Raises:
            ValueError: If asked to encode an UNKNOWN message
        """
        if message.type == MessageType.UNKNOWN:
            raise ValueError(f"Cannot encode unknown message: {message.raw!r}")
        if message.type == MessageType.STOP_TIMER:
            return f"{message.type.value}{STOP_TIMER_SEPARATOR}{message.elapsed_ms}\n"
        return f"{message.type.value}\n"
    
    def decode(self, line: str) -> Message:
        """
        Decode one line. Never raises; bad input becomes UNKNOWN.
        
        Args:
            line: Raw line, with or without trailing newline
            
        Returns:
            Decoded Message
        """
        text = line.strip()
        
        plain = _PLAIN_COMMANDS.get(text)
        if plain is not None:
            return plain
        
        if text == MessageType.STOP_TIMER.value or text.startswith(
            MessageType.STOP_TIMER.value + STOP_TIMER_SEPARATOR
        ):
            try:
                return stop_timer(self._parse_elapsed(text))
            except ProtocolError as e:
                self.metrics.increment('parse_errors')
                if self.lenient_stop_payload:
                    logger.warning(f"{e}; treating as elapsed_ms=0")
                    return stop_timer(0)
                logger.warning(f"{e}; message discarded")
                self.metrics.increment_drop('parse_error')
                return unknown(text)
        
        logger.warning(f"Unknown message: {text!r}")
        self.metrics.increment_drop('unknown_command')
        return unknown(text)
    
    def _parse_elapsed(self, text: str) -> int:
        """Extract the unsigned millisecond payload of a STOP_TIMER line."""
        _, sep, payload = text.partition(STOP_TIMER_SEPARATOR)
        payload = payload.strip()
        if not sep or not payload:
            raise ProtocolError(text, "missing STOP_TIMER payload")
        if not (payload.isascii() and payload.isdigit()):
            raise ProtocolError(text, "non-numeric STOP_TIMER payload")
        return int(payload)
