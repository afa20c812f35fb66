"""
Protocol Module: Gate link command vocabulary, codec and line framing.
"""

from .messages import (
    MessageType,
    Message,
    ProtocolCodec,
    START_TIMER,
    CLIENT_READY,
    HEARTBEAT,
    HEARTBEAT_ACK,
    stop_timer,
    unknown,
)
from .line_buffer import LineBuffer

__all__ = [
    'MessageType',
    'Message',
    'ProtocolCodec',
    'START_TIMER',
    'CLIENT_READY',
    'HEARTBEAT',
    'HEARTBEAT_ACK',
    'stop_timer',
    'unknown',
    'LineBuffer',
]
