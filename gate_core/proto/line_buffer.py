"""
Bounded newline framing for the gate link byte stream.
"""

import logging
from typing import List

from gate_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class LineBuffer:
    """
    Reassemble newline-terminated ASCII lines from arbitrary byte chunks.
    
    Pending bytes are capped at max_line_bytes; an overlong line without a
    newline is discarded rather than buffered without bound.
    """
    
    def __init__(self, max_line_bytes: int = 256):
        self.max_line_bytes = max_line_bytes
        self._pending = b''
        self._discarding = False
        self.metrics = get_metrics()
    
    def feed(self, data: bytes) -> List[str]:
        """
        Add received bytes and return every completed line.
        
        Args:
            data: Raw bytes from the transport
            
        Returns:
            Completed lines, decoded and stripped; empty lines are skipped
        """
        self._pending += data
        lines = []
        
        while True:
            newline = self._pending.find(b'\n')
            if newline < 0:
                break
            chunk = self._pending[:newline]
            self._pending = self._pending[newline + 1:]
            
            if self._discarding:
                # Tail of an overlong line
                self._discarding = False
                continue
            
            text = chunk.decode('ascii', errors='replace').strip()
            if text:
                lines.append(text)
        
        if len(self._pending) > self.max_line_bytes:
            logger.warning(f"Discarding overlong line ({len(self._pending)} bytes without newline)")
            self.metrics.increment_drop('line_too_long')
            self._pending = b''
            self._discarding = True
        
        return lines
    
    def clear(self):
        """Drop any partial line (use when the connection is replaced)."""
        self._pending = b''
        self._discarding = False
