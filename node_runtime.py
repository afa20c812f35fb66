"""
Node tick drivers.

Each tick runs, in strict order:
  1. session bookkeeping (connect/accept, loss, heartbeat timeout)
  2. one filtered distance measurement
  3. one state machine evaluation
  4. protocol I/O (send outgoing, receive and apply incoming, heartbeat)
The caller sleeps out the rest of the tick period.
"""

import logging
import signal
import time
from typing import Callable, List, Optional, Union

from gate_core.domain import GateController, GateTimer
from gate_core.io import ALL_ON, ControllerLink, LinkEvent, TimerLink, monotonic_ms
from gate_core.metrics import get_metrics
from gate_core.proto import Message
from gate_core.sensing import NO_READING, SampleFilter

logger = logging.getLogger(__name__)


class ControllerNode:
    """First gate: traffic-light sequencing and cycle start."""
    
    role = "controller"
    
    def __init__(self, link: ControllerLink, controller: GateController,
                 sample_filter: SampleFilter, clock_ms: Callable[[], int] = monotonic_ms,
                 self_test_s: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.link = link
        self.controller = controller
        self.sample_filter = sample_filter
        self.clock_ms = clock_ms
        self.self_test_s = self_test_s
        self.sleep = sleep
    
    def start(self):
        """Lamp self-test, open the listener, initial calibration."""
        logger.info("Lamp self-test")
        self.controller.signal.set_signal(ALL_ON)
        if self.self_test_s > 0:
            self.sleep(self.self_test_s)
        self.link.start()
        self.controller.start(self.clock_ms())
    
    def stop(self):
        self.link.stop()
    
    def tick(self):
        now_ms = self.clock_ms()
        for event in self.link.poll(now_ms):
            if event is LinkEvent.CONNECTED:
                self.controller.on_link_connected(now_ms)
            else:
                self.controller.on_link_lost(now_ms)
        
        distance = self.sample_filter.filter()
        
        now_ms = self.clock_ms()
        outgoing = self.controller.step(now_ms, distance, self.link.is_connected)
        
        self._send(outgoing)
        for message in self.link.receive(now_ms):
            self.controller.on_message(message, now_ms)
        self.link.service(now_ms)
        
        self.controller.log_status(now_ms)
    
    def _send(self, messages: List[Message]):
        for message in messages:
            self.link.send(message)


class TimerNode:
    """Second gate: elapsed-time measurement and display."""
    
    role = "timer"
    
    def __init__(self, link: TimerLink, timer: GateTimer,
                 sample_filter: SampleFilter, clock_ms: Callable[[], int] = monotonic_ms):
        self.link = link
        self.timer = timer
        self.sample_filter = sample_filter
        self.clock_ms = clock_ms
    
    def start(self):
        self.timer.display.show(["Light gate timer", "Initializing...", "", ""])
    
    def stop(self):
        self.link.close()
    
    def tick(self):
        now_ms = self.clock_ms()
        outgoing: List[Message] = []
        for event in self.link.poll(now_ms):
            if event is LinkEvent.CONNECTED:
                outgoing += self.timer.on_link_connected(self.clock_ms())
            else:
                outgoing += self.timer.on_link_lost(now_ms)
        
        distance = self.sample_filter.filter() if self.timer.measuring else NO_READING
        
        now_ms = self.clock_ms()
        outgoing += self.timer.step(now_ms, distance)
        
        self._send(outgoing)
        for message in self.link.receive(now_ms):
            self._send(self.timer.on_message(message, now_ms))
        
        self.timer.log_status(now_ms)
    
    def _send(self, messages: List[Message]):
        for message in messages:
            self.link.send(message)


class NodeRunner:
    """
    Fixed-period tick loop for one node.
    
    Usage:
        runner = NodeRunner(node, tick_period_ms=20)
        runner.install_signal_handlers()
        runner.run_forever()
    
    An exception escaping a tick is logged and the loop continues; only
    stop() (or SIGINT/SIGTERM) ends it.
    """
    
    def __init__(
        self,
        node: Union[ControllerNode, TimerNode],
        tick_period_ms: int = 20,
        clock_ms: Callable[[], int] = monotonic_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.node = node
        self.tick_period_ms = tick_period_ms
        self.clock_ms = clock_ms
        self.sleep = sleep
        self.running = False
        self.tick_count = 0
        self.tick_errors = 0
    
    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
    
    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self.running = False
    
    def run_forever(self, max_ticks: Optional[int] = None):
        """
        Start the node and tick until stopped.
        
        Args:
            max_ticks: Stop after this many ticks (None = run until stopped)
        """
        logger.info(f"Starting {self.node.role} node, tick period {self.tick_period_ms}ms")
        self.node.start()
        self.running = True
        try:
            while self.running:
                started = self.clock_ms()
                self.run_once()
                if max_ticks is not None and self.tick_count >= max_ticks:
                    break
                remaining = self.tick_period_ms - (self.clock_ms() - started)
                if remaining > 0:
                    self.sleep(remaining / 1000.0)
        finally:
            self.stop()
    
    def run_once(self):
        """One tick; errors are logged, never propagated."""
        self.tick_count += 1
        try:
            self.node.tick()
        except Exception as e:
            self.tick_errors += 1
            logger.exception(f"Tick {self.tick_count} failed: {e}")
    
    def stop(self):
        self.running = False
        self.node.stop()
        get_metrics().log_summary()
        logger.info(f"{self.node.role} node stopped after {self.tick_count} ticks "
                    f"({self.tick_errors} errors)")
