"""
Light gate timing node.

Runs either the Controller (first gate: traffic light, TCP server) or the
Timer (second gate: elapsed time, TCP client). Without sensor hardware
both roles run on the simulated distance source.
"""

import time
import logging
import argparse
from functools import partial

import config
from gate_core.domain import (
    ControllerConfig,
    GateController,
    GateTimer,
    TimerConfig,
)
from gate_core.io import (
    ConsoleDisplay,
    ControllerLink,
    LinkConfig,
    LoggingSignalIndicator,
    MeasurementLog,
    MeasurementRecorder,
    SimulatedDistanceSource,
    SocketAcceptor,
    SocketConnection,
    TimerLink,
)
from gate_core.sensing import GateCalibrator, SampleFilter, SensorConfig
from node_runtime import ControllerNode, NodeRunner, TimerNode

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


def create_distance_source(role: str, seed=None) -> SimulatedDistanceSource:
    """Simulated sensor with periodic object passes; the Timer's lag behind the Controller's."""
    sim = config.SIMULATION_CONFIG
    source = SimulatedDistanceSource(
        time.monotonic,
        reference_cm=sim["reference_cm"],
        noise_std_cm=sim["noise_std_cm"],
        dropout_rate=sim["dropout_rate"],
        seed=seed,
    )
    first_pass = sim["first_pass_s"] + (sim["timer_delay_s"] if role == "timer" else 0.0)
    source.schedule_periodic_passes(
        first_pass, sim["pass_period_s"], sim["pass_count"],
        duration_s=sim["pass_duration_s"], distance_cm=sim["object_distance_cm"],
    )
    return source


def build_controller_node(sensor_config: SensorConfig, link_config: LinkConfig,
                          source) -> ControllerNode:
    sample_filter = SampleFilter(source.measure, sensor_config)
    calibrator = GateCalibrator(sample_filter.filter, sensor_config)

    log = None
    if config.MEASUREMENT_LOG_CONFIG["enabled"]:
        log = MeasurementLog(config.MEASUREMENT_LOG_CONFIG["path"])

    controller = GateController(
        calibrator,
        LoggingSignalIndicator(time.monotonic),
        recorder=MeasurementRecorder(log=log),
        config=ControllerConfig(**config.CONTROLLER_CONFIG),
    )
    acceptor = SocketAcceptor(
        config.SERVER_CONFIG["listen_host"],
        config.SERVER_CONFIG["port"],
        max_line_bytes=link_config.max_line_bytes,
    )
    return ControllerNode(ControllerLink(acceptor, link_config), controller, sample_filter)


def build_timer_node(sensor_config: SensorConfig, link_config: LinkConfig,
                     source) -> TimerNode:
    sample_filter = SampleFilter(source.measure, sensor_config)
    # Timer calibrates on raw readings
    calibrator = GateCalibrator(source.measure, sensor_config)
    timer = GateTimer(
        calibrator,
        ConsoleDisplay("timer"),
        config=TimerConfig(**config.TIMER_CONFIG),
    )
    connector = partial(
        SocketConnection.open,
        config.SERVER_CONFIG["controller_host"],
        config.SERVER_CONFIG["port"],
        link_config.connect_retry_delay_ms / 1000.0,
        max_line_bytes=link_config.max_line_bytes,
    )
    return TimerNode(TimerLink(connector, link_config), timer, sample_filter)


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description='Light gate timing node')
    parser.add_argument('--role', '-r', choices=['controller', 'timer'], required=True,
                       help='Node role: controller (first gate) or timer (second gate)')
    parser.add_argument('--host', '-H', type=str, default=None,
                       help='Listen address (controller) or controller address (timer)')
    parser.add_argument('--port', '-p', type=int, default=None,
                       help='TCP port')
    parser.add_argument('--simulate', '-s', action='store_true',
                       help='Use the simulated distance sensor')
    parser.add_argument('--seed', type=int, default=None,
                       help='Random seed for the simulated sensor')
    parser.add_argument('--debug', '-d', action='store_true',
                       help='Enable debug logging')

    args = parser.parse_args()

    # Set log level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    # Update configuration
    if args.host:
        key = "listen_host" if args.role == "controller" else "controller_host"
        config.SERVER_CONFIG[key] = args.host
    if args.port:
        config.SERVER_CONFIG["port"] = args.port

    if not args.simulate:
        logger.warning("No sensor driver configured, using the simulated distance sensor")
    source = create_distance_source(args.role, seed=args.seed)

    sensor_config = SensorConfig(**config.SENSOR_CONFIG)
    link_config = LinkConfig(**config.LINK_CONFIG)

    if args.role == "controller":
        node = build_controller_node(sensor_config, link_config, source)
    else:
        node = build_timer_node(sensor_config, link_config, source)

    runner = NodeRunner(node, tick_period_ms=config.RUNTIME_CONFIG["tick_period_ms"])
    runner.install_signal_handlers()
    runner.run_forever()


if __name__ == "__main__":
    main()
