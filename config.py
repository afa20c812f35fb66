"""
Light gate timing configuration.

Plain dictionaries per concern; main.py turns them into the typed
configuration dataclasses of gate_core.
"""

# Controller (first gate) endpoint
SERVER_CONFIG = {
    "listen_host": "0.0.0.0",     # listen on all interfaces
    "controller_host": "192.168.4.1",  # address the Timer connects to
    "port": 8080,
}

# Distance sensor (HC-SR04 limits)
SENSOR_CONFIG = {
    "min_valid_distance_cm": 2.0,
    "max_valid_distance_cm": 400.0,
    "filter_samples": 5,              # median of 5
    "inter_sample_delay_s": 0.0005,   # avoids echo cross-talk
    "echo_timeout_s": 0.030,          # ~5m range
    "reference_samples": 15,          # calibration readings
    "calibration_delay_s": 0.100,
}

# Controller state machine
CONTROLLER_CONFIG = {
    "yellow_pending_delay_ms": 500,
    "caution_duration_ms": 2000,
    "hysteresis_factor": 1.15,        # 15% departure margin
    "max_timing_duration_ms": 30000,  # safety abort
    "min_time_between_measurements_ms": 2000,
    "max_invalid_readings": 10,
    "fault_backoff_ms": 5000,
    "fallback_reference_cm": None,    # no degraded mode: stay in FAULT until calibrated
}

# Timer state machine
TIMER_CONFIG = {
    "display_duration_ms": 5000,
    "display_refresh_ms": 100,        # 10 Hz running time
    "max_invalid_readings": 10,
    "fault_backoff_ms": 5000,
    "fallback_reference_cm": 50.0,    # degraded mode after failed calibration
    "recalibrate_on_connect": True,
}

# Session link
LINK_CONFIG = {
    "heartbeat_interval_ms": 5000,
    "heartbeat_timeout_ms": 15000,    # 3x interval
    "ack_timeout_ms": 15000,
    "reconnect_delay_ms": 2000,
    "connection_timeout_ms": 15000,
    "connect_retry_delay_ms": 500,
    "max_line_bytes": 256,
    "lenient_stop_payload": False,
}

# Tick loop
RUNTIME_CONFIG = {
    "tick_period_ms": 20,             # ~50 Hz
}

# Measurement CSV log (Controller)
MEASUREMENT_LOG_CONFIG = {
    "enabled": True,
    "path": "data/measurements.csv",
}

# Simulated sensor (no hardware)
SIMULATION_CONFIG = {
    "reference_cm": 120.0,
    "noise_std_cm": 0.5,
    "dropout_rate": 0.02,
    "object_distance_cm": 40.0,
    "first_pass_s": 8.0,
    "pass_period_s": 20.0,
    "pass_duration_s": 3.0,
    "pass_count": 50,
    "timer_delay_s": 4.0,             # Timer pass lag behind the Controller's
}

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
