#!/usr/bin/env python3
"""
Betaflight tuning constants: FFT parameters, segment selection, noise and
step-response thresholds, safety bounds and flight-style profiles.

All thresholds are tunable; adjust them against real logs.

Usage:
    from bf_constants import PID_STYLE_THRESHOLDS, GYRO_LPF1_MIN_HZ
"""

AXIS_NAMES = ["roll", "pitch", "yaw"]

# ─── FFT ──────────────────────────────────────────────────────────────────────

# 4096 at 8 kHz is a 0.5 s window, ~2 Hz resolution
FFT_WINDOW_SIZE = 4096
FFT_OVERLAP = 0.5
FFT_MIN_WINDOW = 16
FREQUENCY_MIN_HZ = 20
FREQUENCY_MAX_HZ = 1000

# ─── Segment Selection ────────────────────────────────────────────────────────

THROTTLE_MIN_FLIGHT = 0.15
THROTTLE_MAX_HOVER = 0.75
GYRO_STEADY_MAX_STD = 50            # deg/s
SEGMENT_MIN_DURATION_S = 0.5
SEGMENT_WINDOW_DURATION_S = 0.15
MAX_SEGMENTS = 5

SWEEP_MIN_THROTTLE_RANGE = 0.4
SWEEP_MIN_DURATION_S = 2.0
SWEEP_MAX_DURATION_S = 15.0
SWEEP_MAX_RESIDUAL = 0.15
SWEEP_SMOOTHING_S = 0.05

# ─── Noise Analysis ───────────────────────────────────────────────────────────

PEAK_PROMINENCE_DB = 6
PEAK_LOCAL_WINDOW_BINS = 50
PEAK_LOCAL_EXCLUDE_BINS = 3
NOISE_FLOOR_PERCENTILE = 25

NOISE_LEVEL_HIGH_DB = -30
NOISE_LEVEL_MEDIUM_DB = -50

FRAME_RESONANCE_MIN_HZ = 80
FRAME_RESONANCE_MAX_HZ = 200
ELECTRICAL_NOISE_MIN_HZ = 500
MOTOR_HARMONIC_TOLERANCE_RATIO = 0.05
MOTOR_HARMONIC_TOLERANCE_MIN_HZ = 5
MOTOR_HARMONIC_MIN_PEAKS = 3
MOTOR_HARMONIC_MIN_FUNDAMENTAL_HZ = 30

# ─── Filter Safety Bounds ─────────────────────────────────────────────────────

GYRO_LPF1_MIN_HZ = 75
GYRO_LPF1_MAX_HZ = 300
DTERM_LPF1_MIN_HZ = 70
DTERM_LPF1_MAX_HZ = 200

# RPM filter active: motor noise is already handled, cutoffs can go higher
GYRO_LPF1_MAX_HZ_RPM = 500
DTERM_LPF1_MAX_HZ_RPM = 300
DYN_NOTCH_COUNT_WITH_RPM = 1
DYN_NOTCH_Q_WITH_RPM = 500
DYN_NOTCH_COUNT_WITHOUT_RPM = 3
DYN_NOTCH_Q_WITHOUT_RPM = 300
DYN_NOTCH_MIN_FLOOR_HZ = 50
DYN_NOTCH_MAX_CEILING_HZ = 1000

NOISE_FLOOR_VERY_NOISY_DB = -10     # maps to minimum cutoff
NOISE_FLOOR_VERY_CLEAN_DB = -70     # maps to maximum cutoff
NOISE_TARGET_DEADZONE_HZ = 5
RESONANCE_ACTION_THRESHOLD_DB = 12
RESONANCE_CUTOFF_MARGIN_HZ = 20

# ─── Step Detection ───────────────────────────────────────────────────────────

STEP_MIN_MAGNITUDE_DEG_S = 100
STEP_DERIVATIVE_THRESHOLD = 500     # deg/s per second
STEP_EDGE_CONTINUE_RATIO = 0.3
STEP_RESPONSE_WINDOW_MS = 300
STEP_COOLDOWN_MS = 100
STEP_MIN_HOLD_MS = 50
STEP_HOLD_TOLERANCE = 0.5

# ─── Step Response Metrics ────────────────────────────────────────────────────

SETTLING_TOLERANCE = 0.02
RISE_TIME_LOW = 0.1
RISE_TIME_HIGH = 0.9
LATENCY_THRESHOLD = 0.05
STEADY_STATE_FRACTION = 0.2
MAX_VALID_OVERSHOOT = 500

# ─── PID Style Thresholds ─────────────────────────────────────────────────────

FLIGHT_STYLES = ("smooth", "balanced", "aggressive")
DEFAULT_FLIGHT_STYLE = "balanced"

PID_STYLE_THRESHOLDS = {
    "smooth": {
        "overshoot_ideal": 3, "overshoot_max": 12, "settling_max": 250,
        "ringing_max": 1, "moderate_overshoot": 8, "sluggish_rise": 120,
    },
    "balanced": {
        "overshoot_ideal": 10, "overshoot_max": 25, "settling_max": 200,
        "ringing_max": 2, "moderate_overshoot": 15, "sluggish_rise": 80,
    },
    "aggressive": {
        "overshoot_ideal": 18, "overshoot_max": 35, "settling_max": 150,
        "ringing_max": 3, "moderate_overshoot": 25, "sluggish_rise": 50,
    },
}

YAW_OVERSHOOT_FACTOR = 1.5
YAW_SLUGGISH_RISE_MS = 120

# ─── PID Safety Bounds ────────────────────────────────────────────────────────

P_GAIN_MIN, P_GAIN_MAX = 20, 120
I_GAIN_MIN, I_GAIN_MAX = 30, 120
D_GAIN_MIN, D_GAIN_MAX = 15, 80
PID_STEP = 5
D_HIGH_RATIO = 0.6

DEFAULT_PIDS = {
    "roll": {"p": 45, "i": 80, "d": 30},
    "pitch": {"p": 47, "i": 84, "d": 32},
    "yaw": {"p": 45, "i": 80, "d": 0},
}

DEFAULT_FILTERS = {
    "gyro_lpf1_static_hz": 250,
    "gyro_lpf2_static_hz": 500,
    "dterm_lpf1_static_hz": 150,
    "dterm_lpf2_static_hz": 150,
    "dyn_notch_min_hz": 150,
    "dyn_notch_max_hz": 600,
    "dyn_notch_count": 3,
    "dyn_notch_q": 300,
    "rpm_filter_harmonics": 0,
}

# ─── Chirp / Transfer Function ────────────────────────────────────────────────

CHIRP_WINDOW_SIZE = 2048
CHIRP_MIN_FREQ_HZ = 10
CHIRP_MAX_FREQ_HZ = 500
CHIRP_MIN_DURATION_S = 2.0
CHIRP_MIN_COHERENCE = 0.6
CHIRP_DETECT_WINDOW = 512
CHIRP_MIN_OCTAVES = 2
CHIRP_MONOTONIC_RATIO = 0.7
CHIRP_MIN_ENERGY = 1.0
DEBUG_MODE_CHIRP = "CHIRP"
DEFAULT_PHASE_MARGIN_DEG = 90.0
DEFAULT_GAIN_MARGIN_DB = 20.0

TF_WINDOW_SIZE = 2048
TF_WIENER_REGULARIZATION = 0.01
TF_MIN_INPUT_ENERGY = 100
TF_MAX_FREQ_HZ = 500
TF_STEP_SAMPLES = 500

# ─── Group Delay ──────────────────────────────────────────────────────────────

GROUP_DELAY_REFERENCE_HZ = 80
GROUP_DELAY_WARNING_MS = 2.0

# ─── Data Quality ─────────────────────────────────────────────────────────────

QUALITY_TIERS = ((80, "excellent"), (60, "good"), (40, "fair"), (0, "poor"))
MIN_LOGGING_RATE_HZ = 2000
DEBUG_MODE_GYRO_SCALED = 6
GYRO_SCALED_FIXED_VERSION = (4, 6)
