#!/usr/bin/env python3
"""
test_noise.py - Spectrum, peak classification and filter recommendations.
"""

import numpy as np
import pytest

from bf_noise import (
    SILENT_DB, analyze_axis_noise, average_spectra, build_noise_profile, classify_peak,
    compute_spectrum, deduplicate, detect_peaks, estimate_noise_floor, filter_summary,
    noise_target_cutoff, recommend_filters, trim_spectrum,
)

from conftest import SAMPLE_RATE, hover_flight


def axis(floor, peaks=()):
    return {"spectrum": {"freqs": np.zeros(0), "db": np.zeros(0)},
            "noise_floor_db": floor, "peaks": list(peaks)}


def profile(floor, peaks=()):
    return build_noise_profile(axis(floor, peaks), axis(floor, peaks), axis(floor))


def by_setting(recs):
    return {r["setting"]: r for r in recs}


# ═══════════════════════════════════════════════════════════════════════
# SPECTRUM
# ═══════════════════════════════════════════════════════════════════════

class TestSpectrum:

    def test_sine_peak(self):
        t = np.arange(8192) / SAMPLE_RATE
        spec = compute_spectrum(10 * np.sin(2 * np.pi * 100 * t), SAMPLE_RATE)
        k = int(np.argmax(spec["db"]))
        assert spec["freqs"][k] == pytest.approx(100, abs=1)
        # A / 4 after Hann gain and the one-sided split, less scalloping
        assert 6.5 < spec["db"][k] < 8.2

    def test_unit_sine_scale(self):
        fs, n = 4000, 4096
        t = np.arange(n) / fs
        spec = compute_spectrum(np.sin(2 * np.pi * (100 * fs / n) * t), fs, window_size=n)
        assert spec["db"][100] == pytest.approx(-12.04, abs=0.05)
        assert int(np.argmax(spec["db"])) == 100

    def test_short_signal_uses_power_of_two(self):
        spec = compute_spectrum(np.random.default_rng(0).normal(size=100), SAMPLE_RATE)
        assert len(spec["freqs"]) == 33

    def test_too_short(self):
        with pytest.raises(ValueError):
            compute_spectrum(np.ones(10), SAMPLE_RATE)

    def test_silence_is_floor(self):
        spec = compute_spectrum(np.zeros(4096), SAMPLE_RATE)
        assert (spec["db"] == SILENT_DB).all()

    def test_trim(self):
        spec = {"freqs": np.arange(0, 2000, 10.0), "db": np.zeros(200)}
        out = trim_spectrum(spec)
        assert out["freqs"][0] == 20
        assert out["freqs"][-1] == 1000

    def test_average_is_linear(self):
        f = np.arange(5.0)
        a = {"freqs": f, "db": np.zeros(5)}
        b = {"freqs": f, "db": np.full(5, 20 * np.log10(3))}
        avg = average_spectra([a, b])
        assert avg["db"][0] == pytest.approx(20 * np.log10(2))


# ═══════════════════════════════════════════════════════════════════════
# FLOOR, PEAKS, CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════

class TestPeaks:

    def test_noise_floor_lower_quartile(self):
        assert estimate_noise_floor(np.arange(100.0)) == 25
        assert estimate_noise_floor(np.zeros(0)) == SILENT_DB

    def test_single_peak(self):
        db = np.full(500, -40.0)
        db[150] = -20.0
        peaks = detect_peaks({"freqs": np.arange(500.0), "db": db})
        assert len(peaks) == 1
        assert peaks[0]["frequency"] == 150
        assert peaks[0]["amplitude"] == pytest.approx(20)

    def test_weak_bump_ignored(self):
        db = np.full(500, -40.0)
        db[150] = -37.0
        assert detect_peaks({"freqs": np.arange(500.0), "db": db}) == []

    @pytest.mark.parametrize("freq,kind", [
        (150, "frame_resonance"), (600, "electrical"), (50, "unknown"),
    ])
    def test_classify_by_band(self, freq, kind):
        assert classify_peak(freq, [freq]) == kind

    def test_harmonic_series(self):
        assert classify_peak(200, [100, 200, 300]) == "motor_harmonic"
        assert classify_peak(150, [100, 200, 300, 150]) == "frame_resonance"

    def test_hover_resonance_found(self):
        gyro, _ = hover_flight(seconds=4.0, resonance_hz=150)
        spectra = [trim_spectrum(compute_spectrum(gyro[0], SAMPLE_RATE))]
        result = analyze_axis_noise(spectra)
        strongest = result["peaks"][0]
        assert strongest["frequency"] == pytest.approx(150, abs=2)
        assert strongest["amplitude"] > 20
        assert result["noise_floor_db"] < -5

    def test_no_spectra(self):
        result = analyze_axis_noise([])
        assert result["peaks"] == []
        assert result["noise_floor_db"] == SILENT_DB

    @pytest.mark.parametrize("floor,level", [(-20, "high"), (-40, "medium"), (-60, "low")])
    def test_noise_level(self, floor, level):
        assert profile(floor)["level"] == level


# ═══════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ═══════════════════════════════════════════════════════════════════════

class TestRecommendations:

    def test_target_cutoff_map(self):
        assert noise_target_cutoff(-10, 75, 300) == 75
        assert noise_target_cutoff(-70, 75, 300) == 300
        assert noise_target_cutoff(-100, 75, 300) == 300
        assert noise_target_cutoff(0, 75, 300) == 75

    def test_noisy_lowers_cutoffs(self):
        recs = by_setting(recommend_filters(profile(-15)))
        assert recs["gyro_lpf1_static_hz"]["recommended"] == 94
        assert recs["dterm_lpf1_static_hz"]["recommended"] == 81
        assert recs["gyro_lpf1_static_hz"]["confidence"] == "high"
        assert len(recs) == 2

    def test_clean_raises_cutoffs(self):
        recs = by_setting(recommend_filters(profile(-80)))
        assert recs["gyro_lpf1_static_hz"]["recommended"] == 300
        assert recs["dterm_lpf1_static_hz"]["recommended"] == 200
        assert recs["gyro_lpf1_static_hz"]["impact"] == "latency"

    def test_deadzone(self):
        # -80 dB targets 300 Hz; current 298 is close enough
        recs = recommend_filters(profile(-80), {"gyro_lpf1_static_hz": 298,
                                                "dterm_lpf1_static_hz": 197})
        assert recs == []

    def test_medium_noise_is_left_alone(self):
        assert recommend_filters(profile(-40)) == []

    def test_resonance(self):
        peak = {"frequency": 130.0, "amplitude": 20.0, "type": "frame_resonance"}
        recs = by_setting(recommend_filters(profile(-40, [peak])))
        assert recs["gyro_lpf1_static_hz"]["recommended"] == 110
        assert recs["dterm_lpf1_static_hz"]["recommended"] == 110
        assert recs["dyn_notch_min_hz"]["recommended"] == 110
        assert "frame resonance" in recs["gyro_lpf1_static_hz"]["reason"]

    def test_lower_cutoff_wins(self):
        peak = {"frequency": 130.0, "amplitude": 20.0, "type": "frame_resonance"}
        recs = by_setting(recommend_filters(profile(-15, [peak])))
        assert recs["gyro_lpf1_static_hz"]["recommended"] == 94
        assert recs["dterm_lpf1_static_hz"]["recommended"] == 81

    def test_disabled_gyro_lowpass(self):
        peak = {"frequency": 130.0, "amplitude": 20.0, "type": "frame_resonance"}
        recs = by_setting(recommend_filters(profile(-15, [peak]), {"gyro_lpf1_static_hz": 0}))
        rec = recs["gyro_lpf1_static_hz"]
        assert rec["current"] == 0
        assert rec["recommended"] == 110
        assert "disabled" in rec["reason"]

    def test_notch_max_raised(self):
        peak = {"frequency": 700.0, "amplitude": 15.0, "type": "electrical"}
        recs = by_setting(recommend_filters(profile(-40, [peak])))
        assert recs["dyn_notch_max_hz"]["recommended"] == 720

    def test_rpm_active(self):
        recs = by_setting(recommend_filters(profile(-40), {
            "rpm_filter_harmonics": 3, "dyn_notch_count": 3, "dyn_notch_q": 300}))
        assert recs["dyn_notch_count"]["recommended"] == 1
        assert recs["dyn_notch_q"]["recommended"] == 500

    def test_rpm_raises_bounds(self):
        recs = by_setting(recommend_filters(profile(-80), {"rpm_filter_harmonics": 3,
                                                           "dyn_notch_count": 1,
                                                           "dyn_notch_q": 500}))
        assert recs["gyro_lpf1_static_hz"]["recommended"] == 500
        assert recs["dterm_lpf1_static_hz"]["recommended"] == 300

    def test_without_rpm_needs_three_notches(self):
        recs = by_setting(recommend_filters(profile(-40), {"dyn_notch_count": 1}))
        assert recs["dyn_notch_count"]["recommended"] == 3

    def test_deduplicate_direction(self):
        rec = dict(current=600, reason="", impact="noise", confidence="medium")
        out = by_setting(deduplicate([
            dict(rec, setting="dyn_notch_max_hz", recommended=700),
            dict(rec, setting="dyn_notch_max_hz", recommended=800, confidence="high"),
            dict(rec, setting="dyn_notch_min_hz", recommended=120),
            dict(rec, setting="dyn_notch_min_hz", recommended=100),
        ]))
        assert out["dyn_notch_max_hz"]["recommended"] == 800
        assert out["dyn_notch_max_hz"]["confidence"] == "high"
        assert out["dyn_notch_min_hz"]["recommended"] == 100

    def test_summary(self):
        assert "look good" in filter_summary(profile(-40), [])
        recs = recommend_filters(profile(-15))
        assert "2 filter changes" in filter_summary(profile(-15), recs)
