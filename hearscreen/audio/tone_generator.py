import numpy as np


def sine_wave(freq_hz, duration_s, sample_rate, amplitude=0.2, phase=0.0):
    t = np.arange(int(round(duration_s * sample_rate))) / sample_rate
    wave = amplitude * np.sin(2 * np.pi * freq_hz * t + phase)
    return wave.astype(np.float32)


def linear_envelope(n_samples, ramp_samples):
    """Trapezoid gain: 0 -> 1 over ``ramp_samples``, hold, 1 -> 0 over the last ``ramp_samples``."""
    env = np.ones(n_samples, dtype=np.float32)
    ramp = int(min(max(ramp_samples, 0), n_samples // 2))
    if ramp > 0:
        rise = np.linspace(0.0, 1.0, ramp, endpoint=False, dtype=np.float32)
        env[:ramp] = rise
        env[n_samples - ramp:] = rise[::-1]
    return env


def shaped_tone(freq_hz, duration_ms, sample_rate, amplitude, ramp_ms=50):
    """Sine tone of exactly ``duration_ms`` with linear fade-in/fade-out."""
    mono = sine_wave(freq_hz, duration_ms / 1000.0, sample_rate, amplitude=amplitude)
    ramp_samples = int(round(ramp_ms * sample_rate / 1000.0))
    return mono * linear_envelope(len(mono), ramp_samples)


def route_to_channel(mono, channel_index, channel_count):
    """Place ``mono`` on a single output channel; every other channel stays silent."""
    channel_count = max(int(channel_count), int(channel_index) + 1)
    buffer = np.zeros((len(mono), channel_count), dtype=np.float32)
    buffer[:, int(channel_index)] = mono.astype(np.float32, copy=False)
    return buffer
